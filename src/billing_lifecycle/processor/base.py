from __future__ import annotations

from enum import StrEnum
from typing import Protocol, runtime_checkable

from pydantic import BaseModel


class ChargeStatus(StrEnum):
    SUCCEEDED = "succeeded"
    DECLINED = "declined"
    ERROR = "error"


class ChargeResult(BaseModel):
    """Raw answer from a processor ``charge`` call, before normalization."""

    status: ChargeStatus
    processor_ref: str | None = None
    decline_code: str | None = None
    message: str = ""


@runtime_checkable
class PaymentProcessor(Protocol):
    """Structural type for any payment processor backend.

    The collector accepts this Protocol so it works with
    :class:`~billing_lifecycle.processor.http.HttpPaymentProcessor`,
    :class:`~billing_lifecycle.processor.mock.MockPaymentProcessor` or any
    other implementation without importing concrete classes.
    """

    async def charge(
        self,
        instrument_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult: ...

    async def retrieve_subscription_status(self, processor_subscription_ref: str) -> str: ...
