"""Processor event models.

Inbound processor events are a tagged union keyed by ``type``. Types this
package does not know parse into :class:`UnknownEventData` instead of
failing, so a processor adding new event types never breaks ingestion.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag
from pydantic import ValidationError as PydanticValidationError

from billing_lifecycle.core.constants import ReconciliationStatus
from billing_lifecycle.core.exceptions import ValidationError


class ChargeSucceeded(BaseModel):
    type: Literal["charge.succeeded"] = "charge.succeeded"
    invoice_id: str
    attempt_number: int | None = None
    processor_ref: str | None = None
    amount: int | None = None


class ChargeFailed(BaseModel):
    type: Literal["charge.failed"] = "charge.failed"
    invoice_id: str
    attempt_number: int | None = None
    processor_ref: str | None = None
    failure_reason: str = "unknown"


class SubscriptionUpdated(BaseModel):
    type: Literal["subscription.updated"] = "subscription.updated"
    processor_subscription_ref: str
    status: str | None = None
    cancel_at_period_end: bool | None = None


class SubscriptionDeleted(BaseModel):
    type: Literal["subscription.deleted"] = "subscription.deleted"
    processor_subscription_ref: str


class PaymentMethodAttached(BaseModel):
    type: Literal["payment_method.attached"] = "payment_method.attached"
    processor_subscription_ref: str
    instrument_ref: str


class UnknownEventData(BaseModel):
    """Fallback for event types this package does not handle."""

    model_config = ConfigDict(extra="allow")

    type: str


KNOWN_EVENT_TYPES = frozenset(
    {
        "charge.succeeded",
        "charge.failed",
        "subscription.updated",
        "subscription.deleted",
        "payment_method.attached",
    }
)


def _event_tag(value: Any) -> str:
    kind = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    return kind if kind in KNOWN_EVENT_TYPES else "unknown"


EventData = Annotated[
    Union[
        Annotated[ChargeSucceeded, Tag("charge.succeeded")],
        Annotated[ChargeFailed, Tag("charge.failed")],
        Annotated[SubscriptionUpdated, Tag("subscription.updated")],
        Annotated[SubscriptionDeleted, Tag("subscription.deleted")],
        Annotated[PaymentMethodAttached, Tag("payment_method.attached")],
        Annotated[UnknownEventData, Tag("unknown")],
    ],
    Discriminator(_event_tag),
]


class ProcessorEvent(BaseModel):
    """An asynchronous notification from the payment processor."""

    idempotency_key: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: EventData

    @property
    def event_type(self) -> str:
        return self.data.type


class ReconciliationResult(BaseModel):
    """Recorded outcome of applying one processor event."""

    idempotency_key: str
    event_type: str
    status: ReconciliationStatus
    detail: str = ""
    subscription_id: str | None = None
    invoice_id: str | None = None
    applied_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def parse_processor_event(raw: dict[str, Any]) -> ProcessorEvent:
    """Build a :class:`ProcessorEvent` from a raw webhook envelope.

    The envelope looks like::

        {"id": "evt_1", "type": "charge.succeeded", "created_at": "...",
         "data": {"invoice_id": "in_1", "attempt_number": 1}}

    ``idempotency_key`` is accepted as an alias for ``id``.

    Raises:
        ValidationError: If the envelope or a known event payload is malformed.
    """
    key = raw.get("idempotency_key") or raw.get("id")
    event_type = raw.get("type")
    payload = raw.get("data") or {}
    if not isinstance(payload, dict) or not isinstance(event_type, str):
        raise ValidationError(
            "Processor event must carry a string 'type' and an object 'data'",
            code="invalid_event",
        )
    envelope: dict[str, Any] = {
        "idempotency_key": key,
        "data": {**payload, "type": event_type},
    }
    if raw.get("created_at"):
        envelope["created_at"] = raw["created_at"]
    try:
        return ProcessorEvent.model_validate(envelope)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Malformed processor event: {exc}",
            code="invalid_event",
            details={"type": event_type},
        ) from exc
