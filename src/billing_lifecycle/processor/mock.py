from __future__ import annotations

import asyncio
from typing import Any

from billing_lifecycle.processor.base import ChargeResult, ChargeStatus


class MockPaymentProcessor:
    """In-memory payment processor for testing.

    Usage::

        processor = MockPaymentProcessor()
        processor.queue(
            ChargeResult(status=ChargeStatus.DECLINED, decline_code="insufficient_funds"),
            ChargeResult(status=ChargeStatus.SUCCEEDED, processor_ref="ch_2"),
        )
        result = await processor.charge("pm_1", 1100, "USD", "in_1:1")

    Queued entries are consumed in order; an ``Exception`` entry is raised
    instead of returned. Once the queue is empty every charge succeeds.
    Charges repeating an idempotency key return the first answer, the way a
    real processor does.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self._delay = delay
        self._queue: list[ChargeResult | Exception] = []
        self._by_key: dict[str, ChargeResult] = {}
        self._subscription_status: dict[str, str] = {}
        self.calls: list[dict[str, Any]] = []

    def queue(self, *results: ChargeResult | Exception) -> None:
        self._queue.extend(results)

    def set_subscription_status(self, processor_subscription_ref: str, status: str) -> None:
        self._subscription_status[processor_subscription_ref] = status

    async def charge(
        self,
        instrument_ref: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> ChargeResult:
        self.calls.append(
            {
                "instrument_ref": instrument_ref,
                "amount": amount,
                "currency": currency,
                "idempotency_key": idempotency_key,
            }
        )
        if self._delay:
            await asyncio.sleep(self._delay)
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        entry: ChargeResult | Exception
        if self._queue:
            entry = self._queue.pop(0)
        else:
            entry = ChargeResult(
                status=ChargeStatus.SUCCEEDED,
                processor_ref=f"ch_{len(self.calls)}",
            )
        if isinstance(entry, Exception):
            raise entry
        self._by_key[idempotency_key] = entry
        return entry

    async def retrieve_subscription_status(self, processor_subscription_ref: str) -> str:
        return self._subscription_status.get(processor_subscription_ref, "active")
