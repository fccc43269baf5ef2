"""Payment collector: attempt bookkeeping and processor calls."""

from __future__ import annotations

import asyncio
from datetime import datetime
from functools import partial
from typing import TYPE_CHECKING, Any

import structlog

from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.constants import AttemptOutcome, InvoiceStatus, RiskTier
from billing_lifecycle.core.exceptions import (
    AttemptInFlight,
    InvalidInvoiceTransition,
    InvoiceNotFound,
    ProcessorError,
    StateConflictError,
)
from billing_lifecycle.dunning.policy import DunningPolicy
from billing_lifecycle.processor.base import ChargeResult, ChargeStatus
from billing_lifecycle.utils.clock import Clock, utc_now

if TYPE_CHECKING:
    from billing_lifecycle.invoicing.models import Invoice
    from billing_lifecycle.processor.base import PaymentProcessor
    from billing_lifecycle.storage.base import BillingStore

logger = structlog.get_logger(__name__)

NO_INSTRUMENT_REASON = "no_payment_instrument"
TIMEOUT_REASON = "timeout"


class PaymentCollector:
    """Charges invoices and records one :class:`PaymentAttempt` per try.

    Every processor answer is normalized into an :class:`AttemptOutcome`.
    A call that outlives ``timeout_seconds`` is recorded as
    ``processor_error`` because its true result is unknown; the call itself
    is never cancelled and a late answer is only logged, leaving the
    processor's webhook to settle it.

    Attempt numbers per invoice are ``1..n`` without gaps, and at most one
    attempt is ``scheduled`` or ``pending`` at a time. Both hold because
    attempts are only created inside the subscription's single-writer
    section.
    """

    def __init__(
        self,
        store: BillingStore,
        processor: PaymentProcessor,
        *,
        policy: DunningPolicy | None = None,
        timeout_seconds: float = 30.0,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._processor = processor
        self._policy = policy or DunningPolicy()
        self._timeout = timeout_seconds
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def collect(self, invoice_id: str) -> PaymentAttempt:
        """Create the next attempt for an open invoice and charge it now."""
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            attempt = await self._new_attempt(invoice, AttemptOutcome.PENDING)
            return await self._charge(invoice, attempt)

    async def schedule_attempt(
        self,
        invoice_id: str,
        scheduled_for: datetime,
        **fields: Any,
    ) -> PaymentAttempt:
        """Create the next attempt as ``scheduled`` for *scheduled_for*."""
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            attempt = await self._new_attempt(
                invoice, AttemptOutcome.SCHEDULED, scheduled_for=scheduled_for, **fields
            )
        logger.info(
            "payment_attempt_scheduled",
            invoice_id=invoice_id,
            attempt_number=attempt.attempt_number,
            scheduled_for=scheduled_for,
        )
        return attempt

    async def execute_attempt(self, invoice_id: str, attempt_number: int) -> PaymentAttempt:
        """Charge a previously scheduled attempt.

        Raises:
            StateConflictError: The attempt is not in ``scheduled`` state.
        """
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            attempt = await self.get_attempt(invoice_id, attempt_number)
            if attempt is None or attempt.outcome is not AttemptOutcome.SCHEDULED:
                raise StateConflictError(
                    f"Attempt {invoice_id}:{attempt_number} is not scheduled",
                    code="attempt_not_scheduled",
                )
            self._ensure_collectible(invoice)
            return await self._charge(invoice, attempt)

    async def record_outcome(
        self,
        invoice_id: str,
        attempt_number: int,
        outcome: AttemptOutcome,
        *,
        processor_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> PaymentAttempt:
        """Settle an attempt with an outcome learned out of band.

        Open attempts take the new outcome. A ``processor_error`` attempt
        (typically a timeout) can still be corrected, since its true result
        was unknown. Any other settled attempt is returned unchanged.
        """
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            attempt = await self.get_attempt(invoice_id, attempt_number)
            if attempt is None:
                raise StateConflictError(
                    f"Attempt {invoice_id}:{attempt_number} does not exist",
                    code="attempt_not_found",
                )
            correctable = attempt.outcome.is_open or (
                attempt.outcome is AttemptOutcome.PROCESSOR_ERROR
                and outcome is not AttemptOutcome.PROCESSOR_ERROR
            )
            if not correctable:
                return attempt
            attempt = attempt.model_copy(
                update={
                    "outcome": outcome,
                    "processor_ref": processor_ref or attempt.processor_ref,
                    "failure_reason": failure_reason,
                    "completed_at": self._clock(),
                }
            )
            await self._store.save_attempt(attempt)
        logger.info(
            "payment_attempt_settled",
            invoice_id=invoice_id,
            attempt_number=attempt_number,
            outcome=outcome.value,
        )
        return attempt

    async def record_settled_attempt(
        self,
        invoice_id: str,
        outcome: AttemptOutcome,
        *,
        processor_ref: str | None = None,
        failure_reason: str | None = None,
    ) -> PaymentAttempt:
        """Append an attempt that is already settled (a charge made outside the engine)."""
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            now = self._clock()
            return await self._new_attempt(
                invoice,
                outcome,
                processor_ref=processor_ref,
                failure_reason=failure_reason,
                attempted_at=now,
                completed_at=now,
            )

    async def list_attempts(self, invoice_id: str) -> list[PaymentAttempt]:
        return await self._store.list_attempts(invoice_id)

    async def get_attempt(self, invoice_id: str, attempt_number: int) -> PaymentAttempt | None:
        for attempt in await self._store.list_attempts(invoice_id):
            if attempt.attempt_number == attempt_number:
                return attempt
        return None

    async def open_attempt(self, invoice_id: str) -> PaymentAttempt | None:
        for attempt in await self._store.list_attempts(invoice_id):
            if attempt.outcome.is_open:
                return attempt
        return None

    def normalize(self, result: ChargeResult) -> tuple[AttemptOutcome, str | None]:
        """Map a raw processor answer onto an outcome and failure reason."""
        if result.status is ChargeStatus.SUCCEEDED:
            return AttemptOutcome.SUCCEEDED, None
        if result.status is ChargeStatus.DECLINED:
            reason = result.decline_code or "card_declined"
            if self._policy.classify(reason) is RiskTier.HIGH:
                return AttemptOutcome.DECLINED_PERMANENT, reason
            return AttemptOutcome.DECLINED_RETRYABLE, reason
        return AttemptOutcome.PROCESSOR_ERROR, result.decline_code or "processing_error"

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _new_attempt(
        self, invoice: Invoice, outcome: AttemptOutcome, **fields: Any
    ) -> PaymentAttempt:
        self._ensure_collectible(invoice)
        attempts = await self._store.list_attempts(invoice.invoice_id)
        in_flight = [a for a in attempts if a.outcome.is_open]
        if in_flight:
            raise AttemptInFlight(
                f"Invoice {invoice.invoice_id} already has attempt "
                f"{in_flight[0].attempt_number} {in_flight[0].outcome.value}",
                code="attempt_in_flight",
                details={"attempt_number": in_flight[0].attempt_number},
            )
        attempt = PaymentAttempt(
            invoice_id=invoice.invoice_id,
            subscription_id=invoice.subscription_id,
            attempt_number=len(attempts) + 1,
            outcome=outcome,
            amount=invoice.amount_due,
            currency=invoice.currency,
            created_at=self._clock(),
            **fields,
        )
        await self._store.save_attempt(attempt)
        return attempt

    @staticmethod
    def _ensure_collectible(invoice: Invoice) -> None:
        if invoice.status is not InvoiceStatus.OPEN:
            raise InvalidInvoiceTransition(
                f"Invoice {invoice.invoice_id} is {invoice.status.value}; "
                "only open invoices are collected",
                code="invoice_not_collectible",
                details={"status": invoice.status.value},
            )

    async def _charge(self, invoice: Invoice, attempt: PaymentAttempt) -> PaymentAttempt:
        subscription = await self._store.get_subscription(invoice.subscription_id)
        instrument = subscription.payment_instrument_ref if subscription else None
        attempt = attempt.model_copy(
            update={
                "outcome": AttemptOutcome.PENDING,
                "attempted_at": self._clock(),
                "instrument_ref": instrument,
                "amount": invoice.amount_due,
                "currency": invoice.currency,
            }
        )
        await self._store.save_attempt(attempt)

        processor_ref: str | None = None
        if attempt.amount <= 0:
            outcome, reason = AttemptOutcome.SUCCEEDED, None
        elif instrument is None:
            outcome, reason = AttemptOutcome.DECLINED_RETRYABLE, NO_INSTRUMENT_REASON
        else:
            outcome, reason, processor_ref = await self._call_processor(
                instrument, attempt.amount, attempt.currency, attempt.idempotency_key
            )

        attempt = attempt.model_copy(
            update={
                "outcome": outcome,
                "failure_reason": reason,
                "processor_ref": processor_ref,
                "completed_at": self._clock(),
            }
        )
        await self._store.save_attempt(attempt)
        logger.info(
            "payment_attempt_completed",
            invoice_id=attempt.invoice_id,
            attempt_number=attempt.attempt_number,
            outcome=outcome.value,
            failure_reason=reason,
            amount=attempt.amount,
        )
        return attempt

    async def _call_processor(
        self,
        instrument: str,
        amount: int,
        currency: str,
        idempotency_key: str,
    ) -> tuple[AttemptOutcome, str | None, str | None]:
        task = asyncio.ensure_future(
            self._processor.charge(instrument, amount, currency, idempotency_key)
        )
        try:
            result = await asyncio.wait_for(asyncio.shield(task), timeout=self._timeout)
        except TimeoutError:
            task.add_done_callback(partial(_log_late_result, idempotency_key))
            logger.warning(
                "processor_charge_timeout",
                idempotency_key=idempotency_key,
                timeout_seconds=self._timeout,
            )
            return AttemptOutcome.PROCESSOR_ERROR, TIMEOUT_REASON, None
        except ProcessorError as exc:
            logger.warning(
                "processor_charge_error",
                idempotency_key=idempotency_key,
                code=exc.code,
                error=str(exc),
            )
            return AttemptOutcome.PROCESSOR_ERROR, exc.code or "processing_error", None
        except Exception:
            logger.error(
                "processor_charge_crashed",
                idempotency_key=idempotency_key,
                exc_info=True,
            )
            return AttemptOutcome.PROCESSOR_ERROR, "processing_error", None

        outcome, reason = self.normalize(result)
        return outcome, reason, result.processor_ref

    async def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self._store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id!r} not found", code="invoice_not_found")
        return invoice


def _log_late_result(idempotency_key: str, task: asyncio.Future[ChargeResult]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "processor_late_failure", idempotency_key=idempotency_key, error=str(exc)
        )
        return
    result = task.result()
    logger.warning(
        "processor_late_result",
        idempotency_key=idempotency_key,
        status=result.status.value,
        processor_ref=result.processor_ref,
    )
