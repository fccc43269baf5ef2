"""Subscription state machine: lifecycle transitions and period close."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.constants import (
    InvoiceStatus,
    LineItemKind,
    SubscriptionStatus,
)
from billing_lifecycle.core.exceptions import (
    BillingLifecycleError,
    DuplicateSubscription,
    InvalidPauseDuration,
    InvalidTransition,
    NoActivePlan,
    SubscriptionNotFound,
)
from billing_lifecycle.dunning.models import DunningDecision
from billing_lifecycle.invoicing.models import Invoice, LineItem
from billing_lifecycle.subscriptions.models import StatusChange, Subscription
from billing_lifecycle.subscriptions.transitions import apply_transition, ensure_transition
from billing_lifecycle.utils.clock import Clock, utc_now
from billing_lifecycle.utils.money import round_minor
from billing_lifecycle.utils.periods import add_interval

if TYPE_CHECKING:
    from billing_lifecycle.catalog.catalog import EntitlementCatalog
    from billing_lifecycle.catalog.models import Plan
    from billing_lifecycle.collection.collector import PaymentCollector
    from billing_lifecycle.dunning.scheduler import DunningScheduler
    from billing_lifecycle.invoicing.builder import InvoiceBuilder
    from billing_lifecycle.storage.base import BillingStore
    from billing_lifecycle.usage.meter import UsageMeter

logger = structlog.get_logger(__name__)

DEFAULT_PAUSE = timedelta(days=30)

_S = SubscriptionStatus


class PeriodCloseResult(BaseModel):
    """Everything that happened when a billing period was closed."""

    subscription: Subscription
    invoice: Invoice | None = None
    attempt: PaymentAttempt | None = None
    decision: DunningDecision | None = None


class SubscriptionStateMachine:
    """Owns subscription status, period boundaries and lifecycle requests.

    Every mutation runs inside the subscription's single-writer section, so
    a timer and an inbound processor event touching the same subscription
    are applied one after the other. A request the current status does not
    permit raises :class:`InvalidTransition` and changes nothing.

    Period close is the billing heartbeat: usage for the period is closed,
    a draft invoice is built and finalized, collection is attempted, and the
    outcome goes to the dunning scheduler. The period advances once its
    invoice is paid.
    """

    def __init__(
        self,
        store: BillingStore,
        catalog: EntitlementCatalog,
        meter: UsageMeter,
        builder: InvoiceBuilder,
        collector: PaymentCollector,
        scheduler: DunningScheduler,
        *,
        max_pause_days: int = 90,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._meter = meter
        self._builder = builder
        self._collector = collector
        self._scheduler = scheduler
        self._max_pause = timedelta(days=max_pause_days)
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    async def create_subscription(
        self,
        organization_id: str,
        plan_id: str,
        *,
        payment_instrument_ref: str | None = None,
        processor_subscription_ref: str | None = None,
        jurisdiction: str | None = None,
    ) -> Subscription:
        """Start a subscription, ``trialing`` when the plan has trial days.

        Raises:
            NoActivePlan: The plan is unknown or inactive.
            DuplicateSubscription: The organization already has a live subscription.
        """
        plan = await self._active_plan(plan_id)
        async with self._store.serialized(f"org:{organization_id}"):
            live = await self._store.list_subscriptions(
                organization_id=organization_id,
                statuses=[s for s in SubscriptionStatus if not s.is_terminal],
            )
            if live:
                raise DuplicateSubscription(
                    f"Organization {organization_id!r} already has subscription "
                    f"{live[0].subscription_id} ({live[0].status.value})",
                    code="duplicate_subscription",
                    details={"subscription_id": live[0].subscription_id},
                )

            now = self._clock()
            if plan.trial_days > 0:
                status = _S.TRIALING
                trial_end: datetime | None = now + timedelta(days=plan.trial_days)
                period_end = trial_end
            else:
                status = _S.ACTIVE
                trial_end = None
                period_end = add_interval(now, plan.interval, plan.interval_count)

            subscription = Subscription(
                organization_id=organization_id,
                plan_id=plan.id,
                status=status,
                current_period_start=now,
                current_period_end=period_end,
                trial_end=trial_end,
                processor_subscription_ref=processor_subscription_ref,
                payment_instrument_ref=payment_instrument_ref,
                instrument_updated_at=now if payment_instrument_ref else None,
                jurisdiction=jurisdiction,
                history=[StatusChange(from_status=None, to_status=status, at=now, reason="created")],
                created_at=now,
                updated_at=now,
            )
            await self._store.save_subscription(subscription)

        logger.info(
            "subscription_created",
            subscription_id=subscription.subscription_id,
            organization_id=organization_id,
            plan_id=plan.id,
            status=status.value,
        )
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self._require(subscription_id)

    # ------------------------------------------------------------------ #
    # Trials
    # ------------------------------------------------------------------ #

    async def end_trial(self, subscription_id: str) -> Subscription:
        """``trialing -> active`` once the trial is over and an instrument is on file."""
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            ensure_transition(subscription, _S.ACTIVE)
            now = self._clock()
            if subscription.trial_end is not None and now < subscription.trial_end:
                raise InvalidTransition(
                    f"Trial of {subscription_id} runs until {subscription.trial_end.isoformat()}",
                    code="trial_not_ended",
                )
            if subscription.payment_instrument_ref is None:
                raise InvalidTransition(
                    f"Subscription {subscription_id} has no payment instrument on file",
                    code="no_payment_instrument",
                )
            plan = await self._active_plan(subscription.plan_id)
            start = subscription.trial_end or now
            return await apply_transition(
                self._store,
                subscription,
                _S.ACTIVE,
                at=now,
                reason="trial_ended",
                current_period_start=start,
                current_period_end=add_interval(start, plan.interval, plan.interval_count),
            )

    async def activate_due_trials(self) -> list[Subscription]:
        """Settle every trial whose end has passed.

        Trials flagged to cancel at period end are canceled. Trials without
        a payment instrument stay ``trialing`` until one is supplied.
        """
        now = self._clock()
        settled: list[Subscription] = []
        for subscription in await self._store.list_subscriptions(statuses=[_S.TRIALING]):
            if subscription.trial_end is None or subscription.trial_end > now:
                continue
            try:
                if subscription.cancel_at_period_end:
                    settled.append(
                        await self.cancel(subscription.subscription_id, reason="canceled_at_trial_end")
                    )
                elif subscription.payment_instrument_ref is None:
                    logger.info(
                        "trial_expired_without_instrument",
                        subscription_id=subscription.subscription_id,
                    )
                else:
                    settled.append(await self.end_trial(subscription.subscription_id))
            except InvalidTransition as exc:
                logger.info(
                    "trial_settle_skipped",
                    subscription_id=subscription.subscription_id,
                    reason=exc.code,
                )
        return settled

    # ------------------------------------------------------------------ #
    # Pause / resume
    # ------------------------------------------------------------------ #

    async def pause(
        self, subscription_id: str, duration: timedelta = DEFAULT_PAUSE
    ) -> Subscription:
        """``active/past_due -> paused`` until ``now + duration``.

        Raises:
            InvalidPauseDuration: *duration* is not positive or exceeds the
                configured maximum.
        """
        if duration <= timedelta(0) or duration > self._max_pause:
            raise InvalidPauseDuration(
                f"Pause duration must be between 0 and {self._max_pause.days} days",
                code="invalid_pause_duration",
                details={"requested_days": duration.total_seconds() / 86400},
            )
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            now = self._clock()
            pause_until = now + duration
            updated = await apply_transition(
                self._store,
                subscription,
                _S.PAUSED,
                at=now,
                reason="pause_requested",
                pause_until=pause_until,
            )
        logger.info("subscription_paused", subscription_id=subscription_id, pause_until=pause_until)
        return updated

    async def resume(self, subscription_id: str, *, reason: str = "resume_requested") -> Subscription:
        """``paused -> active``.

        Time spent paused is not billed: if the period ended during the
        pause a fresh period starts now.
        """
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            ensure_transition(subscription, _S.ACTIVE)
            if subscription.status is not _S.PAUSED:
                raise InvalidTransition(
                    f"Subscription {subscription_id} is {subscription.status.value}, not paused",
                    code="invalid_transition",
                )
            now = self._clock()
            changes: dict[str, object] = {"pause_until": None}
            if now >= subscription.current_period_end:
                plan = await self._active_plan(subscription.plan_id)
                changes["current_period_start"] = now
                changes["current_period_end"] = add_interval(now, plan.interval, plan.interval_count)
            return await apply_transition(
                self._store, subscription, _S.ACTIVE, at=now, reason=reason, **changes
            )

    async def auto_resume_due(self) -> list[Subscription]:
        """Resume every paused subscription whose ``pause_until`` has passed."""
        now = self._clock()
        resumed: list[Subscription] = []
        for subscription in await self._store.list_subscriptions(statuses=[_S.PAUSED]):
            if subscription.pause_until is None or subscription.pause_until > now:
                continue
            try:
                resumed.append(
                    await self.resume(subscription.subscription_id, reason="pause_elapsed")
                )
            except InvalidTransition as exc:
                # Resumed by an explicit request in the meantime.
                logger.info(
                    "auto_resume_skipped",
                    subscription_id=subscription.subscription_id,
                    reason=exc.code,
                )
        return resumed

    # ------------------------------------------------------------------ #
    # Cancellation
    # ------------------------------------------------------------------ #

    async def cancel(
        self,
        subscription_id: str,
        *,
        at_period_end: bool = False,
        reason: str = "cancel_requested",
    ) -> Subscription:
        """``active/trialing/past_due -> canceled``, now or at the period boundary."""
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            ensure_transition(subscription, _S.CANCELED)
            now = self._clock()
            if at_period_end:
                updated = subscription.model_copy(
                    update={"cancel_at_period_end": True, "updated_at": now}
                )
                await self._store.save_subscription(updated)
                logger.info(
                    "subscription_cancel_scheduled",
                    subscription_id=subscription_id,
                    at=subscription.current_period_end,
                )
                return updated

            updated = await self._cancel_now(subscription, now, reason)
            for invoice in await self._store.list_invoices(
                subscription_id=subscription_id, statuses=[InvoiceStatus.DRAFT]
            ):
                await self._builder.void_invoice(invoice.invoice_id, reason="subscription_canceled")
            return updated

    async def _cancel_now(self, subscription: Subscription, now: datetime, reason: str) -> Subscription:
        return await apply_transition(
            self._store,
            subscription,
            _S.CANCELED,
            at=now,
            reason=reason,
            canceled_at=now,
            cancellation_reason=reason,
            cancel_at_period_end=False,
            pause_until=None,
        )

    async def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> Subscription:
        """Set or clear a deferred cancellation, e.g. when the customer changes their mind."""
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            if flag:
                ensure_transition(subscription, _S.CANCELED)
            if subscription.cancel_at_period_end == flag:
                return subscription
            updated = subscription.model_copy(
                update={"cancel_at_period_end": flag, "updated_at": self._clock()}
            )
            await self._store.save_subscription(updated)
            return updated

    # ------------------------------------------------------------------ #
    # Plan and instrument changes
    # ------------------------------------------------------------------ #

    async def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        *,
        prorate: bool = True,
    ) -> Subscription:
        """Switch plans mid-period.

        Base charges are billed when the period closes, at the plan in force
        then. With *prorate*, the time already used on the old plan is
        charged at the old price and credited back at the new price; both
        lines ride on the next period-close invoice.
        """
        new_plan = await self._active_plan(new_plan_id)
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            if subscription.status not in (_S.ACTIVE, _S.TRIALING):
                raise InvalidTransition(
                    f"Cannot change plan while {subscription.status.value}",
                    code="invalid_transition",
                )
            if subscription.plan_id == new_plan.id:
                return subscription

            now = self._clock()
            adjustments = list(subscription.pending_adjustments)
            old_plan = await self._catalog.get_plan(subscription.plan_id)
            if prorate and subscription.status is _S.ACTIVE and old_plan is not None:
                adjustments.extend(
                    self._proration_lines(subscription, old_plan, new_plan, now)
                )

            updated = subscription.model_copy(
                update={
                    "plan_id": new_plan.id,
                    "pending_adjustments": adjustments,
                    "updated_at": now,
                }
            )
            await self._store.save_subscription(updated)

        logger.info(
            "subscription_plan_changed",
            subscription_id=subscription_id,
            old_plan_id=subscription.plan_id,
            new_plan_id=new_plan.id,
            adjustments=len(updated.pending_adjustments) - len(subscription.pending_adjustments),
        )
        return updated

    @staticmethod
    def _proration_lines(
        subscription: Subscription, old_plan: Plan, new_plan: Plan, now: datetime
    ) -> list[LineItem]:
        start = subscription.current_period_start
        end = subscription.current_period_end
        used = min(max((now - start) / (end - start), 0.0), 1.0)
        if used <= 0:
            return []
        return [
            LineItem(
                description=f"{old_plan.name or old_plan.id} ({used:.2%} of period)",
                kind=LineItemKind.ADJUSTMENT,
                quantity=used,
                unit_amount=old_plan.base_price,
                amount=round_minor(old_plan.base_price * used),
            ),
            LineItem(
                description=f"Credit: {new_plan.name or new_plan.id} ({used:.2%} of period)",
                kind=LineItemKind.ADJUSTMENT,
                quantity=used,
                unit_amount=-new_plan.base_price,
                amount=-round_minor(new_plan.base_price * used),
            ),
        ]

    async def update_payment_instrument(
        self, subscription_id: str, instrument_ref: str
    ) -> Subscription:
        """Record a new payment instrument; unblocks retries that require one."""
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            if subscription.is_terminal:
                raise InvalidTransition(
                    f"Subscription {subscription_id} is canceled",
                    code="invalid_transition",
                )
            now = self._clock()
            updated = subscription.model_copy(
                update={
                    "payment_instrument_ref": instrument_ref,
                    "instrument_updated_at": now,
                    "updated_at": now,
                }
            )
            await self._store.save_subscription(updated)
        logger.info("payment_instrument_updated", subscription_id=subscription_id)
        return updated

    # ------------------------------------------------------------------ #
    # Period close
    # ------------------------------------------------------------------ #

    async def close_period(self, subscription_id: str) -> PeriodCloseResult:
        """Invoice the ended period and try to collect it.

        Only an ``active`` subscription whose period has ended can be
        closed. A deferred cancellation takes effect here, after the final
        period is invoiced.
        """
        async with self._store.serialized(subscription_id):
            subscription = await self._require(subscription_id)
            now = self._clock()
            if subscription.status is not _S.ACTIVE:
                raise InvalidTransition(
                    f"Cannot close the period of a {subscription.status.value} subscription",
                    code="invalid_transition",
                )
            if now < subscription.current_period_end:
                raise InvalidTransition(
                    f"Period of {subscription_id} ends {subscription.current_period_end.isoformat()}",
                    code="period_not_ended",
                )

            start = subscription.current_period_start
            end = subscription.current_period_end
            await self._meter.close_period(subscription_id, end)
            # A previous close may have stopped after drafting or finalizing.
            invoice = await self._period_invoice(subscription_id, start, end)
            if invoice is None:
                invoice = await self._builder.build_draft_invoice(
                    subscription_id,
                    start,
                    end,
                    extra_lines=subscription.pending_adjustments,
                )
            if subscription.pending_adjustments:
                subscription = subscription.model_copy(update={"pending_adjustments": []})
                await self._store.save_subscription(subscription)
            if invoice.status is InvoiceStatus.DRAFT:
                invoice = await self._builder.finalize_invoice(invoice.invoice_id)

            if subscription.cancel_at_period_end:
                subscription = await self._cancel_now(subscription, now, "canceled_at_period_end")

            attempt = await self._collector.collect(invoice.invoice_id)
            decision = await self._scheduler.apply_attempt_outcome(attempt)

            invoice = await self._builder.get_invoice(invoice.invoice_id)
            subscription = await self._require(subscription_id)

        logger.info(
            "subscription_period_closed",
            subscription_id=subscription_id,
            invoice_id=invoice.invoice_id,
            outcome=attempt.outcome.value,
            status=subscription.status.value,
        )
        return PeriodCloseResult(
            subscription=subscription, invoice=invoice, attempt=attempt, decision=decision
        )

    async def close_due_periods(self) -> list[PeriodCloseResult]:
        """Close every active period that has ended. One failure does not stop the batch."""
        now = self._clock()
        results: list[PeriodCloseResult] = []
        for subscription in await self._store.list_subscriptions(statuses=[_S.ACTIVE]):
            if subscription.current_period_end > now:
                continue
            try:
                results.append(await self.close_period(subscription.subscription_id))
            except BillingLifecycleError as exc:
                logger.error(
                    "period_close_failed",
                    subscription_id=subscription.subscription_id,
                    code=exc.code,
                    error=str(exc),
                )
        return results

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _period_invoice(
        self, subscription_id: str, start: datetime, end: datetime
    ) -> Invoice | None:
        for invoice in await self._store.list_invoices(
            subscription_id=subscription_id,
            statuses=[InvoiceStatus.DRAFT, InvoiceStatus.OPEN],
        ):
            if invoice.period_start != start or invoice.period_end != end:
                continue
            if invoice.status is InvoiceStatus.OPEN and await self._store.list_attempts(
                invoice.invoice_id
            ):
                raise InvalidTransition(
                    f"Period of {subscription_id} is already being collected by "
                    f"{invoice.invoice_id}",
                    code="period_already_invoiced",
                )
            return invoice
        return None

    async def _require(self, subscription_id: str) -> Subscription:
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(
                f"Subscription {subscription_id!r} not found",
                code="subscription_not_found",
            )
        return subscription

    async def _active_plan(self, plan_id: str) -> Plan:
        plan = await self._catalog.get_plan(plan_id)
        if plan is None or not plan.active:
            raise NoActivePlan(f"Plan {plan_id!r} is not available", code="no_active_plan")
        return plan
