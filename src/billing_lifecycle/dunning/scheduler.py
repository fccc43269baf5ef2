"""Dunning scheduler: retry planning after failed payments, escalation and recovery."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.constants import (
    AttemptOutcome,
    DunningAction,
    InvoiceStatus,
    RiskTier,
    SubscriptionStatus,
)
from billing_lifecycle.core.exceptions import (
    InvoiceNotFound,
    StateConflictError,
    SubscriptionNotFound,
)
from billing_lifecycle.dunning.models import DunningDecision, DunningState
from billing_lifecycle.dunning.policy import DunningPolicy, RetryStrategy
from billing_lifecycle.subscriptions.transitions import apply_transition, next_period
from billing_lifecycle.utils.clock import Clock, utc_now

if TYPE_CHECKING:
    from billing_lifecycle.catalog.catalog import EntitlementCatalog
    from billing_lifecycle.collection.collector import PaymentCollector
    from billing_lifecycle.invoicing.builder import InvoiceBuilder
    from billing_lifecycle.invoicing.models import Invoice
    from billing_lifecycle.notifications.notifier import Notifier
    from billing_lifecycle.storage.base import BillingStore
    from billing_lifecycle.subscriptions.models import Subscription

logger = structlog.get_logger(__name__)


class DunningScheduler:
    """Turns payment outcomes into retries, notifications and escalation.

    Retry policy is data: a failure reason is classified into a
    :class:`RiskTier`, the tier selects a :class:`RetryStrategy`, and the
    strategy decides how many attempts an invoice gets and how long to wait
    between them. Decisions come back as :class:`DunningDecision` values.

    Once an invoice has used up its attempts it is marked
    ``uncollectible``, the subscription is canceled and the customer is
    notified. A 4th attempt under a 3-attempt strategy is never created.

    Usage::

        decision = await scheduler.on_payment_failure("in_1", "insufficient_funds")
        # ... later, from a timer
        await scheduler.process_due_retries()
    """

    def __init__(
        self,
        store: BillingStore,
        collector: PaymentCollector,
        builder: InvoiceBuilder,
        catalog: EntitlementCatalog,
        *,
        notifier: Notifier | None = None,
        policy: DunningPolicy | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._collector = collector
        self._builder = builder
        self._catalog = catalog
        self._notifier = notifier
        self._policy = policy or DunningPolicy()
        self._clock = clock

    @property
    def policy(self) -> DunningPolicy:
        return self._policy

    # ------------------------------------------------------------------ #
    # Failure path
    # ------------------------------------------------------------------ #

    async def on_payment_failure(
        self, invoice_id: str, failure_reason: str | None = None
    ) -> DunningDecision:
        """Plan the next step after the latest attempt on *invoice_id* failed.

        Moves an ``active`` subscription to ``past_due``, then either
        schedules attempt ``n + 1`` at ``now + intervals[n - 1]`` or, when
        ``n`` has reached the strategy's ``max_attempts``, escalates.
        """
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            if invoice.status is not InvoiceStatus.OPEN:
                logger.info(
                    "dunning_not_applicable",
                    invoice_id=invoice_id,
                    invoice_status=invoice.status.value,
                )
                return DunningDecision(action=DunningAction.NOT_APPLICABLE, invoice_id=invoice_id)

            attempts = await self._store.list_attempts(invoice_id)
            in_flight = next((a for a in attempts if a.outcome.is_open), None)
            if in_flight is not None:
                return DunningDecision(
                    action=DunningAction.NOT_APPLICABLE,
                    invoice_id=invoice_id,
                    next_attempt=in_flight,
                )

            failed = attempts[-1] if attempts else None
            attempt_number = failed.attempt_number if failed else 0
            reason = failure_reason or (failed.failure_reason if failed else None) or "unknown"
            tier = self._policy.classify(reason)
            strategy = self._policy.strategy_for(tier)
            now = self._clock()

            if failed is not None:
                failed = failed.model_copy(update={"risk_tier": tier, "strategy": strategy.name})
                await self._store.save_attempt(failed)

            subscription = await self._require_subscription(invoice.subscription_id)
            if subscription.status is SubscriptionStatus.ACTIVE:
                subscription = await apply_transition(
                    self._store,
                    subscription,
                    SubscriptionStatus.PAST_DUE,
                    at=now,
                    reason=f"payment_failed:{reason}",
                )

            if attempt_number >= strategy.max_attempts:
                return await self._exhaust(invoice, subscription, attempt_number, reason, tier, strategy)

            scheduled_for = now + strategy.delay_after(attempt_number)
            next_attempt = await self._collector.schedule_attempt(
                invoice_id,
                scheduled_for,
                risk_tier=tier,
                strategy=strategy.name,
                requires_new_instrument=strategy.require_new_instrument,
            )
            if failed is not None:
                await self._store.save_attempt(failed.model_copy(update={"next_retry_at": scheduled_for}))

            template = self._failure_template(invoice, tier, strategy, now)
            await self._notify(
                subscription,
                template,
                invoice=invoice,
                attempt_number=attempt_number,
                failure_reason=reason,
                risk_tier=tier.value,
                next_retry_at=scheduled_for.isoformat(),
                requires_new_instrument=strategy.require_new_instrument,
                days_past_due=self._days_past_due(invoice, now),
            )

        logger.info(
            "dunning_retry_scheduled",
            invoice_id=invoice_id,
            failed_attempt=attempt_number,
            next_attempt=next_attempt.attempt_number,
            risk_tier=tier.value,
            strategy=strategy.name,
            scheduled_for=scheduled_for,
        )
        return DunningDecision(
            action=DunningAction.RETRY_SCHEDULED,
            invoice_id=invoice_id,
            failed_attempt_number=attempt_number,
            failure_reason=reason,
            risk_tier=tier,
            strategy=strategy.name,
            next_attempt=next_attempt,
            requires_new_instrument=strategy.require_new_instrument,
            notification_template=template,
        )

    async def _exhaust(
        self,
        invoice: Invoice,
        subscription: Subscription,
        attempt_number: int,
        reason: str,
        tier: RiskTier,
        strategy: RetryStrategy,
    ) -> DunningDecision:
        now = self._clock()
        invoice = await self._builder.mark_uncollectible(invoice.invoice_id)
        if subscription.can_transition_to(SubscriptionStatus.CANCELED):
            subscription = await apply_transition(
                self._store,
                subscription,
                SubscriptionStatus.CANCELED,
                at=now,
                reason="dunning_exhausted",
                canceled_at=now,
                cancellation_reason="nonpayment",
                cancel_at_period_end=False,
            )
        else:
            logger.warning(
                "dunning_exhausted_without_cancel",
                subscription_id=subscription.subscription_id,
                status=subscription.status.value,
            )
        await self._notify(
            subscription,
            self._policy.exhausted_template,
            invoice=invoice,
            attempt_number=attempt_number,
            failure_reason=reason,
            risk_tier=tier.value,
        )
        logger.warning(
            "dunning_exhausted",
            invoice_id=invoice.invoice_id,
            subscription_id=subscription.subscription_id,
            attempts=attempt_number,
            strategy=strategy.name,
        )
        return DunningDecision(
            action=DunningAction.EXHAUSTED,
            invoice_id=invoice.invoice_id,
            failed_attempt_number=attempt_number,
            failure_reason=reason,
            risk_tier=tier,
            strategy=strategy.name,
            notification_template=self._policy.exhausted_template,
        )

    def _failure_template(
        self, invoice: Invoice, tier: RiskTier, strategy: RetryStrategy, now: datetime
    ) -> str:
        # Permanent-looking failures go straight to the most urgent step.
        if tier is RiskTier.HIGH and self._policy.steps:
            return max(self._policy.steps, key=lambda s: s.days_past_due).template
        if strategy.require_new_instrument:
            return self._policy.update_instrument_template
        return self._policy.template_for(self._days_past_due(invoice, now))

    @staticmethod
    def _days_past_due(invoice: Invoice, now: datetime) -> int:
        since = invoice.due_date or invoice.finalized_at
        if since is None:
            return 0
        return max(0, (now - since).days)

    # ------------------------------------------------------------------ #
    # Success path
    # ------------------------------------------------------------------ #

    async def on_payment_success(
        self, invoice_id: str, *, processor_ref: str | None = None
    ) -> Invoice:
        """Mark the invoice paid and bring the subscription back in good standing.

        Already paid invoices are returned untouched, so a success reported
        twice fires its side effects once. Paying the current period's
        invoice starts the next period, unless a cancellation was deferred to
        this boundary, in which case the subscription is canceled instead.
        """
        invoice = await self._require_invoice(invoice_id)
        async with self._store.serialized(invoice.subscription_id):
            invoice = await self._require_invoice(invoice_id)
            if invoice.status is InvoiceStatus.PAID:
                return invoice
            invoice = await self._builder.mark_paid(invoice_id, processor_ref=processor_ref)
            subscription = await self._require_subscription(invoice.subscription_id)
            now = self._clock()

            recovered = False
            if subscription.status is SubscriptionStatus.PAST_DUE:
                outstanding = await self._store.list_invoices(
                    subscription_id=subscription.subscription_id,
                    statuses=(InvoiceStatus.OPEN,),
                )
                if not outstanding:
                    subscription = await apply_transition(
                        self._store,
                        subscription,
                        SubscriptionStatus.ACTIVE,
                        at=now,
                        reason="payment_recovered",
                    )
                    recovered = True

            if (
                subscription.status is SubscriptionStatus.ACTIVE
                and invoice.period_end == subscription.current_period_end
            ):
                if subscription.cancel_at_period_end:
                    # The paid period was the last one the customer asked for.
                    subscription = await apply_transition(
                        self._store,
                        subscription,
                        SubscriptionStatus.CANCELED,
                        at=now,
                        reason="canceled_at_period_end",
                        canceled_at=now,
                        cancellation_reason="canceled_at_period_end",
                        cancel_at_period_end=False,
                    )
                else:
                    subscription = await self._advance_period(subscription, now)

            if recovered:
                await self._notify(subscription, self._policy.recovered_template, invoice=invoice)

        logger.info(
            "payment_succeeded",
            invoice_id=invoice_id,
            subscription_id=invoice.subscription_id,
            recovered=recovered,
        )
        return invoice

    async def _advance_period(self, subscription: Subscription, now: datetime) -> Subscription:
        plan = await self._catalog.get_plan(subscription.plan_id)
        if plan is not None:
            start, end = next_period(subscription, plan)
        else:
            start = subscription.current_period_end
            end = start + (subscription.current_period_end - subscription.current_period_start)
        updated = subscription.model_copy(
            update={"current_period_start": start, "current_period_end": end, "updated_at": now}
        )
        await self._store.save_subscription(updated)
        logger.info(
            "subscription_period_advanced",
            subscription_id=subscription.subscription_id,
            period_start=start,
            period_end=end,
        )
        return updated

    async def apply_attempt_outcome(self, attempt: PaymentAttempt) -> DunningDecision | None:
        """Route a settled attempt to the success or failure path."""
        if attempt.outcome is AttemptOutcome.SUCCEEDED:
            await self.on_payment_success(attempt.invoice_id, processor_ref=attempt.processor_ref)
            return None
        if attempt.outcome.is_failure:
            return await self.on_payment_failure(attempt.invoice_id, attempt.failure_reason)
        return None

    # ------------------------------------------------------------------ #
    # Timer entry point
    # ------------------------------------------------------------------ #

    async def process_due_retries(self) -> list[PaymentAttempt]:
        """Execute every scheduled attempt whose time has come.

        Attempts that need a new payment instrument the customer has not
        supplied yet only trigger a reminder. Attempts of paused
        subscriptions wait until the subscription resumes.
        """
        now = self._clock()
        executed: list[PaymentAttempt] = []
        for attempt in await self._store.list_due_attempts(now):
            try:
                result = await self._process_due_attempt(attempt)
            except StateConflictError as exc:
                logger.info(
                    "dunning_retry_skipped",
                    invoice_id=attempt.invoice_id,
                    attempt_number=attempt.attempt_number,
                    reason=exc.code,
                )
                continue
            if result is not None:
                executed.append(result)
        return executed

    async def _process_due_attempt(self, attempt: PaymentAttempt) -> PaymentAttempt | None:
        async with self._store.serialized(attempt.subscription_id):
            current = await self._collector.get_attempt(attempt.invoice_id, attempt.attempt_number)
            if current is None or current.outcome is not AttemptOutcome.SCHEDULED:
                return None
            invoice = await self._require_invoice(current.invoice_id)
            if invoice.status is not InvoiceStatus.OPEN:
                logger.info(
                    "dunning_retry_stale",
                    invoice_id=invoice.invoice_id,
                    invoice_status=invoice.status.value,
                )
                return None
            subscription = await self._require_subscription(current.subscription_id)
            if subscription.status is SubscriptionStatus.PAUSED:
                logger.info("dunning_retry_deferred", subscription_id=subscription.subscription_id)
                return None

            if current.requires_new_instrument and not _has_new_instrument(subscription, current):
                if not current.awaiting_instrument:
                    await self._store.save_attempt(
                        current.model_copy(update={"awaiting_instrument": True})
                    )
                    await self._notify(
                        subscription,
                        self._policy.update_instrument_template,
                        invoice=invoice,
                        attempt_number=current.attempt_number,
                    )
                logger.info(
                    "dunning_retry_awaiting_instrument",
                    invoice_id=invoice.invoice_id,
                    attempt_number=current.attempt_number,
                )
                return None

            executed = await self._collector.execute_attempt(
                current.invoice_id, current.attempt_number
            )
            await self.apply_attempt_outcome(executed)
            return executed

    # ------------------------------------------------------------------ #
    # Derived state
    # ------------------------------------------------------------------ #

    async def dunning_state(self, invoice_id: str) -> DunningState:
        invoice = await self._require_invoice(invoice_id)
        attempts = await self._store.list_attempts(invoice_id)
        failed = [a for a in attempts if a.outcome.is_failure]
        latest_failure = failed[-1] if failed else None
        pending = next((a for a in attempts if a.outcome.is_open), None)

        tier: RiskTier | None = None
        strategy: str | None = None
        if latest_failure is not None:
            tier = latest_failure.risk_tier or self._policy.classify(latest_failure.failure_reason)
            strategy = latest_failure.strategy or self._policy.strategy_for(tier).name

        requires = pending.requires_new_instrument if pending else False
        awaiting = False
        if pending is not None and requires:
            subscription = await self._store.get_subscription(invoice.subscription_id)
            awaiting = subscription is None or not _has_new_instrument(subscription, pending)

        return DunningState(
            invoice_id=invoice_id,
            attempts_so_far=sum(
                1
                for a in attempts
                if not a.outcome.is_open and a.outcome is not AttemptOutcome.CANCELED
            ),
            failed_attempts=len(failed),
            risk_tier=tier,
            strategy=strategy,
            next_retry_at=pending.scheduled_for if pending else None,
            requires_new_instrument=requires,
            awaiting_instrument=awaiting,
            exhausted=invoice.status is InvoiceStatus.UNCOLLECTIBLE,
        )

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _notify(
        self,
        subscription: Subscription,
        template: str,
        *,
        invoice: Invoice | None = None,
        **data: Any,
    ) -> None:
        if self._notifier is None:
            return
        payload: dict[str, Any] = {"subscription_id": subscription.subscription_id, **data}
        if invoice is not None:
            payload.update(
                invoice_id=invoice.invoice_id,
                amount=invoice.total,
                currency=invoice.currency,
            )
        await self._notifier.request_notification(
            subscription.organization_id,
            template,
            payload,
            channels=list(self._policy.channels),
        )

    async def _require_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self._store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id!r} not found", code="invoice_not_found")
        return invoice

    async def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(
                f"Subscription {subscription_id!r} not found",
                code="subscription_not_found",
            )
        return subscription


def _has_new_instrument(subscription: Subscription, attempt: PaymentAttempt) -> bool:
    return (
        subscription.payment_instrument_ref is not None
        and subscription.instrument_updated_at is not None
        and subscription.instrument_updated_at > attempt.created_at
    )
