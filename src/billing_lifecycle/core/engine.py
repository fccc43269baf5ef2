"""Billing engine facade: wires the lifecycle components together."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import structlog
from pydantic import BaseModel, Field

from billing_lifecycle.catalog.catalog import EntitlementCatalog
from billing_lifecycle.collection.collector import PaymentCollector
from billing_lifecycle.collection.models import PaymentAttempt
from billing_lifecycle.core.config import EngineConfig
from billing_lifecycle.core.constants import SubscriptionStatus
from billing_lifecycle.core.exceptions import BillingLifecycleError
from billing_lifecycle.dunning.models import DunningDecision, DunningState
from billing_lifecycle.dunning.scheduler import DunningScheduler
from billing_lifecycle.invoicing.builder import InvoiceBuilder
from billing_lifecycle.invoicing.models import Invoice
from billing_lifecycle.notifications.notifier import Notifier
from billing_lifecycle.processor.base import PaymentProcessor
from billing_lifecycle.reconciliation.models import ProcessorEvent, ReconciliationResult
from billing_lifecycle.reconciliation.reconciler import EventReconciler
from billing_lifecycle.resilience.retry import RetryPolicy
from billing_lifecycle.storage.base import BillingStore
from billing_lifecycle.storage.retrying import RetryingBillingStore
from billing_lifecycle.subscriptions.machine import PeriodCloseResult, SubscriptionStateMachine
from billing_lifecycle.subscriptions.models import Subscription
from billing_lifecycle.tax.rates import TaxRateProvider
from billing_lifecycle.usage.meter import UsageMeter
from billing_lifecycle.usage.models import UsageRecord, UsageSummary
from billing_lifecycle.utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class ProcessDueReport(BaseModel):
    """What one :meth:`BillingEngine.process_due` pass did."""

    resumed: list[str] = Field(default_factory=list)
    trials_settled: list[str] = Field(default_factory=list)
    thresholds_notified: list[str] = Field(default_factory=list)
    periods_closed: list[str] = Field(default_factory=list)
    retries_executed: list[str] = Field(default_factory=list)


class BillingEngine:
    """Entry point owning the lifecycle components and their wiring.

    Collaborators are passed in; nothing is read from module-level state.
    The process entry point builds one engine and calls :meth:`process_due`
    from its scheduler and :meth:`apply_external_event` from its webhook
    endpoint.

    Usage::

        engine = BillingEngine(
            store=InMemoryBillingStore(),
            catalog=InMemoryEntitlementCatalog.from_json_file("plans.json"),
            processor=MockPaymentProcessor(),
            config=EngineConfig.from_env(),
        )
        sub = await engine.create_subscription("org_1", "pro", payment_instrument_ref="pm_1")
        await engine.record_usage(sub.subscription_id, "api_calls", 25)
        report = await engine.process_due()

    Args:
        store: Persistence collaborator. Reads are wrapped in a bounded
            retry when ``config.persistence_read_retries`` is positive.
        catalog: Plan and entitlement source.
        processor: Payment processor.
        notifier: Notification front door. Optional.
        tax_rates: Tax-rate lookup. Optional; without it invoices carry no tax.
        config: Policy and limits. Defaults to :class:`EngineConfig` defaults.
        clock: Source of "now"; tests pass a fake clock.
    """

    def __init__(
        self,
        store: BillingStore,
        catalog: EntitlementCatalog,
        processor: PaymentProcessor,
        *,
        notifier: Notifier | None = None,
        tax_rates: TaxRateProvider | None = None,
        config: EngineConfig | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or EngineConfig()
        if self.config.persistence_read_retries > 0:
            store = RetryingBillingStore(
                store,
                RetryPolicy(
                    max_retries=self.config.persistence_read_retries,
                    backoff_base=self.config.persistence_retry_backoff,
                ),
            )
        self.store = store
        self.notifier = notifier
        policy = self.config.dunning

        self.meter = UsageMeter(
            store, catalog, notifier=notifier, bands=self.config.usage_bands, clock=clock
        )
        self.builder = InvoiceBuilder(
            store,
            catalog,
            self.meter,
            tax_rates=tax_rates,
            invoice_due_days=self.config.invoice_due_days,
            clock=clock,
        )
        self.collector = PaymentCollector(
            store,
            processor,
            policy=policy,
            timeout_seconds=self.config.processor_timeout_seconds,
            clock=clock,
        )
        self.scheduler = DunningScheduler(
            store,
            self.collector,
            self.builder,
            catalog,
            notifier=notifier,
            policy=policy,
            clock=clock,
        )
        self.subscriptions = SubscriptionStateMachine(
            store,
            catalog,
            self.meter,
            self.builder,
            self.collector,
            self.scheduler,
            max_pause_days=self.config.max_pause_days,
            clock=clock,
        )
        self.reconciler = EventReconciler(
            store,
            self.subscriptions,
            self.collector,
            self.scheduler,
            processor=processor,
            clock=clock,
        )

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    async def create_subscription(
        self, organization_id: str, plan_id: str, **kwargs: Any
    ) -> Subscription:
        return await self.subscriptions.create_subscription(organization_id, plan_id, **kwargs)

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self.subscriptions.get_subscription(subscription_id)

    async def pause(self, subscription_id: str, days: int = 30) -> Subscription:
        return await self.subscriptions.pause(subscription_id, timedelta(days=days))

    async def resume(self, subscription_id: str) -> Subscription:
        return await self.subscriptions.resume(subscription_id)

    async def cancel(self, subscription_id: str, *, at_period_end: bool = False) -> Subscription:
        return await self.subscriptions.cancel(subscription_id, at_period_end=at_period_end)

    async def change_plan(
        self, subscription_id: str, new_plan_id: str, *, prorate: bool = True
    ) -> Subscription:
        return await self.subscriptions.change_plan(subscription_id, new_plan_id, prorate=prorate)

    async def update_payment_instrument(
        self, subscription_id: str, instrument_ref: str
    ) -> Subscription:
        return await self.subscriptions.update_payment_instrument(subscription_id, instrument_ref)

    async def close_period(self, subscription_id: str) -> PeriodCloseResult:
        return await self.subscriptions.close_period(subscription_id)

    # ------------------------------------------------------------------ #
    # Usage
    # ------------------------------------------------------------------ #

    async def record_usage(
        self, subscription_id: str, feature_id: str, quantity: float, **kwargs: Any
    ) -> UsageRecord:
        return await self.meter.record_usage(subscription_id, feature_id, quantity, **kwargs)

    async def usage_summary(self, subscription_id: str) -> UsageSummary:
        return await self.meter.usage_summary(subscription_id)

    async def check_usage_thresholds(self) -> list[str]:
        """Send usage-band alerts for every live subscription.

        Returns ``subscription_id:feature_id:level`` for each new alert.
        One subscription's failure does not stop the batch.
        """
        notified: list[str] = []
        live = await self.store.list_subscriptions(
            statuses=[
                SubscriptionStatus.TRIALING,
                SubscriptionStatus.ACTIVE,
                SubscriptionStatus.PAST_DUE,
            ]
        )
        for sub in live:
            try:
                usages = await self.meter.check_thresholds(sub.subscription_id)
            except BillingLifecycleError as exc:
                logger.error(
                    "usage_threshold_check_failed",
                    subscription_id=sub.subscription_id,
                    code=exc.code,
                    error=str(exc),
                )
                continue
            notified.extend(
                f"{sub.subscription_id}:{usage.feature_id}:{usage.level.value}" for usage in usages
            )
        return notified

    # ------------------------------------------------------------------ #
    # Invoices and dunning
    # ------------------------------------------------------------------ #

    async def get_invoice(self, invoice_id: str) -> Invoice:
        return await self.builder.get_invoice(invoice_id)

    async def list_invoices(self, subscription_id: str) -> list[Invoice]:
        return await self.store.list_invoices(subscription_id=subscription_id)

    async def list_attempts(self, invoice_id: str) -> list[PaymentAttempt]:
        return await self.collector.list_attempts(invoice_id)

    async def dunning_state(self, invoice_id: str) -> DunningState:
        return await self.scheduler.dunning_state(invoice_id)

    async def on_payment_failure(self, invoice_id: str, failure_reason: str) -> DunningDecision:
        return await self.scheduler.on_payment_failure(invoice_id, failure_reason)

    # ------------------------------------------------------------------ #
    # Processor events
    # ------------------------------------------------------------------ #

    async def apply_external_event(
        self, event: ProcessorEvent | dict[str, Any]
    ) -> ReconciliationResult:
        return await self.reconciler.apply_external_event(event)

    # ------------------------------------------------------------------ #
    # Timers
    # ------------------------------------------------------------------ #

    async def process_due(self) -> ProcessDueReport:
        """Run every time-driven transition that is due, in dependency order.

        Pauses ending first, so a resumed subscription's retries run in the
        same pass; then trials; then usage thresholds, while an ended period
        is still current; then period rollovers; then dunning retries.
        """
        report = ProcessDueReport()
        for sub in await self.subscriptions.auto_resume_due():
            report.resumed.append(sub.subscription_id)
        for sub in await self.subscriptions.activate_due_trials():
            report.trials_settled.append(sub.subscription_id)
        report.thresholds_notified.extend(await self.check_usage_thresholds())
        for result in await self.subscriptions.close_due_periods():
            report.periods_closed.append(result.subscription.subscription_id)
        for attempt in await self.scheduler.process_due_retries():
            report.retries_executed.append(attempt.idempotency_key)
        logger.info(
            "process_due_completed",
            resumed=len(report.resumed),
            trials_settled=len(report.trials_settled),
            thresholds_notified=len(report.thresholds_notified),
            periods_closed=len(report.periods_closed),
            retries_executed=len(report.retries_executed),
        )
        return report

    async def close(self) -> None:
        if self.notifier is not None:
            await self.notifier.close()
