"""Usage meter: append-only usage records, consumption and overage."""

from __future__ import annotations

import math
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from billing_lifecycle.core.constants import UsageLevel
from billing_lifecycle.core.exceptions import (
    InvalidQuantity,
    InvalidTimestamp,
    NoActivePlan,
    SubscriptionNotFound,
    UnknownFeature,
)
from billing_lifecycle.usage.models import (
    FeatureUsage,
    UsageBand,
    UsageRecord,
    UsageSummary,
    default_usage_bands,
)
from billing_lifecycle.utils.clock import Clock, utc_now

if TYPE_CHECKING:
    from billing_lifecycle.catalog.catalog import EntitlementCatalog
    from billing_lifecycle.catalog.models import FeatureEntitlement, Plan
    from billing_lifecycle.notifications.notifier import Notifier
    from billing_lifecycle.storage.base import BillingStore
    from billing_lifecycle.subscriptions.models import Subscription

logger = structlog.get_logger(__name__)

THRESHOLD_TEMPLATE = "usage_threshold_reached"


class UsageMeter:
    """Records metered usage and measures it against plan entitlements.

    Recording is append-only and does not take the subscription's
    single-writer section. Records timestamped before the subscription's
    closed-through boundary are rejected by the store with
    :class:`UsagePeriodClosed`.

    Usage::

        meter = UsageMeter(store, catalog)
        await meter.record_usage("sub_1", "api_calls", 25)
        used = await meter.get_consumption("sub_1", "api_calls", start, end)
    """

    def __init__(
        self,
        store: BillingStore,
        catalog: EntitlementCatalog,
        *,
        notifier: Notifier | None = None,
        bands: list[UsageBand] | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._notifier = notifier
        self._bands = sorted(
            bands if bands is not None else default_usage_bands(),
            key=lambda band: band.min_ratio,
            reverse=True,
        )
        self._clock = clock

    # ------------------------------------------------------------------ #
    # Recording
    # ------------------------------------------------------------------ #

    async def record_usage(
        self,
        subscription_id: str,
        feature_id: str,
        quantity: float,
        timestamp: datetime | None = None,
    ) -> UsageRecord:
        """Append one usage record.

        Raises:
            InvalidQuantity: *quantity* is negative or not a finite number.
            InvalidTimestamp: *timestamp* is naive.
            SubscriptionNotFound: No such subscription.
            UnknownFeature: *feature_id* is not an entitlement of the plan.
            UsagePeriodClosed: *timestamp* falls in an already invoiced period.
        """
        if not math.isfinite(quantity) or quantity < 0:
            raise InvalidQuantity(
                f"Usage quantity must be a non-negative number, got {quantity!r}",
                code="invalid_quantity",
                details={"feature_id": feature_id},
            )
        if timestamp is not None and timestamp.utcoffset() is None:
            raise InvalidTimestamp(
                "Usage timestamp must carry a UTC offset",
                code="invalid_timestamp",
                details={"feature_id": feature_id, "timestamp": timestamp.isoformat()},
            )
        subscription = await self._require_subscription(subscription_id)
        plan = await self._require_plan(subscription)
        if plan.feature(feature_id) is None:
            raise UnknownFeature(
                f"Feature {feature_id!r} is not part of plan {plan.id!r}",
                code="unknown_feature",
                details={"plan_id": plan.id, "feature_id": feature_id},
            )

        record = UsageRecord(
            subscription_id=subscription_id,
            feature_id=feature_id,
            quantity=quantity,
            timestamp=timestamp or self._clock(),
        )
        await self._store.append_usage(record)
        logger.debug(
            "usage_recorded",
            subscription_id=subscription_id,
            feature_id=feature_id,
            quantity=quantity,
        )
        return record

    async def close_period(self, subscription_id: str, through: datetime) -> None:
        """Reject any later usage write timestamped before *through*."""
        await self._store.close_usage_period(subscription_id, through)
        logger.info("usage_period_closed", subscription_id=subscription_id, through=through)

    # ------------------------------------------------------------------ #
    # Measuring
    # ------------------------------------------------------------------ #

    async def get_consumption(
        self,
        subscription_id: str,
        feature_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> float:
        """Sum quantities of records with timestamps in ``[period_start, period_end)``.

        An empty or inverted window contains no records and measures 0.
        """
        if period_end <= period_start:
            return 0.0
        records = await self._store.list_usage(
            subscription_id, feature_id, period_start, period_end
        )
        return math.fsum(r.quantity for r in records)

    @staticmethod
    def compute_overage(consumption: float, included_units: float) -> float:
        return max(0.0, consumption - included_units)

    def classify_usage(self, consumption: float, included_units: float) -> UsageLevel:
        """Map consumption onto a band; the highest satisfied lower bound wins."""
        if included_units <= 0:
            return UsageLevel.EXCEEDED if consumption > 0 else UsageLevel.NORMAL
        ratio = consumption / included_units
        for band in self._bands:
            if ratio >= band.min_ratio:
                return band.level
        return UsageLevel.NORMAL

    async def measure_feature(
        self,
        subscription_id: str,
        entitlement: FeatureEntitlement,
        period_start: datetime,
        period_end: datetime,
    ) -> FeatureUsage:
        consumption = await self.get_consumption(
            subscription_id, entitlement.id, period_start, period_end
        )
        return FeatureUsage(
            feature_id=entitlement.id,
            period_start=period_start,
            period_end=period_end,
            consumption=consumption,
            included_units=entitlement.included_units,
            remaining=max(0.0, entitlement.included_units - consumption),
            overage=self.compute_overage(consumption, entitlement.included_units),
            overage_rate=entitlement.overage_rate,
            level=self.classify_usage(consumption, entitlement.included_units),
        )

    async def usage_summary(self, subscription_id: str) -> UsageSummary:
        """Per-feature usage for the subscription's current period."""
        subscription = await self._require_subscription(subscription_id)
        plan = await self._require_plan(subscription)
        start = subscription.current_period_start
        end = subscription.current_period_end
        features = [
            await self.measure_feature(subscription_id, entitlement, start, end)
            for entitlement in plan.features
        ]
        return UsageSummary(
            subscription_id=subscription_id,
            period_start=start,
            period_end=end,
            features=features,
        )

    async def check_thresholds(self, subscription_id: str) -> list[FeatureUsage]:
        """Request a notification for each newly reached usage band.

        Each (subscription, feature, band, period) is notified at most once.
        Returns the feature usages that triggered a notification.
        """
        summary = await self.usage_summary(subscription_id)
        subscription = await self._require_subscription(subscription_id)
        notified: list[FeatureUsage] = []
        for usage in summary.features:
            if usage.level is UsageLevel.NORMAL:
                continue
            key = (
                f"{subscription_id}:{usage.feature_id}:{usage.level.value}:"
                f"{summary.period_start.isoformat()}"
            )
            if not await self._store.mark_threshold_notified(key):
                continue
            notified.append(usage)
            logger.info(
                "usage_threshold_reached",
                subscription_id=subscription_id,
                feature_id=usage.feature_id,
                level=usage.level.value,
                consumption=usage.consumption,
                included_units=usage.included_units,
            )
            if self._notifier is not None:
                await self._notifier.request_notification(
                    subscription.organization_id,
                    THRESHOLD_TEMPLATE,
                    {
                        "subscription_id": subscription_id,
                        "feature_id": usage.feature_id,
                        "level": usage.level.value,
                        "consumption": usage.consumption,
                        "included_units": usage.included_units,
                        "overage": usage.overage,
                    },
                )
        return notified

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    async def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(
                f"Subscription {subscription_id!r} not found",
                code="subscription_not_found",
            )
        return subscription

    async def _require_plan(self, subscription: Subscription) -> Plan:
        plan = await self._catalog.get_plan(subscription.plan_id)
        if plan is None:
            raise NoActivePlan(
                f"Plan {subscription.plan_id!r} cannot be resolved",
                code="no_active_plan",
                details={"subscription_id": subscription.subscription_id},
            )
        return plan
