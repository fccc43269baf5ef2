"""Status changes shared by every component that moves a subscription."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog

from billing_lifecycle.core.constants import SubscriptionStatus
from billing_lifecycle.core.exceptions import InvalidTransition
from billing_lifecycle.subscriptions.models import StatusChange, Subscription
from billing_lifecycle.utils.periods import add_interval

if TYPE_CHECKING:
    from billing_lifecycle.catalog.models import Plan
    from billing_lifecycle.storage.base import BillingStore

logger = structlog.get_logger(__name__)


def ensure_transition(subscription: Subscription, target: SubscriptionStatus) -> None:
    if not subscription.can_transition_to(target):
        raise InvalidTransition(
            f"Subscription {subscription.subscription_id} cannot move from "
            f"{subscription.status.value} to {target.value}",
            code="invalid_transition",
            details={"from": subscription.status.value, "to": target.value},
        )


async def apply_transition(
    store: BillingStore,
    subscription: Subscription,
    target: SubscriptionStatus,
    *,
    at: datetime,
    reason: str = "",
    **changes: Any,
) -> Subscription:
    """Validate, record history and save in one step.

    The caller must hold the subscription's single-writer section. Nothing
    is written when the transition is not allowed.
    """
    ensure_transition(subscription, target)
    entry = StatusChange(from_status=subscription.status, to_status=target, at=at, reason=reason)
    updated = subscription.model_copy(
        update={
            **changes,
            "status": target,
            "history": [*subscription.history, entry],
            "updated_at": at,
        }
    )
    await store.save_subscription(updated)
    logger.info(
        "subscription_transitioned",
        subscription_id=subscription.subscription_id,
        from_status=subscription.status.value,
        to_status=target.value,
        reason=reason,
    )
    return updated


def next_period(subscription: Subscription, plan: Plan) -> tuple[datetime, datetime]:
    start = subscription.current_period_end
    return start, add_interval(start, plan.interval, plan.interval_count)
