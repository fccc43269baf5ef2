from __future__ import annotations

from enum import StrEnum


class SubscriptionStatus(StrEnum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    PAUSED = "paused"
    CANCELED = "canceled"  # terminal

    @property
    def is_terminal(self) -> bool:
        return self is SubscriptionStatus.CANCELED


class InvoiceStatus(StrEnum):
    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


class AttemptOutcome(StrEnum):
    # Non-terminal: at most one of these per invoice at any time
    SCHEDULED = "scheduled"
    PENDING = "pending"

    # Terminal outcomes normalized from processor responses
    SUCCEEDED = "succeeded"
    DECLINED_RETRYABLE = "declined_retryable"
    DECLINED_PERMANENT = "declined_permanent"
    PROCESSOR_ERROR = "processor_error"

    # A scheduled retry dropped because its invoice left ``open`` first
    CANCELED = "canceled"

    @property
    def is_open(self) -> bool:
        return self in (AttemptOutcome.SCHEDULED, AttemptOutcome.PENDING)

    @property
    def is_failure(self) -> bool:
        return self in (
            AttemptOutcome.DECLINED_RETRYABLE,
            AttemptOutcome.DECLINED_PERMANENT,
            AttemptOutcome.PROCESSOR_ERROR,
        )


class RiskTier(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class UsageLevel(StrEnum):
    NORMAL = "normal"
    ATTENTION = "attention"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


class BillingInterval(StrEnum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class LineItemKind(StrEnum):
    BASE = "base"
    OVERAGE = "overage"
    ADJUSTMENT = "adjustment"
    TAX = "tax"


class NotificationChannel(StrEnum):
    EMAIL = "email"
    IN_APP = "in_app"
    PUSH = "push"


class DunningAction(StrEnum):
    RETRY_SCHEDULED = "retry_scheduled"
    EXHAUSTED = "exhausted"
    NOT_APPLICABLE = "not_applicable"


class ReconciliationStatus(StrEnum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    IGNORED = "ignored"
    CONFLICT = "conflict"
