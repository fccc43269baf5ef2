from __future__ import annotations

from typing import Any


class BillingLifecycleError(Exception):
    """Base exception for all billing lifecycle errors.

    Attributes:
        code: Optional machine-readable error code (e.g. ``"invalid_transition"``).
        details: Arbitrary key/value context about the error.
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}

    @property
    def is_retryable(self) -> bool:
        """Whether the operation that raised this error can be retried."""
        return False


class ConfigurationError(BillingLifecycleError): ...


# ---------------------------------------------------------------------------
# Validation errors: bad input, rejected before any side effect
# ---------------------------------------------------------------------------


class ValidationError(BillingLifecycleError): ...


class InvalidQuantity(ValidationError): ...


class UnknownFeature(ValidationError): ...


class InvalidPauseDuration(ValidationError): ...


class InvalidPeriod(ValidationError): ...


class InvalidTimestamp(ValidationError): ...


# ---------------------------------------------------------------------------
# State conflicts: the caller must re-read state before trying again
# ---------------------------------------------------------------------------


class StateConflictError(BillingLifecycleError): ...


class InvalidTransition(StateConflictError): ...


class InvalidInvoiceTransition(StateConflictError): ...


class AlreadyFinalized(InvalidInvoiceTransition): ...


class DuplicateSubscription(StateConflictError): ...


class UsagePeriodClosed(StateConflictError): ...


class AttemptInFlight(StateConflictError): ...


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


class NotFoundError(BillingLifecycleError): ...


class SubscriptionNotFound(NotFoundError): ...


class InvoiceNotFound(NotFoundError): ...


class NoActivePlan(NotFoundError): ...


# ---------------------------------------------------------------------------
# Transient collaborator failures
# ---------------------------------------------------------------------------


class PersistenceUnavailable(BillingLifecycleError):
    """The persistence collaborator could not serve the request.

    Always retryable; reads are retried a small fixed number of times.
    """

    @property
    def is_retryable(self) -> bool:  # noqa: D102
        return True


class ProcessorError(BillingLifecycleError):
    """The payment processor failed without a definitive charge outcome.

    Always retryable. The collector turns it into ``processor_error``.
    """

    @property
    def is_retryable(self) -> bool:  # noqa: D102
        return True
