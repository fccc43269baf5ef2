"""Bounded retry with exponential backoff for persistence reads."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel, Field

from billing_lifecycle.core.exceptions import BillingLifecycleError, PersistenceUnavailable

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class RetryPolicy(BaseModel):
    """A small fixed number of retries, never an unbounded loop.

    Attributes:
        max_retries: Retries after the first call (0 = call once).
        backoff_base: Base delay in seconds; attempt *n* waits
            ``backoff_base * 2**n`` capped at ``backoff_max``.
        backoff_max: Ceiling for a single delay.
        jitter: Spread delays uniformly over ``[0, delay]``.
        retryable_exceptions: Exception types retried when the exception
            does not say otherwise through ``is_retryable``.
    """

    max_retries: int = Field(default=3, ge=0, le=10)
    backoff_base: float = Field(default=0.05, ge=0.0)
    backoff_max: float = Field(default=1.0, ge=0.0)
    jitter: bool = True
    retryable_exceptions: tuple[type[Exception], ...] = (PersistenceUnavailable,)

    model_config = {"arbitrary_types_allowed": True}

    def _is_retryable(self, exc: Exception) -> bool:
        # Billing errors decide for themselves; anything else goes by type.
        if isinstance(exc, BillingLifecycleError):
            return exc.is_retryable and isinstance(exc, self.retryable_exceptions)
        return isinstance(exc, self.retryable_exceptions)

    def _compute_delay(self, attempt: int) -> float:
        delay: float = min(self.backoff_base * (2 ** attempt), self.backoff_max)
        if self.jitter:
            delay = random.uniform(0, delay)  # noqa: S311
        return delay

    async def execute(
        self,
        fn: Callable[..., Awaitable[_T]],
        *args: Any,
        **kwargs: Any,
    ) -> _T:
        """Await ``fn(*args, **kwargs)``, retrying retryable failures.

        Raises:
            Exception: The last error once retries are exhausted, or the
                first non-retryable error immediately.
        """
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                if not self._is_retryable(exc):
                    raise
                if attempt >= self.max_retries:
                    logger.warning(
                        "Persistence retry exhausted after %d attempt(s): %s",
                        attempt + 1,
                        exc,
                    )
                    raise
                delay = self._compute_delay(attempt)
                logger.info(
                    "Persistence retry %d/%d after %.3fs: %s",
                    attempt + 1,
                    self.max_retries,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                attempt += 1
