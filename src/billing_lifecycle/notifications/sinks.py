"""Pluggable notification sinks: structlog, in-memory and HTTP webhook."""

from __future__ import annotations

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from collections import deque

import httpx
import structlog

from billing_lifecycle.notifications.models import NotificationRequest

logger = structlog.get_logger(__name__)


class NotificationSink(ABC):
    """Abstract base for notification transports.

    Subclass this to hand requests to an email service, a push gateway or a
    message queue.
    """

    @abstractmethod
    async def send(self, request: NotificationRequest) -> None:
        """Hand a single request to the transport. Raise on failure."""

    async def close(self) -> None:
        """Release resources held by the sink."""


class LogNotificationSink(NotificationSink):
    """Logs requests via structlog. Always available, no external dependencies."""

    async def send(self, request: NotificationRequest) -> None:
        logger.info(
            "notification_requested",
            request_id=request.request_id,
            user_ref=request.user_ref,
            template_type=request.template_type,
            channels=[c.value for c in request.channels],
        )


class InMemoryNotificationSink(NotificationSink):
    """Circular-buffer sink backed by :class:`collections.deque`.

    Args:
        max_entries: Maximum number of requests to retain (default 10 000).
    """

    def __init__(self, max_entries: int = 10000) -> None:
        self._requests: deque[NotificationRequest] = deque(maxlen=max_entries)

    async def send(self, request: NotificationRequest) -> None:
        self._requests.append(request)

    @property
    def requests(self) -> list[NotificationRequest]:
        """Return all stored requests (oldest first)."""
        return list(self._requests)

    @property
    def templates(self) -> list[str]:
        return [r.template_type for r in self._requests]

    def for_user(self, user_ref: str) -> list[NotificationRequest]:
        return [r for r in self._requests if r.user_ref == user_ref]

    def clear(self) -> None:
        self._requests.clear()


class WebhookNotificationSink(NotificationSink):
    """POSTs each request as JSON to a notification service.

    When *secret* is set the body is signed with HMAC-SHA256 and the hex
    digest sent in ``X-Billing-Signature``. Non-2xx responses raise
    :class:`httpx.HTTPStatusError`; there are no retries here.
    """

    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._headers = headers or {}
        self._timeout = timeout_seconds
        self._http_client = http_client

    @staticmethod
    def compute_signature(payload_bytes: bytes, secret: str) -> str:
        """Compute HMAC-SHA256 signature for a payload."""
        return hmac.new(secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()

    async def send(self, request: NotificationRequest) -> None:
        payload_bytes = json.dumps(request.model_dump(mode="json")).encode("utf-8")
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "X-Billing-Template": request.template_type,
            **self._headers,
        }
        if self._secret:
            headers["X-Billing-Signature"] = self.compute_signature(payload_bytes, self._secret)

        should_close = False
        client = self._http_client
        if client is None:
            client = httpx.AsyncClient()
            should_close = True
        try:
            response = await client.post(
                self._url,
                content=payload_bytes,
                headers=headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
        finally:
            if should_close:
                await client.aclose()
