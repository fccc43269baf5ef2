"""Notification dispatcher that fans requests out to multiple sinks."""

from __future__ import annotations

from typing import Any

import structlog

from billing_lifecycle.core.constants import NotificationChannel
from billing_lifecycle.notifications.models import NotificationRequest
from billing_lifecycle.notifications.sinks import NotificationSink

logger = structlog.get_logger(__name__)


class Notifier:
    """Fire-and-forget front door to the notification collaborator.

    Sends each :class:`NotificationRequest` to every registered sink. Sink
    failures are logged but never propagated to the billing operation that
    asked for the notification, and never retried.

    Example::

        notifier = Notifier([LogNotificationSink()])
        await notifier.request_notification(
            "org_1", "payment_failed_first_attempt", {"invoice_id": "in_1"}
        )
    """

    def __init__(
        self,
        sinks: list[NotificationSink] | None = None,
        default_channels: list[NotificationChannel] | None = None,
    ) -> None:
        self._sinks: list[NotificationSink] = list(sinks) if sinks else []
        self._default_channels = default_channels or [
            NotificationChannel.EMAIL,
            NotificationChannel.IN_APP,
        ]

    def add_sink(self, sink: NotificationSink) -> Notifier:
        """Register a new sink. Returns ``self`` for chaining."""
        self._sinks.append(sink)
        return self

    async def request_notification(
        self,
        user_ref: str,
        template_type: str,
        data: dict[str, Any] | None = None,
        *,
        channels: list[NotificationChannel] | None = None,
    ) -> NotificationRequest:
        """Build a request and dispatch it to all sinks."""
        request = NotificationRequest(
            user_ref=user_ref,
            template_type=template_type,
            channels=list(channels or self._default_channels),
            data=data or {},
        )
        for sink in self._sinks:
            try:
                await sink.send(request)
            except Exception:
                logger.warning(
                    "notification_sink_error",
                    sink=type(sink).__name__,
                    request_id=request.request_id,
                    template_type=template_type,
                    exc_info=True,
                )
        return request

    async def close(self) -> None:
        for sink in self._sinks:
            await sink.close()
