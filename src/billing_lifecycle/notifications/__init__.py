from billing_lifecycle.notifications.models import NotificationRequest
from billing_lifecycle.notifications.notifier import Notifier
from billing_lifecycle.notifications.sinks import (
    InMemoryNotificationSink,
    LogNotificationSink,
    NotificationSink,
    WebhookNotificationSink,
)

__all__ = [
    "InMemoryNotificationSink",
    "LogNotificationSink",
    "NotificationRequest",
    "NotificationSink",
    "Notifier",
    "WebhookNotificationSink",
]
