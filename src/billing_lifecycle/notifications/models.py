"""Notification request model."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from billing_lifecycle.core.constants import NotificationChannel


class NotificationRequest(BaseModel):
    """A request for the notification collaborator to contact a user.

    The engine only asks; rendering, delivery and delivery retries belong
    to the collaborator.
    """

    request_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    user_ref: str
    """Organization (or user) the notification is addressed to."""
    template_type: str
    channels: list[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.EMAIL, NotificationChannel.IN_APP]
    )
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
