"""Webhook subscription and delivery models.

Version: 1.0.0
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEventType(str, Enum):
    """Event names a webhook subscription can listen to."""

    MESSAGE_QUEUED = "message.queued"
    MESSAGE_SENT = "message.sent"
    MESSAGE_DELIVERED = "message.delivered"
    MESSAGE_BOUNCED = "message.bounced"
    MESSAGE_COMPLAINED = "message.complained"
    MESSAGE_FAILED = "message.failed"
    RECIPIENT_UNSUBSCRIBED = "recipient.unsubscribed"


class WebhookSubscription(BaseModel):
    """Subscriber endpoint registered for a project.

    Attributes:
        url: Endpoint receiving signed POST requests.
        secret: HMAC key used to sign payloads.
        events: Subscribed event types.
        active: Inactive subscriptions are skipped without touching counters.
        success_count: Deliveries answered with 2xx.
        fail_count: Deliveries answered otherwise or not answered.
    """

    id: str
    project_id: str
    url: str
    secret: str
    events: set[WebhookEventType] = Field(default_factory=set)
    active: bool = True
    success_count: int = 0
    fail_count: int = 0
    last_triggered_at: datetime | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class WebhookDeliveryRecord(BaseModel):
    """One delivery attempt.

    Either ``status_code``/``response_body`` or ``error`` is set, never both.
    """

    id: int
    webhook_id: str
    event_type: WebhookEventType
    payload: dict[str, Any]
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class WebhookPayload(BaseModel):
    """Wire shape POSTed to subscribers: ``{event, timestamp, data}``."""

    event: WebhookEventType
    timestamp: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return {"event": self.event.value, "timestamp": self.timestamp, "data": self.data}
