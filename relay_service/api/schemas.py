"""API response schemas.

Pydantic models for API serialization. The send request body itself is
``relay_service.models.requests.SendEmailRequest``.

Version: 2.0.0
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from relay_service.models.message import MessageRecord


class SendEmailData(BaseModel):
    messageId: str = Field(description="Identifier of the queued message")
    status: str = Field(description="Message status (QUEUED)")


class SendEmailResponse(BaseModel):
    """Response model for POST /v1/send."""

    success: bool = True
    data: SendEmailData


class ErrorDetail(BaseModel):
    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable explanation")


class ErrorResponse(BaseModel):
    """Error body for policy and authentication failures."""

    success: bool = False
    error: ErrorDetail


class EventOut(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)
    createdAt: datetime


class MessageOut(BaseModel):
    """A message with its event log, oldest event first."""

    id: str
    status: str
    from_: str = Field(alias="from")
    to: list[str]
    subject: str
    tags: list[str]
    providerMessageId: str | None = None
    error: str | None = None
    createdAt: datetime
    sentAt: datetime | None = None
    deliveredAt: datetime | None = None
    events: list[EventOut] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @classmethod
    def from_record(cls, message: MessageRecord, events: list) -> MessageOut:
        return cls(
            id=message.id,
            status=message.status.value,
            from_=message.from_address.formatted(),
            to=[a.formatted() for a in message.to],
            subject=message.subject,
            tags=sorted(message.tags),
            providerMessageId=message.external_id,
            error=message.error,
            createdAt=message.created_at,
            sentAt=message.sent_at,
            deliveredAt=message.delivered_at,
            events=[
                EventOut(type=e.type.value, data=e.data, createdAt=e.created_at)
                for e in events
            ],
        )


class MessageResponse(BaseModel):
    """Response model for GET /v1/messages/{id}."""

    success: bool = True
    data: MessageOut


class QueueCounts(BaseModel):
    waiting: int = Field(description="Jobs ready to be leased")
    active: int = Field(description="Jobs currently leased by a worker")
    delayed: int = Field(description="Jobs waiting for their retry time")
    completed: int = Field(description="Finished jobs")
    failed: int = Field(description="Jobs that exhausted their attempts")
    success_rate: float = Field(description="completed / (completed + failed), percent")


class QueueStatusResponse(BaseModel):
    """Response model for GET /queue/status."""

    queues: dict[str, QueueCounts]
    timestamp: datetime = Field(default_factory=lambda: datetime.now())


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    status: str = Field(description="Overall status (ok/degraded)")
    db: str = Field(description="Database connection status")
    transport: str = Field(description="Outbound transport mode")
    version: str = Field(description="Service version")
    timestamp: datetime = Field(default_factory=lambda: datetime.now())
