"""Message data models.

Defines the accepted message record, its status state machine, the
append-only event log entries and the address/attachment value types shared
by the API, the SMTP relay and the delivery worker.

Version: 1.0.0
"""

from __future__ import annotations

import base64
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, EmailStr, Field, field_validator


class MessageStatus(str, Enum):
    """Message delivery status enumeration.

    Lifecycle: QUEUED -> PROCESSING -> SENT -> DELIVERED, with PROCESSING ->
    RETRYING -> PROCESSING on retryable failures and PROCESSING -> FAILED once
    attempts are exhausted. BOUNCED and COMPLAINED are reserved for delivery
    receipts reported by an upstream provider.
    """

    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    BOUNCED = "BOUNCED"
    COMPLAINED = "COMPLAINED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.DELIVERED, MessageStatus.FAILED)


class EventType(str, Enum):
    """Type of an entry in a message's event log."""

    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    BOUNCED = "BOUNCED"
    COMPLAINED = "COMPLAINED"
    FAILED = "FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    OPENED = "OPENED"
    CLICKED = "CLICKED"


class Address(BaseModel):
    """Email address with optional display name."""

    email: EmailStr = Field(..., description="Email address")
    name: str | None = Field(default=None, max_length=255, description="Display name")

    def formatted(self) -> str:
        """Return the address in ``"Name" <email>`` display form.

        Example:
            >>> Address(email="ann@x.com", name="Ann").formatted()
            '"Ann" <ann@x.com>'
        """
        if self.name:
            name = self.name.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{name}" <{self.email}>'
        return str(self.email)

    @classmethod
    def coerce(cls, value: str | dict | Address) -> Address:
        """Build an Address from a bare string, a dict or an Address."""
        if isinstance(value, Address):
            return value
        if isinstance(value, str):
            return cls(email=value)
        return cls.model_validate(value)


class Attachment(BaseModel):
    """File attachment carried as base64 text.

    Attributes:
        filename: File name shown to the recipient.
        content: Base64 encoded file content.
        content_type: MIME type (defaults to application/octet-stream).
    """

    filename: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., description="Base64 encoded content")
    content_type: str | None = Field(default=None, max_length=255)

    @field_validator("content")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except ValueError as e:
            raise ValueError(f"Attachment content is not valid base64: {e}") from e
        return v

    def decoded(self) -> bytes:
        """Return the raw attachment bytes."""
        return base64.b64decode(self.content)


class MessageCreate(BaseModel):
    """Fields required to persist a newly accepted message."""

    project_id: str
    from_address: Address
    to: list[Address] = Field(..., min_length=1)
    reply_to: Address | None = None
    subject: str
    html: str | None = None
    text: str | None = None
    template_id: str | None = None
    variables: dict[str, Any] | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    tags: set[str] = Field(default_factory=set)
    idempotency_key: str | None = None


class MessageRecord(BaseModel):
    """Persisted message row.

    Attributes:
        id: Message identifier.
        project_id: Owning project.
        status: Current delivery status.
        external_id: Provider message id once accepted upstream.
        error: Text of the last delivery error.
        tags: Free-form labels; order is irrelevant.
    """

    id: str
    project_id: str
    from_address: Address
    to: list[Address]
    reply_to: Address | None = None
    subject: str
    html: str | None = None
    text: str | None = None
    template_id: str | None = None
    variables: dict[str, Any] | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    tags: set[str] = Field(default_factory=set)
    idempotency_key: str | None = None
    status: MessageStatus = MessageStatus.QUEUED
    external_id: str | None = None
    error: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    opened_at: datetime | None = None
    clicked_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {
        "from_attributes": True,
        "use_enum_values": False,
    }

    @property
    def first_recipient(self) -> str:
        return str(self.to[0].email)


class EventRecord(BaseModel):
    """Append-only event log entry tied to a message."""

    id: int
    message_id: str
    type: EventType
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = {"from_attributes": True}
