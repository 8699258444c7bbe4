"""Durable job queue models.

A job row carries a typed payload. The payload is a tagged union over the
job kind so the worker runtime can dispatch with a single ``match``::

    match parse_job_payload(job.payload):
        case SendEmailJob(message_id=message_id): ...
        case WebhookJob(webhook_id=webhook_id): ...

Version: 1.0.0
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from relay_service.models.webhook import WebhookEventType

SEND_EMAIL_QUEUE = "send-email"
WEBHOOK_QUEUE = "webhook"


class JobStatus(str, Enum):
    """Job lifecycle states owned by the queue."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class SendEmailJob(BaseModel):
    """Deliver one accepted message."""

    kind: Literal["send-email"] = "send-email"
    message_id: str = Field(..., min_length=1)


class WebhookJob(BaseModel):
    """Deliver one event to one webhook subscription."""

    kind: Literal["webhook"] = "webhook"
    webhook_id: str = Field(..., min_length=1)
    event_type: WebhookEventType
    payload: dict[str, Any]


JobPayload = Annotated[Union[SendEmailJob, WebhookJob], Field(discriminator="kind")]

_payload_adapter: TypeAdapter[SendEmailJob | WebhookJob] = TypeAdapter(JobPayload)


def parse_job_payload(raw: dict[str, Any]) -> SendEmailJob | WebhookJob:
    """Parse a stored job payload into its typed variant.

    Raises:
        pydantic.ValidationError: If the kind is unknown or required fields
            (such as the message id) are missing.
    """
    return _payload_adapter.validate_python(raw)


class JobRecord(BaseModel):
    """Queue row as seen by a worker holding its lease.

    Attributes:
        attempts: Leases granted so far, including the current one.
        max_attempts: Attempts allowed before the job fails terminally.
        run_at: Earliest time the job may be leased.
        lease_expires_at: When an unacknowledged lease becomes stalled.
    """

    id: int
    queue_name: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int = 0
    max_attempts: int = 1
    priority: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    run_at: datetime | None = None
    locked_by: str | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    job_key: str | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts
