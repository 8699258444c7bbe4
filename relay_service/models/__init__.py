"""Models module for the relay service.

Defines Pydantic v2 data models for messages, events, suppressions, webhooks,
projects, queue jobs and send requests.
"""

from relay_service.models.jobs import (
    SEND_EMAIL_QUEUE,
    WEBHOOK_QUEUE,
    JobPayload,
    JobRecord,
    JobStatus,
    SendEmailJob,
    WebhookJob,
    parse_job_payload,
)
from relay_service.models.message import (
    Address,
    Attachment,
    EventRecord,
    EventType,
    MessageCreate,
    MessageRecord,
    MessageStatus,
)
from relay_service.models.project import (
    ApiKeyRecord,
    ProjectRecord,
    ProjectStatus,
    TemplateRecord,
)
from relay_service.models.requests import Priority, SendEmailRequest
from relay_service.models.stats import QueueStats
from relay_service.models.suppression import SuppressionReason, SuppressionRecord
from relay_service.models.webhook import (
    WebhookDeliveryRecord,
    WebhookEventType,
    WebhookPayload,
    WebhookSubscription,
)

__all__ = [
    # Enums
    "MessageStatus",
    "EventType",
    "JobStatus",
    "ProjectStatus",
    "SuppressionReason",
    "WebhookEventType",
    "Priority",
    # Messages
    "Address",
    "Attachment",
    "MessageCreate",
    "MessageRecord",
    "EventRecord",
    "SendEmailRequest",
    # Jobs
    "SEND_EMAIL_QUEUE",
    "WEBHOOK_QUEUE",
    "JobRecord",
    "JobPayload",
    "SendEmailJob",
    "WebhookJob",
    "parse_job_payload",
    "QueueStats",
    # Other records
    "SuppressionRecord",
    "WebhookSubscription",
    "WebhookDeliveryRecord",
    "WebhookPayload",
    "ProjectRecord",
    "ApiKeyRecord",
    "TemplateRecord",
]
