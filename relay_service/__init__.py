"""Relay Service - Self-hosted transactional email relay.

Accepts email over an HTTP API and an authenticated SMTP relay, queues it
durably and delivers it through an outbound transport, with:
- Per-project API keys, rate limiting and idempotent sends
- Suppression list enforced on every send, fed by hard bounces
- Template rendering with {{key}} placeholders (Jinja2)
- Automatic retry with exponential backoff
- Status tracking with an append-only event log
- Signed webhook notifications of message lifecycle events

Architecture:
    - PostgreSQL job table leased with FOR UPDATE SKIP LOCKED
    - Worker service (send-email and webhook consumers)
    - SMTP transport wrapper (or an in-memory test transport)
    - aiosmtpd inbound relay
    - Connection pooling with psycopg2

Modules:
    - core: Exceptions, logger
    - config: Pydantic v2 settings
    - models: Messages, suppressions, webhooks, projects, jobs, requests
    - clients: Outbound transports (SMTP, test)
    - database: Job queue and stores (PostgreSQL)
    - templates: Template rendering (Jinja2)
    - services: Authentication, rate limiting, send path
    - webhooks: Signing, fan-out and delivery
    - worker: Delivery daemon
    - smtp: Inbound SMTP relay
    - api: FastAPI application

Usage:
    # Run the worker
    python -m relay_service.worker

    # Run the SMTP relay
    python -m relay_service.smtp

    # Verify a webhook signature on the receiving side
    from relay_service.webhooks import verify_signature

    ok = verify_signature(raw_body, request.headers["X-Webhook-Signature"], secret)

Version: 1.0.0
"""

__version__ = "1.0.0"

# Clients
from relay_service.clients import SMTPTransport, TestTransport, build_transport

# Configuration
from relay_service.config import RelayConfig

# Core utilities
from relay_service.core import (
    AuthenticationError,
    JobQueueError,
    PolicyError,
    RelayConfigError,
    RelayServiceError,
    StoreError,
    TemplateRenderError,
    TransportError,
    WebhookDeliveryError,
    get_logger,
)

# Database
from relay_service.database import Database, JobQueue

# Models
from relay_service.models import (
    Address,
    Attachment,
    EventType,
    MessageStatus,
    SendEmailRequest,
    SuppressionReason,
    WebhookEventType,
)

# Services
from relay_service.services import ApiKeyAuthenticator, SendService

# Templates
from relay_service.templates import TemplateRenderer

# Webhooks
from relay_service.webhooks import sign_payload, verify_signature

# Worker
from relay_service.worker import WorkerService

__all__ = [
    # Version
    "__version__",
    # Core exceptions
    "RelayServiceError",
    "RelayConfigError",
    "StoreError",
    "JobQueueError",
    "TransportError",
    "TemplateRenderError",
    "PolicyError",
    "AuthenticationError",
    "WebhookDeliveryError",
    "get_logger",
    # Configuration
    "RelayConfig",
    # Models
    "Address",
    "Attachment",
    "MessageStatus",
    "EventType",
    "SuppressionReason",
    "WebhookEventType",
    "SendEmailRequest",
    # Clients
    "SMTPTransport",
    "TestTransport",
    "build_transport",
    # Database
    "Database",
    "JobQueue",
    # Services
    "ApiKeyAuthenticator",
    "SendService",
    # Templates
    "TemplateRenderer",
    # Webhooks
    "sign_payload",
    "verify_signature",
    # Worker
    "WorkerService",
]
