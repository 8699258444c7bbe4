"""Send service - accepts messages for delivery.

Both entry points (``POST /v1/send`` and the SMTP relay) end in
``SendService.submit``: the message row is created as QUEUED, a QUEUED event
is appended, a ``send-email`` job is enqueued and ``message.queued`` is
fanned out to webhooks.

Version: 1.0.0
"""

from __future__ import annotations

import time
from typing import Any, Callable

from relay_service.config import RelayConfig
from relay_service.core.exceptions import PolicyError, RelayServiceError
from relay_service.core.logger import get_logger, log_context
from relay_service.database.connection import Database
from relay_service.database.idempotency import IdempotencyStore
from relay_service.database.messages import MessageStore
from relay_service.database.projects import ProjectStore
from relay_service.database.queue import JobQueue
from relay_service.database.suppressions import SuppressionStore
from relay_service.database.webhooks import WebhookStore
from relay_service.models.jobs import SEND_EMAIL_QUEUE, SendEmailJob
from relay_service.models.message import EventType, MessageCreate, MessageRecord
from relay_service.models.requests import Priority, SendEmailRequest
from relay_service.models.suppression import SuppressionRecord
from relay_service.models.webhook import WebhookEventType
from relay_service.services.rate_limiter import RateLimiter
from relay_service.templates.renderer import TemplateRenderer
from relay_service.webhooks.dispatcher import WebhookDispatcher
from relay_service.webhooks.signing import utc_timestamp

logger = get_logger(__name__)

# Seconds between polls while another request holds an idempotency key
IDEMPOTENCY_POLL_INTERVAL = 0.1


def idempotency_scope(project_id: str) -> str:
    return f"send:{project_id}"


def send_job_key(message_id: str) -> str:
    return f"send:{message_id}"


class SendService:
    """Validates policy and queues messages.

    Policy failures raise ``PolicyError`` before anything is written, so a
    rejected request never leaves a message row or a job behind.
    """

    def __init__(
        self,
        *,
        messages: MessageStore,
        projects: ProjectStore,
        suppressions: SuppressionStore,
        idempotency: IdempotencyStore,
        queue: JobQueue,
        dispatcher: WebhookDispatcher,
        config: RelayConfig,
        renderer: TemplateRenderer | None = None,
        rate_limiter: RateLimiter | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.messages = messages
        self.projects = projects
        self.suppressions = suppressions
        self.idempotency = idempotency
        self.queue = queue
        self.dispatcher = dispatcher
        self.config = config
        self.renderer = renderer or TemplateRenderer()
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests=config.RATE_LIMIT_MAX_REQUESTS,
            window_seconds=config.RATE_LIMIT_WINDOW_SECONDS,
        )
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_database(cls, db: Database, config: RelayConfig) -> SendService:
        """Wire a send service to PostgreSQL-backed stores sharing one pool."""
        queue = JobQueue(db, config)
        return cls(
            messages=MessageStore(db),
            projects=ProjectStore(db),
            suppressions=SuppressionStore(db),
            idempotency=IdempotencyStore(db),
            queue=queue,
            dispatcher=WebhookDispatcher(WebhookStore(db), queue, config),
            config=config,
        )

    @property
    def idempotency_ttl(self) -> float:
        return self.config.IDEMPOTENCY_TTL_HOURS * 3600

    # =========================================================================
    # API path
    # =========================================================================
    def send(
        self,
        project_id: str,
        request: SendEmailRequest,
        *,
        api_key_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Accept one send request.

        Args:
            project_id: Project of the authenticated API key.
            request: Validated request body.
            api_key_id: Key that made the request (recorded on the QUEUED event).
            idempotency_key: Header value; falls back to the body field.

        Returns:
            ``{"messageId": ..., "status": "QUEUED"}``, or the cached response
            of an earlier request with the same idempotency key.

        Raises:
            PolicyError: If the request is refused.
        """
        key = idempotency_key or request.idempotency_key
        if not key:
            return self._accept(project_id, request, api_key_id, None)

        scope = idempotency_scope(project_id)
        cached = self._claim_idempotency_key(key, scope)
        if cached is not None:
            logger.info(f"Idempotent replay of {key} for project {project_id}")
            return cached

        try:
            response = self._accept(project_id, request, api_key_id, key)
        except Exception:
            self.idempotency.release(key, scope)
            raise

        self.idempotency.store(key, scope, response, self.idempotency_ttl)
        return response

    def _claim_idempotency_key(self, key: str, scope: str) -> dict[str, Any] | None:
        """Return the cached response, or None once this request owns the key.

        While another request holds the key without a response yet, poll for
        up to ``IDEMPOTENCY_WAIT_SECONDS``.
        """
        deadline = self._clock() + self.config.IDEMPOTENCY_WAIT_SECONDS
        while True:
            cached = self.idempotency.check(key, scope)
            if cached is not None:
                return cached
            if self.idempotency.reserve(key, scope, self.idempotency_ttl):
                return None
            if self._clock() >= deadline:
                raise PolicyError(
                    PolicyError.IDEMPOTENCY_CONFLICT,
                    "A request with this idempotency key is still being processed",
                )
            self._sleep(IDEMPOTENCY_POLL_INTERVAL)

    def _accept(
        self,
        project_id: str,
        request: SendEmailRequest,
        api_key_id: str | None,
        idempotency_key: str | None,
    ) -> dict[str, Any]:
        project = self.projects.get_project(project_id)
        if project is None or not project.is_active:
            raise PolicyError(PolicyError.PROJECT_INACTIVE, "Project is not active")

        limit = self.rate_limiter.check(RateLimiter.project_key(project_id))
        if not limit.allowed:
            raise PolicyError(
                PolicyError.RATE_LIMIT_EXCEEDED,
                "Rate limit exceeded. Please try again later.",
            )

        suppressed = self.find_suppressed(project_id, request.recipient_emails)
        if suppressed is not None:
            raise PolicyError(
                PolicyError.RECIPIENT_SUPPRESSED,
                f"Recipient {suppressed.email} is suppressed: {suppressed.reason.value}",
            )

        subject, html, text = self._resolve_content(project_id, request)
        if not html and not text:
            raise PolicyError(
                PolicyError.MISSING_CONTENT,
                "Email must have either html, text, or a template with content",
            )

        message = self.submit(
            MessageCreate(
                project_id=project_id,
                from_address=request.from_address,
                to=request.to,
                reply_to=request.reply_to,
                subject=subject,
                html=html,
                text=text,
                template_id=request.template_id,
                variables=request.variables if request.template_id else None,
                attachments=request.attachments,
                headers=request.headers,
                tags=set(request.tags),
                idempotency_key=idempotency_key,
            ),
            priority=request.priority,
            event_data={"apiKeyId": api_key_id, "timestamp": utc_timestamp()},
        )
        return {"messageId": message.id, "status": message.status.value}

    def _resolve_content(
        self, project_id: str, request: SendEmailRequest
    ) -> tuple[str, str | None, str | None]:
        """Return (subject, html, text), rendering the template if one is named."""
        if not request.template_id:
            return request.subject or "", request.html, request.text

        template = self.projects.get_template(project_id, request.template_id)
        if template is None:
            raise PolicyError(
                PolicyError.TEMPLATE_NOT_FOUND,
                f"Template with ID {request.template_id} not found",
            )

        variables = request.variables or {}
        render = self.renderer.render
        return (
            render(template.subject, variables, template_name=template.name),
            render(template.html, variables, template.name) if template.html else None,
            render(template.text, variables, template.name) if template.text else None,
        )

    # =========================================================================
    # Shared by the API and the SMTP relay
    # =========================================================================
    def find_suppressed(
        self, project_id: str, emails: list[str]
    ) -> SuppressionRecord | None:
        """First suppression among ``emails``, checked in order."""
        for email in emails:
            suppression = self.suppressions.get_suppression(project_id, email)
            if suppression is not None:
                return suppression
        return None

    def submit(
        self,
        message: MessageCreate,
        *,
        priority: Priority = Priority.NORMAL,
        event_data: dict[str, Any] | None = None,
    ) -> MessageRecord:
        """Persist an accepted message and queue it for delivery.

        If the QUEUED event or the job cannot be written, the message row is
        deleted again before the error propagates, so no QUEUED message is
        left without a job.
        """
        record = self.messages.create_message(message)
        ctx = log_context(
            logger, "queue_message", message_id=record.id,
            recipient=record.first_recipient, priority=priority.value,
        )

        try:
            self.messages.record_event(record.id, EventType.QUEUED, event_data or {})
            self.queue.enqueue(
                SEND_EMAIL_QUEUE,
                SendEmailJob(message_id=record.id).model_dump(),
                max_attempts=self.config.EMAIL_RETRY_MAX_ATTEMPTS,
                priority=priority.queue_priority,
                backoff_base=self.config.EMAIL_RETRY_BASE_DELAY,
                backoff_max=self.config.EMAIL_RETRY_MAX_DELAY,
                job_key=send_job_key(record.id),
            )
        except RelayServiceError as e:
            logger.error(f"Failed to queue: {ctx} | {e}")
            self._discard(record.id)
            raise
        logger.info(f"Queued: {ctx}")

        self.dispatcher.notify(
            record.project_id,
            WebhookEventType.MESSAGE_QUEUED,
            {
                "messageId": record.id,
                "to": [str(a.email) for a in record.to],
                "subject": record.subject,
                "tags": sorted(record.tags),
            },
        )
        return record

    def _discard(self, message_id: str) -> None:
        try:
            self.messages.delete_message(message_id)
        except RelayServiceError as e:
            logger.error(f"Could not remove unqueued message {message_id}: {e}")
