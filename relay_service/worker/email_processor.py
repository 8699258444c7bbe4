"""Email delivery worker.

Drives a message through ``QUEUED -> PROCESSING -> SENT -> DELIVERED``, or
through ``RETRYING`` back to ``PROCESSING`` until attempts run out and it
ends ``FAILED``. This processor alone decides when a failure is terminal:
while attempts remain it raises ``RetryJob`` so the queue reschedules the
job; once they are exhausted it records FAILED and returns normally so the
queue does not retry on its own.

Version: 1.0.0
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from relay_service.clients.transport import OutboundEmail, Transport
from relay_service.config import RelayConfig
from relay_service.core.exceptions import RelayServiceError, RetryJob, TransportError
from relay_service.core.logger import get_logger, log_context
from relay_service.database.messages import MessageStore
from relay_service.database.queue import JobQueue
from relay_service.database.suppressions import SuppressionStore
from relay_service.models.jobs import JobRecord, SendEmailJob
from relay_service.models.message import EventType, MessageRecord, MessageStatus
from relay_service.models.suppression import SuppressionReason
from relay_service.models.webhook import WebhookEventType
from relay_service.webhooks.dispatcher import WebhookDispatcher
from relay_service.webhooks.signing import utc_timestamp

logger = get_logger(__name__)

HARD_BOUNCE_INDICATORS = (
    "recipient rejected",
    "user unknown",
    "mailbox unavailable",
    "invalid address",
    "no such user",
    "does not exist",
)


def is_hard_bounce(error: str | None) -> bool:
    """True if the error text names a permanent recipient failure."""
    if not error:
        return False
    lowered = error.lower()
    return any(indicator in lowered for indicator in HARD_BOUNCE_INDICATORS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailDeliveryProcessor:
    """Processes ``send-email`` jobs."""

    def __init__(
        self,
        *,
        messages: MessageStore,
        suppressions: SuppressionStore,
        queue: JobQueue,
        transport: Transport,
        dispatcher: WebhookDispatcher,
        config: RelayConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.messages = messages
        self.suppressions = suppressions
        self.queue = queue
        self.transport = transport
        self.dispatcher = dispatcher
        self.config = config
        self._clock = clock

    async def process(self, job: JobRecord, payload: SendEmailJob) -> None:
        """Deliver the message referenced by a leased job.

        Any exception out of the transport call counts as a failed attempt.

        Raises:
            RetryJob: After a failed attempt that will be retried.
        """
        message = self.messages.get_message(payload.message_id)
        if message is None:
            logger.error(
                f"Job #{job.id} references missing message {payload.message_id}, dropping"
            )
            return

        if message.status.is_terminal:
            logger.warning(
                f"Message {message.id} already {message.status.value}, skipping job #{job.id}"
            )
            return

        ctx = log_context(
            logger, "send_email", message_id=message.id,
            recipient=message.first_recipient,
            attempt=f"{job.attempts}/{job.max_attempts}",
        )
        logger.info(f"Starting: {ctx}")

        self.messages.update_status(message.id, MessageStatus.PROCESSING)

        try:
            result = await asyncio.to_thread(
                self.transport.send, OutboundEmail.from_record(message)
            )
        except TransportError as e:
            logger.warning(f"Transport failure: {ctx} | {e}")
            self._handle_failure(job, message, str(e))
            return
        except Exception as e:
            error = f"{e.__class__.__name__}: {e}"
            logger.error(f"Dispatch crashed: {ctx} | {error}", exc_info=True)
            self._handle_failure(job, message, error)
            return

        sent_at = self._clock()
        self.messages.update_status(
            message.id,
            MessageStatus.SENT,
            external_id=result.provider_message_id,
            sent_at=sent_at,
        )
        self.messages.record_event(
            message.id,
            EventType.SENT,
            {"providerMessageId": result.provider_message_id, "response": result.raw_response},
        )

        # Upstream acceptance stands in for a delivery receipt.
        self.messages.update_status(
            message.id, MessageStatus.DELIVERED, delivered_at=self._clock()
        )
        self.messages.record_event(message.id, EventType.DELIVERED, {"simulated": True})
        logger.info(f"COMPLETED: {ctx} | provider_id={result.provider_message_id}")

        data = self._event_data(message, providerMessageId=result.provider_message_id)
        self.dispatcher.notify(message.project_id, WebhookEventType.MESSAGE_SENT, data)
        self.dispatcher.notify(message.project_id, WebhookEventType.MESSAGE_DELIVERED, data)

    def settle_crashed(self, job: JobRecord, payload: SendEmailJob, error: str) -> None:
        """Record a failed attempt for a job that died outside the transport call.

        Missing or already terminal messages are left alone.

        Raises:
            RetryJob: While attempts remain.
        """
        message = self.messages.get_message(payload.message_id)
        if message is None or message.status.is_terminal:
            return
        logger.warning(f"Settling crashed job #{job.id} for message {message.id}: {error}")
        self._handle_failure(job, message, error)

    def _handle_failure(self, job: JobRecord, message: MessageRecord, error: str) -> None:
        """Schedule a retry or mark the message FAILED."""
        attempts = job.attempts
        hard_bounce = is_hard_bounce(error)
        short_circuit = hard_bounce and self.config.HARD_BOUNCE_SHORT_CIRCUIT

        if attempts < job.max_attempts and not short_circuit:
            delay = self.queue.next_retry_delay(job)
            next_retry_at = self._clock() + timedelta(seconds=delay)
            self.messages.update_status(message.id, MessageStatus.RETRYING, error=error)
            self.messages.record_event(
                message.id,
                EventType.RETRY_SCHEDULED,
                {
                    "attempt": attempts,
                    "error": error,
                    "nextRetryAt": utc_timestamp(next_retry_at),
                },
            )
            logger.warning(
                f"SCHEDULED RETRY: #{message.id} | attempt {attempts}/{job.max_attempts} "
                f"| backoff_secs={delay:.1f}"
            )
            raise RetryJob(error, delay)

        self.messages.update_status(message.id, MessageStatus.FAILED, error=error)
        self.messages.record_event(
            message.id, EventType.FAILED, {"error": error, "attempts": attempts}
        )
        logger.critical(
            f"PERMANENTLY FAILED: #{message.id} | attempts={attempts} | error={error[:100]}"
        )

        self.dispatcher.notify(
            message.project_id,
            WebhookEventType.MESSAGE_FAILED,
            self._event_data(message, error=error, attempts=attempts),
        )

        if hard_bounce:
            self._suppress_bounced(message, error)
            self.dispatcher.notify(
                message.project_id,
                WebhookEventType.MESSAGE_BOUNCED,
                self._event_data(message, error=error, bounceType="hard"),
            )

    def _suppress_bounced(self, message: MessageRecord, error: str) -> None:
        """Suppress the first recipient after a hard bounce; errors are logged only."""
        try:
            self.suppressions.upsert_suppression(
                message.project_id,
                message.first_recipient,
                SuppressionReason.BOUNCE,
                source="bounce",
                metadata={"error": error, "messageId": message.id},
            )
        except RelayServiceError as e:
            logger.error(
                f"Failed to suppress {message.first_recipient} after hard bounce: {e}"
            )

    @staticmethod
    def _event_data(message: MessageRecord, **extra: Any) -> dict[str, Any]:
        data: dict[str, Any] = {
            "messageId": message.id,
            "to": [str(a.email) for a in message.to],
            "subject": message.subject,
            "tags": sorted(message.tags),
        }
        data.update(extra)
        return data
