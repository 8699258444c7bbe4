"""Webhook fan-out: one ``webhook`` job per matching subscription."""

from __future__ import annotations

from typing import Any

from relay_service.config import RelayConfig
from relay_service.core.exceptions import RelayServiceError
from relay_service.core.logger import get_logger
from relay_service.database.queue import JobQueue
from relay_service.database.webhooks import WebhookStore
from relay_service.models.jobs import WEBHOOK_QUEUE, WebhookJob
from relay_service.models.webhook import WebhookEventType, WebhookPayload
from relay_service.webhooks.signing import utc_timestamp

logger = get_logger(__name__)


class WebhookDispatcher:
    """Looks up subscribers of an event and enqueues their deliveries."""

    def __init__(self, webhooks: WebhookStore, queue: JobQueue, config: RelayConfig) -> None:
        self.webhooks = webhooks
        self.queue = queue
        self.config = config

    def trigger(
        self, project_id: str, event_type: WebhookEventType, data: dict[str, Any]
    ) -> list[int]:
        """Enqueue one delivery job per active subscription to ``event_type``.

        All jobs of one trigger carry the same payload (and timestamp).

        Returns:
            IDs of the enqueued jobs; empty when nobody is subscribed.
        """
        subscriptions = self.webhooks.find_active_webhooks(project_id, event_type)
        if not subscriptions:
            logger.debug(f"No webhooks for {event_type.value} in project {project_id}")
            return []

        payload = WebhookPayload(event=event_type, timestamp=utc_timestamp(), data=data)

        job_ids = []
        for subscription in subscriptions:
            job = WebhookJob(
                webhook_id=subscription.id,
                event_type=event_type,
                payload=payload.to_wire(),
            )
            job_ids.append(
                self.queue.enqueue(
                    WEBHOOK_QUEUE,
                    job.model_dump(mode="json"),
                    max_attempts=self.config.WEBHOOK_MAX_ATTEMPTS,
                    backoff_base=self.config.WEBHOOK_RETRY_BASE_DELAY,
                    backoff_max=self.config.WEBHOOK_RETRY_MAX_DELAY,
                )
            )

        logger.info(
            f"{event_type.value} fanned out to {len(job_ids)} webhook(s) "
            f"in project {project_id}"
        )
        return job_ids

    def notify(
        self, project_id: str, event_type: WebhookEventType, data: dict[str, Any]
    ) -> list[int]:
        """``trigger`` for callers whose own work must not fail on fan-out errors."""
        try:
            return self.trigger(project_id, event_type, data)
        except RelayServiceError as e:
            logger.error(f"Webhook fan-out of {event_type.value} failed: {e}")
            return []
