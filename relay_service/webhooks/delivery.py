"""Webhook delivery worker.

Signs and POSTs one event to one subscriber per job, records the attempt and
updates the subscription's health counters.

Version: 1.0.0
"""

from __future__ import annotations

import asyncio

import httpx

from relay_service.config import RelayConfig
from relay_service.core.exceptions import WebhookDeliveryError
from relay_service.core.logger import get_logger, log_context
from relay_service.database.webhooks import WebhookStore
from relay_service.models.jobs import WebhookJob
from relay_service.webhooks.signing import canonical_payload, sign_payload

logger = get_logger(__name__)

# Longest response body kept per delivery row
MAX_RESPONSE_BODY = 10_000


def describe_http_error(error: httpx.HTTPError) -> str:
    detail = str(error)
    name = error.__class__.__name__
    return f"{name}: {detail}" if detail else name


class WebhookDeliveryProcessor:
    """Processes ``webhook`` jobs.

    Every attempt against an existing, active subscription produces exactly
    one delivery row: the HTTP status and body when the endpoint answered
    (whatever the status), or the error text when it could not be reached.
    """

    def __init__(
        self,
        webhooks: WebhookStore,
        client: httpx.AsyncClient,
        config: RelayConfig,
    ) -> None:
        self.webhooks = webhooks
        self.client = client
        self.config = config

    async def process(self, job: WebhookJob) -> None:
        """Deliver one webhook job.

        Raises:
            WebhookDeliveryError: On a non-2xx response or transport failure,
                so the queue retries the job.
        """
        webhook = self.webhooks.get_webhook(job.webhook_id)
        if webhook is None:
            logger.warning(f"Webhook {job.webhook_id} not found, dropping delivery")
            return
        if not webhook.active:
            logger.info(f"Webhook {job.webhook_id} is inactive, skipping")
            return

        ctx = log_context(
            logger, "deliver_webhook", message_id=webhook.id, recipient=webhook.url,
            event=job.event_type.value,
        )

        body = canonical_payload(job.payload)
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Signature": sign_payload(body, webhook.secret),
            "X-Webhook-Id": webhook.id,
            "X-Event-Type": job.event_type.value,
            "User-Agent": self.config.WEBHOOK_USER_AGENT,
        }

        timeout = self.config.WEBHOOK_TIMEOUT
        try:
            # Total deadline; the httpx timeout only bounds each phase
            response = await asyncio.wait_for(
                self.client.post(
                    webhook.url,
                    content=body.encode("utf-8"),
                    headers=headers,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as e:
            if isinstance(e, httpx.HTTPError):
                error = describe_http_error(e)
            else:
                error = f"Timed out after {timeout}s"
            logger.warning(f"{ctx} transport failure: {error}")
            self.webhooks.record_delivery(
                webhook.id, job.event_type, job.payload, error=error
            )
            self.webhooks.increment_counter(webhook.id, success=False)
            raise WebhookDeliveryError(error) from e

        self.webhooks.record_delivery(
            webhook.id,
            job.event_type,
            job.payload,
            status_code=response.status_code,
            response_body=response.text[:MAX_RESPONSE_BODY],
        )

        if response.is_success:
            self.webhooks.increment_counter(webhook.id, success=True)
            logger.info(f"{ctx} delivered: {response.status_code}")
            return

        self.webhooks.increment_counter(webhook.id, success=False)
        logger.warning(f"{ctx} rejected: HTTP {response.status_code}")
        raise WebhookDeliveryError(
            f"HTTP {response.status_code}", status_code=response.status_code
        )
