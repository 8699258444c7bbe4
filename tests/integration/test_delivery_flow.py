"""End-to-end delivery scenarios.

Each test submits through the HTTP API or the send service and then drains
the queues with the real worker, email processor and webhook delivery
running over the in-memory stores.

Version: 1.0.0
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from conftest import PROJECT_ID

from relay_service.models.jobs import SEND_EMAIL_QUEUE, WEBHOOK_QUEUE, JobStatus
from relay_service.models.message import EventType, MessageStatus
from relay_service.models.webhook import WebhookEventType
from relay_service.webhooks.signing import verify_signature

ALL_MESSAGE_EVENTS = {
    WebhookEventType.MESSAGE_QUEUED,
    WebhookEventType.MESSAGE_SENT,
    WebhookEventType.MESSAGE_DELIVERED,
    WebhookEventType.MESSAGE_FAILED,
    WebhookEventType.MESSAGE_BOUNCED,
}


def _send(test_client, auth_headers, body) -> str:
    response = test_client.post("/v1/send", json=body, headers=auth_headers)
    assert response.status_code == 202, response.text
    return response.json()["data"]["messageId"]


def _events(test_client, auth_headers, message_id) -> list[str]:
    response = test_client.get(f"/v1/messages/{message_id}", headers=auth_headers)
    return [e["type"] for e in response.json()["data"]["events"]]


class TestDeliveryFlow:
    """Submission through delivery and webhook notification."""

    def test_happy_path(self, test_client, relay, auth_headers, sample_send_request):
        message_id = _send(test_client, auth_headers, sample_send_request)

        assert asyncio.run(relay.drain()) == 1

        response = test_client.get(f"/v1/messages/{message_id}", headers=auth_headers)
        data = response.json()["data"]
        assert data["status"] == "DELIVERED"
        assert data["providerMessageId"] == relay.transport.sent[0]["Message-ID"]
        assert [e["type"] for e in data["events"]] == ["QUEUED", "SENT", "DELIVERED"]
        assert relay.queue.get_queue_stats(SEND_EMAIL_QUEUE).completed_count == 1

    def test_retry_then_success(self, test_client, relay, auth_headers, sample_send_request):
        relay.transport.fail_next("421 4.7.0 Try again later")
        message_id = _send(test_client, auth_headers, sample_send_request)

        asyncio.run(relay.drain())

        assert _events(test_client, auth_headers, message_id) == [
            "QUEUED",
            "RETRY_SCHEDULED",
            "SENT",
            "DELIVERED",
        ]
        (job,) = relay.queue.jobs_in(SEND_EMAIL_QUEUE)
        assert job.attempts == 2
        assert relay.queue.delays[job.id] == [relay.config.EMAIL_RETRY_BASE_DELAY]

    def test_hard_bounce_blocks_next_send(
        self, test_client, relay, auth_headers, sample_send_request
    ):
        relay.transport.fail_next(
            "550 5.1.1 User unknown", times=relay.config.EMAIL_RETRY_MAX_ATTEMPTS, is_transient=False
        )
        message_id = _send(test_client, auth_headers, sample_send_request)

        asyncio.run(relay.drain())

        assert relay.messages.get_message(message_id).status == MessageStatus.FAILED
        assert relay.messages.event_types(message_id).count(EventType.RETRY_SCHEDULED) == 2

        response = test_client.post("/v1/send", json=sample_send_request, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "RECIPIENT_SUPPRESSED"

    def test_signed_webhooks_for_every_event(
        self, test_client, relay, auth_headers, sample_send_request
    ):
        subscription = relay.webhooks.add(
            PROJECT_ID, "https://hooks.acme.com/relay", ALL_MESSAGE_EVENTS, secret="whsec_flow"
        )
        message_id = _send(test_client, auth_headers, sample_send_request)

        asyncio.run(relay.drain())

        assert [r.headers["X-Event-Type"] for r in relay.received] == [
            "message.queued",
            "message.sent",
            "message.delivered",
        ]
        for request in relay.received:
            assert verify_signature(
                request.content, request.headers["X-Webhook-Signature"], "whsec_flow"
            )
            body = json.loads(request.content)
            assert body["data"]["messageId"] == message_id
        assert relay.webhooks.webhooks[subscription.id].success_count == 3
        assert len(relay.webhooks.deliveries) == 3

    def test_failing_endpoint_retried_then_given_up(
        self, test_client, relay, auth_headers, sample_send_request
    ):
        relay.webhook_handler = lambda request: httpx.Response(503, text="maintenance")
        subscription = relay.webhooks.add(
            PROJECT_ID, "https://hooks.acme.com/relay", {WebhookEventType.MESSAGE_QUEUED}
        )
        _send(test_client, auth_headers, sample_send_request)

        asyncio.run(relay.drain(WEBHOOK_QUEUE))

        (job,) = relay.queue.jobs_in(WEBHOOK_QUEUE)
        assert job.status == JobStatus.FAILED
        assert job.attempts == relay.config.WEBHOOK_MAX_ATTEMPTS
        assert len(relay.webhooks.deliveries) == relay.config.WEBHOOK_MAX_ATTEMPTS
        assert all(d.status_code == 503 for d in relay.webhooks.deliveries)
        assert relay.webhooks.webhooks[subscription.id].fail_count == 3
        # Exhaustion leaves the subscription active
        assert relay.webhooks.webhooks[subscription.id].active is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
