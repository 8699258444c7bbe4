"""Unit tests for the worker runtime.

Covers how leased jobs are settled with the queue and the consumer
lifecycle.

Version: 2.0.0
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from conftest import PROJECT_ID
from fakes import FakeJobQueue

from relay_service.core.exceptions import JobQueueError, WebhookDeliveryError
from relay_service.models.jobs import SEND_EMAIL_QUEUE, WEBHOOK_QUEUE, JobStatus
from relay_service.models.message import EventType, MessageStatus
from relay_service.models.requests import SendEmailRequest
from relay_service.models.webhook import WebhookEventType
from relay_service.worker.runner import default_worker_id, wait_for_job


def _lease(relay, queue_name: str = SEND_EMAIL_QUEUE):
    job = relay.queue.lease(queue_name, relay.worker.worker_id)
    assert job is not None
    return job


# =============================================================================
# Job settlement
# =============================================================================
class TestHandleJob:
    """Tests for mapping processor outcomes onto queue calls."""

    def test_malformed_payload_discarded(self, relay):
        job_id = relay.queue.enqueue(SEND_EMAIL_QUEUE, {"kind": "send-email"}, max_attempts=3)

        asyncio.run(relay.worker.handle_job(_lease(relay)))

        job = relay.queue.jobs[job_id]
        assert job.status == JobStatus.FAILED
        assert job.last_error.startswith("Malformed payload")
        assert relay.worker.failed_count == 1

    def test_unknown_kind_discarded(self, relay):
        job_id = relay.queue.enqueue(WEBHOOK_QUEUE, {"kind": "sms"}, max_attempts=3)

        asyncio.run(relay.worker.handle_job(_lease(relay, WEBHOOK_QUEUE)))

        assert relay.queue.jobs[job_id].status == JobStatus.FAILED

    def test_unexpected_error_uses_queue_backoff(self, relay, monkeypatch):
        monkeypatch.setattr(
            relay.worker.webhook_processor, "process", AsyncMock(side_effect=RuntimeError("boom"))
        )
        job_id = relay.queue.enqueue(
            WEBHOOK_QUEUE,
            {
                "kind": "webhook",
                "webhook_id": "wh_1",
                "event_type": "message.sent",
                "payload": {},
            },
            max_attempts=3,
            backoff_base=5.0,
        )

        asyncio.run(relay.worker.handle_job(_lease(relay, WEBHOOK_QUEUE)))

        job = relay.queue.jobs[job_id]
        assert job.status == JobStatus.DELAYED
        assert job.last_error == "RuntimeError: boom"
        assert relay.queue.delays[job_id] == [5.0]
        assert relay.worker.retry_count == 1

    def test_send_crash_settled_through_message(self, relay, sample_send_request, monkeypatch):
        monkeypatch.setattr(
            relay.worker.email_processor, "process", AsyncMock(side_effect=RuntimeError("boom"))
        )
        message_id = relay.send_service.send(
            PROJECT_ID, SendEmailRequest.model_validate(sample_send_request)
        )["messageId"]

        asyncio.run(relay.worker.handle_job(_lease(relay)))

        (job,) = relay.queue.jobs_in(SEND_EMAIL_QUEUE)
        assert job.status == JobStatus.DELAYED
        assert relay.queue.delays[job.id] == [5.0]
        message = relay.messages.get_message(message_id)
        assert message.status == MessageStatus.RETRYING
        assert message.error == "RuntimeError: boom"

    def test_send_crash_for_missing_message_acked(self, relay, monkeypatch):
        monkeypatch.setattr(
            relay.worker.email_processor, "process", AsyncMock(side_effect=RuntimeError("boom"))
        )
        job_id = relay.queue.enqueue(
            SEND_EMAIL_QUEUE, {"kind": "send-email", "message_id": "m1"}, max_attempts=3
        )

        asyncio.run(relay.worker.handle_job(_lease(relay)))

        assert relay.queue.jobs[job_id].status == JobStatus.COMPLETED

    def test_webhook_failure_retried_then_failed(self, relay, monkeypatch):
        monkeypatch.setattr(
            relay.worker.webhook_processor,
            "process",
            AsyncMock(side_effect=WebhookDeliveryError("HTTP 503", status_code=503)),
        )
        job_id = relay.queue.enqueue(
            WEBHOOK_QUEUE,
            {
                "kind": "webhook",
                "webhook_id": "wh_1",
                "event_type": "message.sent",
                "payload": {},
            },
            max_attempts=2,
        )

        asyncio.run(relay.worker.handle_job(_lease(relay, WEBHOOK_QUEUE)))
        assert relay.queue.jobs[job_id].status == JobStatus.DELAYED

        asyncio.run(relay.worker.handle_job(_lease(relay, WEBHOOK_QUEUE)))
        assert relay.queue.jobs[job_id].status == JobStatus.FAILED
        assert relay.worker.failed_count == 1

    def test_settle_failure_is_logged(self, relay, monkeypatch):
        relay.queue.enqueue(SEND_EMAIL_QUEUE, {"kind": "send-email", "message_id": "gone"})
        job = _lease(relay)

        def broken_ack(job_id):
            raise JobQueueError("connection lost", entity_id=job_id)

        monkeypatch.setattr(relay.queue, "ack", broken_ack)

        asyncio.run(relay.worker.handle_job(job))

        assert relay.queue.jobs[job.id].status == JobStatus.ACTIVE


# =============================================================================
# Maintenance
# =============================================================================
def _expire_lease(relay, job, **update):
    past = datetime.now(timezone.utc) - timedelta(seconds=1)
    relay.queue.jobs[job.id] = relay.queue.jobs[job.id].model_copy(
        update={"lease_expires_at": past, **update}
    )


def _run_maintenance(relay):
    async def run():
        relay.worker.running = True
        task = asyncio.create_task(relay.worker._maintain())
        await asyncio.sleep(0.05)
        relay.worker.request_stop()
        await task

    asyncio.run(run())


class TestMaintenance:
    """Tests for stalled leases found by the maintenance loop."""

    def test_abandoned_exhausted_job_fails_message(self, relay, sample_send_request):
        relay.webhooks.add(
            PROJECT_ID, "https://hooks.acme.com/relay", {WebhookEventType.MESSAGE_FAILED}
        )
        message_id = relay.send_service.send(
            PROJECT_ID, SendEmailRequest.model_validate(sample_send_request)
        )["messageId"]
        job = _lease(relay)
        relay.messages.update_status(message_id, MessageStatus.PROCESSING)
        _expire_lease(relay, job, attempts=job.max_attempts)

        _run_maintenance(relay)

        assert relay.queue.jobs[job.id].status == JobStatus.FAILED
        message = relay.messages.get_message(message_id)
        assert message.status == MessageStatus.FAILED
        assert message.error == "lease expired"
        assert relay.messages.event_types(message_id)[-1] == EventType.FAILED
        events = [j.payload["event_type"] for j in relay.queue.jobs_in(WEBHOOK_QUEUE)]
        assert events == ["message.failed"]
        assert relay.worker.failed_count == 1

    def test_abandoned_job_with_attempts_left_requeued(self, relay, sample_send_request):
        message_id = relay.send_service.send(
            PROJECT_ID, SendEmailRequest.model_validate(sample_send_request)
        )["messageId"]
        job = _lease(relay)
        relay.messages.update_status(message_id, MessageStatus.PROCESSING)
        _expire_lease(relay, job)

        _run_maintenance(relay)

        assert relay.queue.jobs[job.id].status == JobStatus.WAITING
        assert relay.messages.get_message(message_id).status == MessageStatus.PROCESSING

        asyncio.run(relay.drain(SEND_EMAIL_QUEUE))

        assert relay.messages.get_message(message_id).status == MessageStatus.DELIVERED

    def test_abandoned_webhook_job_left_to_queue(self, relay):
        job_id = relay.queue.enqueue(
            WEBHOOK_QUEUE,
            {"kind": "webhook", "webhook_id": "wh_1", "event_type": "message.sent", "payload": {}},
        )
        job = _lease(relay, WEBHOOK_QUEUE)
        _expire_lease(relay, job)

        _run_maintenance(relay)

        assert relay.queue.jobs[job_id].status == JobStatus.FAILED
        assert relay.worker.failed_count == 0


# =============================================================================
# Leasing helper
# =============================================================================
class TestWaitForJob:
    def test_returns_available_job(self):
        queue = FakeJobQueue()
        job_id = queue.enqueue(SEND_EMAIL_QUEUE, {"kind": "send-email", "message_id": "m1"})

        job = asyncio.run(wait_for_job(queue, SEND_EMAIL_QUEUE, "w1", timeout=1.0))

        assert job.id == job_id
        assert job.locked_by == "w1"

    def test_times_out_on_empty_queue(self):
        job = asyncio.run(
            wait_for_job(FakeJobQueue(), SEND_EMAIL_QUEUE, "w1", timeout=0.05, poll_interval=0.01)
        )

        assert job is None

    def test_stop_event_ends_wait(self):
        async def run():
            stop = asyncio.Event()
            stop.set()
            return await wait_for_job(
                FakeJobQueue(), SEND_EMAIL_QUEUE, "w1", timeout=30, poll_interval=0.01, stop=stop
            )

        assert asyncio.run(run()) is None

    def test_default_worker_id_is_unique(self):
        assert default_worker_id() != default_worker_id()


# =============================================================================
# Lifecycle
# =============================================================================
class TestLifecycle:
    """Tests for starting, consuming and stopping."""

    def test_consumes_until_stopped(self, relay, sample_send_request):
        result = relay.send_service.send(
            PROJECT_ID, SendEmailRequest.model_validate(sample_send_request)
        )
        message_id = result["messageId"]

        async def run():
            async with relay.worker:
                for _ in range(200):
                    if relay.messages.get_message(message_id).status == MessageStatus.DELIVERED:
                        break
                    await asyncio.sleep(0.01)

        asyncio.run(run())

        assert relay.messages.get_message(message_id).status == MessageStatus.DELIVERED
        assert relay.worker.completed_count == 1
        assert relay.worker.running is False
        assert relay.queue.closed is True
        assert relay.http_client.is_closed

    def test_start_is_idempotent(self, relay):
        async def run():
            await relay.worker.start()
            consumers = list(relay.worker._consumers)
            await relay.worker.start()
            assert relay.worker._consumers == consumers
            await relay.worker.stop()

        asyncio.run(run())

    def test_request_stop_from_signal(self, relay):
        relay.worker.running = True

        relay.worker.request_stop(15)

        assert relay.worker.running is False


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
