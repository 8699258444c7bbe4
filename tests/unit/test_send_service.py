"""Unit tests for the send service.

Version: 1.0.0
"""

from __future__ import annotations

from typing import Any

import pytest
from conftest import PROJECT_ID

from relay_service.core.exceptions import JobQueueError, PolicyError, StoreError
from relay_service.models.jobs import SEND_EMAIL_QUEUE, WEBHOOK_QUEUE
from relay_service.models.message import EventType, MessageStatus
from relay_service.models.project import ProjectStatus
from relay_service.models.requests import SendEmailRequest
from relay_service.models.suppression import SuppressionReason
from relay_service.models.webhook import WebhookEventType
from relay_service.services.rate_limiter import RateLimiter
from relay_service.services.send import SendService, idempotency_scope, send_job_key


def _request(body: dict[str, Any], **overrides) -> SendEmailRequest:
    return SendEmailRequest.model_validate({**body, **overrides})


def _service(relay, **kwargs) -> SendService:
    return SendService(
        messages=relay.messages,
        projects=relay.projects,
        suppressions=relay.suppressions,
        idempotency=relay.idempotency,
        queue=relay.queue,
        dispatcher=relay.dispatcher,
        config=relay.config,
        **kwargs,
    )


class TestAccept:
    """Tests for accepted messages."""

    def test_creates_message_event_and_job(self, relay, sample_send_request):
        result = relay.send_service.send(
            PROJECT_ID, _request(sample_send_request), api_key_id="key_1"
        )

        assert result["status"] == "QUEUED"
        message = relay.messages.get_message(result["messageId"], PROJECT_ID)
        assert message.status == MessageStatus.QUEUED
        assert message.subject == "Welcome"
        assert message.tags == {"welcome"}

        (event,) = relay.messages.get_events(message.id)
        assert event.type == EventType.QUEUED
        assert event.data["apiKeyId"] == "key_1"

        (job,) = relay.queue.jobs_in(SEND_EMAIL_QUEUE)
        assert job.payload == {"kind": "send-email", "message_id": message.id}
        assert job.job_key == send_job_key(message.id)
        assert job.max_attempts == relay.config.EMAIL_RETRY_MAX_ATTEMPTS
        assert job.priority == 5

    def test_priority_maps_to_queue_priority(self, relay, sample_send_request):
        relay.send_service.send(PROJECT_ID, _request(sample_send_request, priority="high"))

        assert relay.queue.jobs_in(SEND_EMAIL_QUEUE)[0].priority == 1

    def test_queued_webhook(self, relay, sample_send_request):
        relay.webhooks.add(
            PROJECT_ID, "https://hooks.acme.com/relay", {WebhookEventType.MESSAGE_QUEUED}
        )

        result = relay.send_service.send(PROJECT_ID, _request(sample_send_request))

        (job,) = relay.queue.jobs_in(WEBHOOK_QUEUE)
        assert job.payload["event_type"] == "message.queued"
        assert job.payload["payload"]["data"]["messageId"] == result["messageId"]

    def test_inactive_project(self, relay, sample_send_request):
        relay.projects.add_project("proj_off", status=ProjectStatus.SUSPENDED)

        with pytest.raises(PolicyError) as exc_info:
            relay.send_service.send("proj_off", _request(sample_send_request))

        assert exc_info.value.code == PolicyError.PROJECT_INACTIVE


class TestSuppression:
    """Tests for refusing suppressed recipients."""

    def test_suppressed_recipient_refused(self, relay, sample_send_request):
        relay.suppressions.upsert_suppression(
            PROJECT_ID, "Second@Example.com", SuppressionReason.UNSUBSCRIBE, source="api"
        )
        request = _request(
            sample_send_request, to=["user@example.com", "second@example.com"]
        )

        with pytest.raises(PolicyError) as exc_info:
            relay.send_service.send(PROJECT_ID, request)

        assert exc_info.value.code == PolicyError.RECIPIENT_SUPPRESSED
        assert "second@example.com" in exc_info.value.message
        assert relay.messages.messages == {}
        assert relay.queue.jobs == {}

    def test_suppression_is_per_project(self, relay, sample_send_request):
        relay.suppressions.upsert_suppression(
            "proj_other", "user@example.com", SuppressionReason.BOUNCE, source="bounce"
        )

        result = relay.send_service.send(PROJECT_ID, _request(sample_send_request))

        assert result["status"] == "QUEUED"


class TestContent:
    """Tests for template rendering and the content requirement."""

    def test_template_rendered(self, relay, sample_send_request):
        relay.projects.add_template(
            PROJECT_ID,
            "tpl_welcome",
            subject="Welcome {{name}}",
            html="<p>Hi {{name}}, code {{code}}</p>",
            text="Hi {{name}}",
        )
        body = {k: v for k, v in sample_send_request.items() if k not in ("subject", "html", "text")}

        result = relay.send_service.send(
            PROJECT_ID,
            _request(body, templateId="tpl_welcome", variables={"name": "Ann"}),
        )

        message = relay.messages.get_message(result["messageId"])
        assert message.subject == "Welcome Ann"
        assert message.html == "<p>Hi Ann, code {{code}}</p>"
        assert message.text == "Hi Ann"
        assert message.template_id == "tpl_welcome"
        assert message.variables == {"name": "Ann"}

    def test_unknown_template(self, relay, sample_send_request):
        with pytest.raises(PolicyError) as exc_info:
            relay.send_service.send(
                PROJECT_ID, _request(sample_send_request, templateId="tpl_missing")
            )

        assert exc_info.value.code == PolicyError.TEMPLATE_NOT_FOUND

    def test_template_of_another_project(self, relay, sample_send_request):
        relay.projects.add_template("proj_other", "tpl_x", subject="x", text="x")

        with pytest.raises(PolicyError) as exc_info:
            relay.send_service.send(PROJECT_ID, _request(sample_send_request, templateId="tpl_x"))

        assert exc_info.value.code == PolicyError.TEMPLATE_NOT_FOUND

    def test_missing_content(self, relay, sample_send_request):
        request = _request(sample_send_request, html=None, text=None)

        with pytest.raises(PolicyError) as exc_info:
            relay.send_service.send(PROJECT_ID, request)

        assert exc_info.value.code == PolicyError.MISSING_CONTENT

    def test_subject_or_template_required(self, sample_send_request):
        body = {k: v for k, v in sample_send_request.items() if k != "subject"}

        with pytest.raises(ValueError, match="subject or templateId"):
            SendEmailRequest.model_validate(body)


class TestRecipientShapes:
    """Tests for the accepted forms of ``to``."""

    @pytest.mark.parametrize(
        "to",
        [
            "a@example.com",
            {"email": "a@example.com", "name": "Ann"},
            ["a@example.com", "b@example.com"],
            ["a@example.com", {"email": "b@example.com"}],
        ],
    )
    def test_strings_and_objects(self, to):
        request = SendEmailRequest.model_validate(
            {"to": to, "from": "noreply@acme.com", "subject": "S", "text": "T"}
        )

        assert request.recipient_emails[0] == "a@example.com"
        assert str(request.from_address.email) == "noreply@acme.com"

    def test_duplicates_removed_case_insensitively(self):
        request = SendEmailRequest.model_validate(
            {"to": ["a@example.com", "A@example.com"], "from": "noreply@acme.com", "subject": "S"}
        )

        assert request.recipient_emails == ["a@example.com"]


class TestRateLimit:
    def test_project_limit(self, relay, sample_send_request):
        service = _service(relay, rate_limiter=RateLimiter(max_requests=1, window_seconds=60))
        service.send(PROJECT_ID, _request(sample_send_request))

        with pytest.raises(PolicyError) as exc_info:
            service.send(PROJECT_ID, _request(sample_send_request))

        assert exc_info.value.code == PolicyError.RATE_LIMIT_EXCEEDED
        assert len(relay.messages.messages) == 1


class TestQueueFailure:
    """Tests for a job that cannot be enqueued after the message row exists."""

    def test_message_removed_when_enqueue_fails(self, relay, sample_send_request, monkeypatch):
        def broken_enqueue(*args, **kwargs):
            raise JobQueueError("Failed to enqueue job")

        monkeypatch.setattr(relay.queue, "enqueue", broken_enqueue)

        with pytest.raises(JobQueueError):
            relay.send_service.send(PROJECT_ID, _request(sample_send_request))

        assert relay.messages.messages == {}
        assert relay.messages.events == []

    def test_retry_with_same_key_succeeds(self, relay, sample_send_request, monkeypatch):
        enqueue = relay.queue.enqueue
        failures = [JobQueueError("connection reset")]

        def flaky_enqueue(*args, **kwargs):
            if failures:
                raise failures.pop()
            return enqueue(*args, **kwargs)

        monkeypatch.setattr(relay.queue, "enqueue", flaky_enqueue)

        with pytest.raises(JobQueueError):
            relay.send_service.send(
                PROJECT_ID, _request(sample_send_request), idempotency_key="order-9"
            )
        result = relay.send_service.send(
            PROJECT_ID, _request(sample_send_request), idempotency_key="order-9"
        )

        assert result["status"] == "QUEUED"
        (message,) = relay.messages.messages.values()
        assert message.id == result["messageId"]
        (job,) = relay.queue.jobs_in(SEND_EMAIL_QUEUE)
        assert job.payload["message_id"] == message.id

    def test_event_failure_removes_message(self, relay, sample_send_request, monkeypatch):
        def broken_event(*args, **kwargs):
            raise StoreError("Failed to record event")

        monkeypatch.setattr(relay.messages, "record_event", broken_event)

        with pytest.raises(StoreError):
            relay.send_service.send(PROJECT_ID, _request(sample_send_request))

        assert relay.messages.messages == {}
        assert relay.queue.jobs == {}


class TestIdempotency:
    """Tests for replaying requests with the same idempotency key."""

    def test_replay_returns_first_response(self, relay, sample_send_request):
        first = relay.send_service.send(
            PROJECT_ID, _request(sample_send_request), idempotency_key="order-1042"
        )
        second = relay.send_service.send(
            PROJECT_ID, _request(sample_send_request), idempotency_key="order-1042"
        )

        assert second == first
        assert len(relay.messages.messages) == 1
        assert len(relay.queue.jobs_in(SEND_EMAIL_QUEUE)) == 1

    def test_body_key_used_without_header(self, relay, sample_send_request):
        request = _request(sample_send_request, idempotencyKey="order-7")

        first = relay.send_service.send(PROJECT_ID, request)
        second = relay.send_service.send(PROJECT_ID, request)

        assert second == first
        assert relay.messages.get_message(first["messageId"]).idempotency_key == "order-7"

    def test_keys_are_scoped_per_project(self, relay, sample_send_request):
        relay.projects.add_project("proj_2")

        first = relay.send_service.send(
            PROJECT_ID, _request(sample_send_request), idempotency_key="k"
        )
        second = relay.send_service.send(
            "proj_2", _request(sample_send_request), idempotency_key="k"
        )

        assert first["messageId"] != second["messageId"]

    def test_refused_request_releases_key(self, relay, sample_send_request):
        relay.suppressions.upsert_suppression(
            PROJECT_ID, "user@example.com", SuppressionReason.MANUAL, source="api"
        )
        with pytest.raises(PolicyError):
            relay.send_service.send(
                PROJECT_ID, _request(sample_send_request), idempotency_key="retry-me"
            )

        relay.suppressions.remove_suppression(PROJECT_ID, "user@example.com")
        result = relay.send_service.send(
            PROJECT_ID, _request(sample_send_request), idempotency_key="retry-me"
        )

        assert result["status"] == "QUEUED"

    def test_in_flight_key_conflicts(self, relay, sample_send_request):
        now = [0.0]

        def sleep(seconds: float) -> None:
            now[0] += seconds

        service = _service(relay, sleep=sleep, clock=lambda: now[0])
        relay.idempotency.reserve("busy", idempotency_scope(PROJECT_ID))

        with pytest.raises(PolicyError) as exc_info:
            service.send(PROJECT_ID, _request(sample_send_request), idempotency_key="busy")

        assert exc_info.value.code == PolicyError.IDEMPOTENCY_CONFLICT
        assert now[0] >= relay.config.IDEMPOTENCY_WAIT_SECONDS
        assert relay.messages.messages == {}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
