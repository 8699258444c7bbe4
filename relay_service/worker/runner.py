"""Worker runtime - queue consumers for email and webhook jobs.

One ``WorkerService`` owns its queue client, stores, outbound transport and
HTTP client, and releases them in ``stop()``. Each queue gets a consumer
task that leases jobs while a concurrency slot is free; send-email leases are
additionally paced by a token bucket.

Version: 2.0.0
"""

from __future__ import annotations

import asyncio
import socket
import uuid

import httpx
from pydantic import ValidationError

from relay_service.clients.transport import Transport, build_transport
from relay_service.config import RelayConfig
from relay_service.core.exceptions import RelayServiceError, RetryJob
from relay_service.core.logger import get_logger
from relay_service.database.connection import Database
from relay_service.database.idempotency import IdempotencyStore
from relay_service.database.messages import MessageStore
from relay_service.database.queue import JobQueue
from relay_service.database.suppressions import SuppressionStore
from relay_service.database.webhooks import WebhookStore
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
from relay_service.services.rate_limiter import TokenBucket
from relay_service.webhooks.delivery import WebhookDeliveryProcessor
from relay_service.webhooks.dispatcher import WebhookDispatcher
from relay_service.worker.email_processor import EmailDeliveryProcessor

logger = get_logger(__name__)


async def wait_for_job(
    queue: JobQueue,
    queue_name: str,
    worker_id: str,
    timeout: float,
    poll_interval: float = 0.5,
    stop: asyncio.Event | None = None,
) -> JobRecord | None:
    """Lease a job, polling until one is available or ``timeout`` elapses.

    Returns:
        The leased job, or None on timeout or when ``stop`` is set.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = queue.lease(queue_name, worker_id)
        if job is not None:
            return job

        remaining = deadline - loop.time()
        if remaining <= 0 or (stop is not None and stop.is_set()):
            return None
        await asyncio.sleep(min(poll_interval, remaining))


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class WorkerService:
    """Consumes the ``send-email`` and ``webhook`` queues.

    Usage:
        async with WorkerService.from_config(config) as service:
            await service.wait_stopped()
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        queue: JobQueue,
        messages: MessageStore,
        suppressions: SuppressionStore,
        webhooks: WebhookStore,
        idempotency: IdempotencyStore,
        transport: Transport,
        http_client: httpx.AsyncClient,
        worker_id: str | None = None,
    ) -> None:
        self.config = config
        self.queue = queue
        self.idempotency = idempotency
        self.transport = transport
        self.http_client = http_client
        self.worker_id = worker_id or default_worker_id()

        self.dispatcher = WebhookDispatcher(webhooks, queue, config)
        self.email_processor = EmailDeliveryProcessor(
            messages=messages,
            suppressions=suppressions,
            queue=queue,
            transport=transport,
            dispatcher=self.dispatcher,
            config=config,
        )
        self.webhook_processor = WebhookDeliveryProcessor(webhooks, http_client, config)
        self.send_bucket = TokenBucket(rate=config.EMAIL_SEND_RATE_PER_SECOND)

        self.running = False
        self._stop_event = asyncio.Event()
        self._consumers: list[asyncio.Task] = []
        self._in_flight: set[asyncio.Task] = set()

        self.completed_count = 0
        self.retry_count = 0
        self.failed_count = 0

    @classmethod
    def from_config(cls, config: RelayConfig) -> WorkerService:
        """Build a service with its own database pool, transport and HTTP client."""
        db = Database(config)
        return cls(
            config,
            queue=JobQueue(db, config),
            messages=MessageStore(db),
            suppressions=SuppressionStore(db),
            webhooks=WebhookStore(db),
            idempotency=IdempotencyStore(db),
            transport=build_transport(config),
            http_client=httpx.AsyncClient(timeout=config.WEBHOOK_TIMEOUT),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================
    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._stop_event.clear()

        logger.info(
            f"Worker {self.worker_id} starting | "
            f"email_concurrency={self.config.EMAIL_WORKER_CONCURRENCY} | "
            f"webhook_concurrency={self.config.WEBHOOK_WORKER_CONCURRENCY} | "
            f"send_rate={self.config.EMAIL_SEND_RATE_PER_SECOND}/s | "
            f"max_attempts={self.config.EMAIL_RETRY_MAX_ATTEMPTS}"
        )

        self._consumers = [
            asyncio.create_task(
                self._consume(
                    SEND_EMAIL_QUEUE, self.config.EMAIL_WORKER_CONCURRENCY, self.send_bucket
                ),
                name=f"consume:{SEND_EMAIL_QUEUE}",
            ),
            asyncio.create_task(
                self._consume(WEBHOOK_QUEUE, self.config.WEBHOOK_WORKER_CONCURRENCY),
                name=f"consume:{WEBHOOK_QUEUE}",
            ),
            asyncio.create_task(self._maintain(), name="maintenance"),
        ]

    def request_stop(self, signum: int | None = None) -> None:
        """Ask the consumers to stop leasing; safe to call from a signal handler."""
        if signum is not None:
            logger.info(f"Received shutdown signal ({signum}). Stopping gracefully...")
        self.running = False
        self._stop_event.set()

    async def wait_stopped(self) -> None:
        await self._stop_event.wait()

    async def stop(self) -> None:
        """Stop leasing, finish in-flight jobs and release resources."""
        self.request_stop()

        if self._consumers:
            await asyncio.gather(*self._consumers, return_exceptions=True)
            self._consumers = []
        if self._in_flight:
            logger.info(f"Waiting for {len(self._in_flight)} in-flight job(s)")
            await asyncio.gather(*self._in_flight, return_exceptions=True)

        self._print_stats()
        self.transport.close()
        await self.http_client.aclose()
        self.queue.close()
        logger.info(f"Worker {self.worker_id} stopped cleanly")

    async def __aenter__(self) -> WorkerService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # =========================================================================
    # Consumers
    # =========================================================================
    async def _consume(
        self, queue_name: str, concurrency: int, bucket: TokenBucket | None = None
    ) -> None:
        semaphore = asyncio.Semaphore(concurrency)

        while self.running:
            await semaphore.acquire()
            try:
                job = await wait_for_job(
                    self.queue,
                    queue_name,
                    self.worker_id,
                    timeout=self.config.QUEUE_POLL_INTERVAL * 5,
                    poll_interval=self.config.QUEUE_POLL_INTERVAL,
                    stop=self._stop_event,
                )
            except RelayServiceError as e:
                semaphore.release()
                logger.error(f"Leasing from {queue_name} failed: {e}")
                await asyncio.sleep(self.config.QUEUE_POLL_INTERVAL)
                continue

            if job is None:
                semaphore.release()
                continue

            if bucket is not None:
                await bucket.acquire()

            task = asyncio.create_task(self.handle_job(job))
            self._in_flight.add(task)

            def _done(t: asyncio.Task) -> None:
                self._in_flight.discard(t)
                semaphore.release()

            task.add_done_callback(_done)

        logger.debug(f"Consumer for {queue_name} stopped")

    async def handle_job(self, job: JobRecord) -> None:
        """Run one leased job and settle it with the queue.

        A normal return acks the job, ``RetryJob`` fails it with the
        processor's delay and an unparseable payload discards it. Any other
        error is settled by ``_settle_failure``.
        """
        try:
            try:
                payload = parse_job_payload(job.payload)
            except ValidationError as e:
                logger.error(f"Job #{job.id} has a malformed payload, dropping: {e}")
                self.queue.discard(job.id, f"Malformed payload: {e.error_count()} error(s)")
                self.failed_count += 1
                return

            try:
                match payload:
                    case SendEmailJob():
                        await self.email_processor.process(job, payload)
                    case WebhookJob():
                        await self.webhook_processor.process(payload)
            except RetryJob as retry:
                self.queue.fail(job.id, retry.error, retry.delay)
                self.retry_count += 1
            except RelayServiceError as e:
                logger.warning(f"Job #{job.id} on {job.queue_name} failed: {e}")
                self._settle_failure(job, payload, str(e))
            except Exception as e:
                logger.error(f"Job #{job.id} on {job.queue_name} crashed: {e}", exc_info=True)
                self._settle_failure(job, payload, f"{e.__class__.__name__}: {e}")
            else:
                self.queue.ack(job.id)
                self.completed_count += 1
        except RelayServiceError as e:
            # The lease expires and requeue_stalled hands the job out again.
            logger.error(f"Could not settle job #{job.id}: {e}")

    def _settle_failure(self, job: JobRecord, payload: JobPayload, error: str) -> None:
        """Settle a job whose processor raised something other than ``RetryJob``.

        Send-email jobs go back through the processor so the message leaves
        PROCESSING with a matching event; if that fails too the queue's own
        backoff takes over.
        """
        if not isinstance(payload, SendEmailJob):
            self._fail(job, error)
            return

        try:
            self.email_processor.settle_crashed(job, payload, error)
        except RetryJob as retry:
            self.queue.fail(job.id, retry.error, retry.delay)
            self.retry_count += 1
            return
        except RelayServiceError as e:
            logger.error(f"Could not record failure of message {payload.message_id}: {e}")
            self._fail(job, error)
            return

        self.queue.ack(job.id)
        self.failed_count += 1

    def _fail(self, job: JobRecord, error: str) -> None:
        if job.attempts_exhausted:
            self.failed_count += 1
        else:
            self.retry_count += 1
        self.queue.fail(job.id, error)

    async def _maintain(self) -> None:
        """Requeue stalled leases and purge expired idempotency keys."""
        while self.running:
            try:
                for queue_name in (SEND_EMAIL_QUEUE, WEBHOOK_QUEUE):
                    stalled = self.queue.requeue_stalled(queue_name)
                    self._finalize_abandoned(stalled)
                self.idempotency.cleanup()
            except RelayServiceError as e:
                logger.error(f"Maintenance cycle failed: {e}")

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.config.QUEUE_MAINTENANCE_INTERVAL
                )
            except asyncio.TimeoutError:
                continue

    def _finalize_abandoned(self, jobs: list[JobRecord]) -> None:
        """Mark messages FAILED whose send-email job expired with no attempts left."""
        for job in jobs:
            if job.queue_name != SEND_EMAIL_QUEUE or job.status != JobStatus.FAILED:
                continue
            try:
                payload = parse_job_payload(job.payload)
            except ValidationError as e:
                logger.error(f"Abandoned job #{job.id} has a malformed payload: {e}")
                continue
            if not isinstance(payload, SendEmailJob):
                continue
            try:
                self.email_processor.settle_crashed(job, payload, job.last_error or "lease expired")
            except RelayServiceError as e:
                logger.error(f"Could not finalize message {payload.message_id}: {e}")
                continue
            self.failed_count += 1

    def _print_stats(self) -> None:
        logger.info("Worker Statistics:")
        logger.info(f"   Completed: {self.completed_count}")
        logger.info(f"   Scheduled for retry: {self.retry_count}")
        logger.info(f"   Permanently failed: {self.failed_count}")
