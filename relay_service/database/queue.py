"""Durable job queue backed by PostgreSQL.

Handles enqueueing, leasing, acknowledging and rescheduling jobs for the
``send-email`` and ``webhook`` queues.

Features:
- FOR UPDATE SKIP LOCKED leasing: at most one active lease per job
- Exponential backoff with bounded jitter for failed attempts
- Lease expiry so jobs held by a crashed worker are picked up again
- Optional job keys that make enqueueing idempotent

Version: 2.1.0
"""

from __future__ import annotations

import random
from collections.abc import Callable
from typing import Any

from psycopg2.extras import Json

from relay_service.config import RelayConfig
from relay_service.core.exceptions import JobQueueError
from relay_service.core.logger import get_logger
from relay_service.database.connection import Database, Repository, with_db_retry
from relay_service.models.jobs import JobRecord, JobStatus
from relay_service.models.stats import QueueStats

logger = get_logger(__name__)

# 2**62 seconds is far past any sane cap; keeps float math finite.
_MAX_EXPONENT = 62


def compute_backoff(
    attempt: int,
    base: float,
    max_delay: float,
    jitter: float = 0.0,
    random_fn: Callable[[], float] = random.random,
) -> float:
    """Compute the delay before the next attempt.

    ``delay = min(base * 2**attempt + U(0, jitter), max_delay)`` where
    ``attempt`` is the zero-based index of the attempt that just failed.
    With ``jitter <= base`` the result never decreases as ``attempt`` grows.

    Args:
        attempt: Zero-based attempt index.
        base: Delay for the first retry in seconds.
        max_delay: Upper bound in seconds.
        jitter: Upper bound of the random addend in seconds.
        random_fn: Source of uniform values in [0, 1).

    Returns:
        Delay in seconds.

    Example:
        >>> compute_backoff(2, base=5, max_delay=60)
        20.0
    """
    exponent = min(max(attempt, 0), _MAX_EXPONENT)
    delay = base * (2**exponent) + jitter * random_fn()
    return float(min(delay, max_delay))


class JobQueue(Repository):
    """Manages durable jobs with PostgreSQL.

    Thread-safe for multi-worker deployments: every state change is a single
    SQL statement or a row-locked transaction.
    """

    def __init__(
        self,
        db: Database,
        config: RelayConfig | None = None,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        super().__init__(db)
        self.config = config or db.config
        self._random = random_fn
        self.table = self._table("jobs")

    # =========================================================================
    # Producer side
    # =========================================================================
    @with_db_retry(error_message="Failed to enqueue job", error_cls=JobQueueError)
    def enqueue(
        self,
        conn,
        queue_name: str,
        payload: dict[str, Any],
        *,
        delay: float = 0.0,
        max_attempts: int = 1,
        priority: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        job_key: str | None = None,
    ) -> int:
        """Enqueue a new job.

        Args:
            queue_name: Target queue (``send-email`` or ``webhook``).
            payload: JSON-serializable job payload.
            delay: Seconds before the job becomes leasable.
            max_attempts: Attempts before the job fails terminally.
            priority: Lower values are leased first.
            backoff_base: Base of the exponential retry delay, seconds.
            backoff_max: Ceiling of the retry delay, seconds.
            job_key: Optional unique key; enqueueing an existing key returns
                the existing job id instead of inserting a duplicate.

        Returns:
            Job ID.

        Raises:
            JobQueueError: If database operation fails.
        """
        status = JobStatus.DELAYED if delay > 0 else JobStatus.WAITING

        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self.table} (
                    queue_name, payload, status, max_attempts, priority,
                    backoff_base, backoff_max, run_at, job_key
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s,
                        now() + make_interval(secs => %s), %s)
                ON CONFLICT (job_key) DO NOTHING
                RETURNING id
                """,
                (
                    queue_name,
                    Json(payload),
                    status.value,
                    max_attempts,
                    priority,
                    backoff_base,
                    backoff_max,
                    delay,
                    job_key,
                ),
            )
            row = cur.fetchone()

            if row is None:
                cur.execute(f"SELECT id FROM {self.table} WHERE job_key = %s", (job_key,))
                row = cur.fetchone()
                if row is None:
                    raise JobQueueError(f"Job key {job_key} vanished during enqueue")
                conn.commit()
                logger.info(f"Job #{row['id']} already queued for key {job_key}")
                return row["id"]

        conn.commit()
        logger.info(f"Job #{row['id']} enqueued on {queue_name} (priority={priority})")
        return row["id"]

    # =========================================================================
    # Consumer side
    # =========================================================================
    @with_db_retry(error_message="Failed to lease job", error_cls=JobQueueError)
    def lease(self, conn, queue_name: str, worker_id: str) -> JobRecord | None:
        """Lease the next ready job of a queue.

        Uses FOR UPDATE SKIP LOCKED so concurrent consumers never receive the
        same job. Each lease counts as one attempt.

        Args:
            queue_name: Queue to lease from.
            worker_id: Identifier of the leasing consumer.

        Returns:
            The leased job or None if the queue has nothing ready.
        """
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.table}
                SET status = 'active',
                    attempts = attempts + 1,
                    locked_by = %s,
                    locked_at = now(),
                    lease_expires_at = now() + make_interval(secs => %s),
                    updated_at = now()
                WHERE id = (
                    SELECT id FROM {self.table}
                    WHERE queue_name = %s
                      AND status IN ('waiting', 'delayed')
                      AND run_at <= now()
                    ORDER BY priority, run_at, id
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                )
                RETURNING *
                """,
                (worker_id, self.config.QUEUE_LEASE_TIMEOUT, queue_name),
            )
            row = cur.fetchone()
        conn.commit()

        if not row:
            return None

        job = JobRecord(**dict(row))
        logger.debug(
            f"Job #{job.id} leased by {worker_id} "
            f"(attempt {job.attempts}/{job.max_attempts})"
        )
        return job

    @with_db_retry(error_message="Failed to acknowledge job", error_cls=JobQueueError)
    def ack(self, conn, job_id: int) -> None:
        """Mark a leased job as completed."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.table}
                SET status = 'completed', locked_by = NULL, lease_expires_at = NULL,
                    finished_at = now(), updated_at = now()
                WHERE id = %s AND status = 'active'
                """,
                (job_id,),
            )
            updated = cur.rowcount
        conn.commit()

        if not updated:
            logger.warning(f"Job #{job_id} was not active when acknowledged")
        else:
            logger.debug(f"Job #{job_id} completed")

    @with_db_retry(error_message="Failed to record job failure", error_cls=JobQueueError)
    def fail(self, conn, job_id: int, error: str, delay: float | None = None) -> JobStatus:
        """Record a failed attempt.

        The job is rescheduled after ``delay`` seconds (or the computed
        backoff when ``delay`` is None) while attempts remain, and moved to
        the terminal ``failed`` state once ``attempts >= max_attempts``.

        Args:
            job_id: Leased job.
            error: Error text of the attempt.
            delay: Explicit delay chosen by the processor.

        Returns:
            The job's new status (``delayed`` or ``failed``).

        Raises:
            JobQueueError: If the job does not exist.
        """
        with conn.cursor() as cur:
            cur.execute(f"SELECT * FROM {self.table} WHERE id = %s FOR UPDATE", (job_id,))
            row = cur.fetchone()
            if row is None:
                raise JobQueueError(f"Job #{job_id} not found", entity_id=job_id)

            job = JobRecord(**dict(row))

            if job.attempts_exhausted:
                cur.execute(
                    f"""
                    UPDATE {self.table}
                    SET status = 'failed', last_error = %s, locked_by = NULL,
                        lease_expires_at = NULL, finished_at = now(), updated_at = now()
                    WHERE id = %s
                    """,
                    (error, job_id),
                )
                conn.commit()
                logger.error(
                    f"Job #{job_id} on {job.queue_name} failed permanently "
                    f"after {job.attempts} attempts: {error}"
                )
                return JobStatus.FAILED

            if delay is None:
                delay = self.next_retry_delay(job)

            cur.execute(
                f"""
                UPDATE {self.table}
                SET status = 'delayed', last_error = %s, locked_by = NULL,
                    lease_expires_at = NULL,
                    run_at = now() + make_interval(secs => %s), updated_at = now()
                WHERE id = %s
                """,
                (error, delay, job_id),
            )
        conn.commit()

        logger.warning(
            f"Job #{job_id} attempt {job.attempts}/{job.max_attempts} failed, "
            f"retrying in {delay:.1f}s: {error}"
        )
        return JobStatus.DELAYED

    @with_db_retry(error_message="Failed to discard job", error_cls=JobQueueError)
    def discard(self, conn, job_id: int, reason: str) -> None:
        """Fail a job terminally without retrying it."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.table}
                SET status = 'failed', last_error = %s, locked_by = NULL,
                    lease_expires_at = NULL, finished_at = now(), updated_at = now()
                WHERE id = %s
                """,
                (reason, job_id),
            )
        conn.commit()
        logger.warning(f"Job #{job_id} discarded: {reason}")

    def next_retry_delay(self, job: JobRecord) -> float:
        """Backoff delay after the job's current (already counted) attempt."""
        return compute_backoff(
            job.attempts - 1,
            base=job.backoff_base,
            max_delay=job.backoff_max,
            jitter=self.config.QUEUE_BACKOFF_JITTER,
            random_fn=self._random,
        )

    # =========================================================================
    # Maintenance
    # =========================================================================
    @with_db_retry(error_message="Failed to requeue stalled jobs", error_cls=JobQueueError)
    def requeue_stalled(self, conn, queue_name: str) -> list[JobRecord]:
        """Return jobs whose lease expired to the queue.

        Jobs that already used all their attempts go to ``failed`` instead.

        Returns:
            The stalled jobs after the update; callers own any follow-up
            for the ones now ``failed``.
        """
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self.table}
                SET status = CASE WHEN attempts >= max_attempts
                                  THEN 'failed' ELSE 'waiting' END,
                    finished_at = CASE WHEN attempts >= max_attempts
                                       THEN now() ELSE NULL END,
                    last_error = 'lease expired',
                    locked_by = NULL,
                    lease_expires_at = NULL,
                    run_at = now(),
                    updated_at = now()
                WHERE queue_name = %s
                  AND status = 'active'
                  AND lease_expires_at < now()
                RETURNING *
                """,
                (queue_name,),
            )
            rows = cur.fetchall()
        conn.commit()

        jobs = [JobRecord(**dict(row)) for row in rows]
        for job in jobs:
            if job.status == JobStatus.FAILED:
                logger.error(f"Stalled job #{job.id} on {queue_name} has no attempts left")
            else:
                logger.warning(f"Stalled job #{job.id} on {queue_name} requeued")
        return jobs

    @with_db_retry(error_message="Failed to get queue stats", error_cls=JobQueueError)
    def get_queue_stats(self, conn, queue_name: str | None = None) -> QueueStats:
        """Get job counts by status.

        Args:
            queue_name: Restrict to one queue (all queues when None).
        """
        with conn.cursor() as cur:
            if queue_name:
                cur.execute(
                    f"""
                    SELECT status, COUNT(*) AS count FROM {self.table}
                    WHERE queue_name = %s GROUP BY status
                    """,
                    (queue_name,),
                )
            else:
                cur.execute(
                    f"SELECT status, COUNT(*) AS count FROM {self.table} GROUP BY status"
                )
            rows = cur.fetchall()
        conn.commit()

        counts = {row["status"]: row["count"] for row in rows}
        stats = QueueStats(
            queue_name=queue_name,
            waiting_count=counts.get("waiting", 0),
            active_count=counts.get("active", 0),
            delayed_count=counts.get("delayed", 0),
            completed_count=counts.get("completed", 0),
            failed_count=counts.get("failed", 0),
        )
        stats.calculate_success_rate()
        return stats

    def health_check(self) -> bool:
        """Check database connectivity."""
        return self.db.health_check()

    def close(self) -> None:
        """Close the underlying connection pool."""
        self.db.close()
