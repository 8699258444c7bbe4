"""Unit tests for the connection pool and JobQueue.

Tests database operations, connection pooling, retry logic and the backoff
schedule.

Version: 1.0.0
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest
from hypothesis import given
from hypothesis import strategies as st

from relay_service.core.exceptions import JobQueueError, StoreError
from relay_service.database.connection import Database, _validate_connection, with_db_retry
from relay_service.database.queue import JobQueue, compute_backoff
from relay_service.models.jobs import JobRecord, JobStatus

POOL_PATH = "relay_service.database.connection.pool.ThreadedConnectionPool"
VALIDATE_PATH = "relay_service.database.connection._validate_connection"


def _job_row(**overrides) -> dict:
    row = {
        "id": 7,
        "queue_name": "send-email",
        "payload": {"kind": "send-email", "message_id": "msg_1"},
        "status": "active",
        "attempts": 1,
        "max_attempts": 3,
        "priority": 5,
        "backoff_base": 5.0,
        "backoff_max": 60.0,
        "run_at": datetime.now(timezone.utc),
        "locked_by": "worker-1",
        "lease_expires_at": None,
        "last_error": None,
        "job_key": "send:msg_1",
        "created_at": datetime.now(timezone.utc),
    }
    row.update(overrides)
    return row


@pytest.fixture
def queue(relay_config, mock_connection_pool):
    with patch(POOL_PATH, return_value=mock_connection_pool):
        with patch(VALIDATE_PATH, return_value=True):
            yield JobQueue(Database(relay_config), relay_config, random_fn=lambda: 0.0)


class TestValidateConnection:
    """Tests for connection validation function."""

    def test_validate_connection_alive(self):
        """Test validation with a healthy connection."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
        mock_conn.cursor.return_value.__exit__.return_value = None
        mock_cursor.fetchone.return_value = (1,)

        assert _validate_connection(mock_conn) is True
        mock_conn.rollback.assert_called_once()

    def test_validate_connection_dead(self):
        """Test validation detects dead connection."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
        mock_cursor.execute.side_effect = psycopg2.OperationalError("server closed")

        assert _validate_connection(mock_conn) is False

    def test_validate_connection_interface_error(self):
        """Test validation detects interface errors."""
        mock_conn = MagicMock()
        mock_cursor = MagicMock()
        mock_conn.cursor.return_value.__enter__.return_value = mock_cursor
        mock_cursor.execute.side_effect = psycopg2.InterfaceError("connection already closed")

        assert _validate_connection(mock_conn) is False


class TestWithDbRetryDecorator:
    """Tests for the database retry decorator."""

    def test_decorator_success_first_try(self, queue, mock_db_connection):
        """Test decorator returns result on first successful try."""
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = {"result": 42}

        @with_db_retry(max_retries=2, error_message="Test failed")
        def test_func(self, conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return cur.fetchone()

        assert test_func(queue) == {"result": 42}

    def test_decorator_retries_on_operational_error(self, queue, mock_db_connection):
        """Test decorator retries on OperationalError."""
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        call_count = [0]

        def side_effect(*args):
            call_count[0] += 1
            if call_count[0] == 1:
                raise psycopg2.OperationalError("Connection lost")

        mock_cursor.execute.side_effect = side_effect
        mock_cursor.fetchone.return_value = {"result": "success"}

        @with_db_retry(max_retries=2, error_message="Test failed")
        def test_func(self, conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                return cur.fetchone()

        assert test_func(queue) == {"result": "success"}
        assert call_count[0] == 2
        mock_db_connection.rollback.assert_called()

    def test_decorator_raises_after_max_retries(self, queue, mock_db_connection):
        """Test decorator raises the configured error class after max retries."""
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.execute.side_effect = psycopg2.OperationalError("Connection lost")

        @with_db_retry(max_retries=2, error_message="Test operation failed", error_cls=JobQueueError)
        def test_func(self, conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")

        with pytest.raises(JobQueueError) as exc_info:
            test_func(queue)

        assert "Test operation failed" in str(exc_info.value)
        assert mock_cursor.execute.call_count == 2

    def test_decorator_raises_immediately_on_other_errors(self, queue, mock_db_connection):
        """Test decorator wraps non-retryable errors without retrying."""
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.execute.side_effect = ValueError("Invalid value")

        @with_db_retry(max_retries=3, error_message="Value error")
        def test_func(self, conn):
            with conn.cursor() as cur:
                cur.execute("SELECT 1")

        with pytest.raises(StoreError):
            test_func(queue)

        assert mock_cursor.execute.call_count == 1

    def test_decorator_propagates_relay_errors_unchanged(self, queue, mock_connection_pool):
        """Relay errors raised inside the method are not re-wrapped."""

        @with_db_retry(error_message="Outer")
        def test_func(self, conn):
            raise JobQueueError("Job #1 not found", entity_id=1)

        with pytest.raises(JobQueueError) as exc_info:
            test_func(queue)

        assert str(exc_info.value) == "Job #1 not found"
        mock_connection_pool.putconn.assert_called()


class TestDatabaseInit:
    """Tests for Database initialization."""

    def test_init_creates_pool(self, relay_config, mock_connection_pool):
        """Test initialization creates connection pool."""
        with patch(POOL_PATH, return_value=mock_connection_pool) as mock_pool:
            db = Database(config=relay_config)

            assert db._pool is not None
            assert db.schema == "test"
            assert mock_pool.call_args.kwargs["dsn"] == relay_config.DATABASE_URL

    def test_init_without_config(self, relay_config):
        """Test initialization loads config when not provided."""
        with patch("relay_service.database.connection.RelayConfig", return_value=relay_config):
            with patch(POOL_PATH) as mock_pool:
                mock_pool.return_value = MagicMock()
                db = Database()

                assert db.config is relay_config

    def test_init_fails_gracefully(self, relay_config):
        """Test initialization handles pool creation failure."""
        with patch(POOL_PATH) as mock_pool:
            mock_pool.side_effect = Exception("Cannot connect to database")

            with pytest.raises(StoreError) as exc_info:
                Database(config=relay_config)

            assert "Connection pool initialization failed" in str(exc_info.value)

    def test_table_is_schema_qualified(self, queue):
        assert queue.table == "test.jobs"


class TestDatabaseGetConnection:
    """Tests for connection pool operations."""

    def test_get_connection_replaces_dead(self, relay_config, mock_connection_pool):
        """Test getting connection replaces dead connections."""
        dead_conn = MagicMock()
        fresh_conn = MagicMock()
        mock_connection_pool.getconn.side_effect = [dead_conn, fresh_conn]

        with patch(POOL_PATH, return_value=mock_connection_pool):
            with patch(VALIDATE_PATH, side_effect=[False, True]):
                db = Database(config=relay_config)

                assert db.get_connection() == fresh_conn
                mock_connection_pool.putconn.assert_called_once_with(dead_conn, close=True)

    def test_get_connection_raises_without_pool(self, relay_config, mock_connection_pool):
        """Test getting connection raises when pool not initialized."""
        with patch(POOL_PATH, return_value=mock_connection_pool):
            db = Database(config=relay_config)
            db._pool = None

            with pytest.raises(StoreError) as exc_info:
                db.get_connection()

            assert "Connection pool not initialized" in str(exc_info.value)

    def test_health_check_failure(self, relay_config, mock_connection_pool, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        with patch(POOL_PATH, return_value=mock_connection_pool):
            with patch(VALIDATE_PATH, return_value=True):
                db = Database(config=relay_config)
                mock_cursor.execute.side_effect = psycopg2.OperationalError("down")

                assert db.health_check() is False


class TestComputeBackoff:
    """Tests for the exponential backoff schedule."""

    def test_doubles_from_base(self):
        delays = [compute_backoff(n, base=5, max_delay=60) for n in range(5)]
        assert delays == [5.0, 10.0, 20.0, 40.0, 60.0]

    def test_jitter_is_added(self):
        assert compute_backoff(0, base=5, max_delay=60, jitter=1.0, random_fn=lambda: 0.5) == 5.5

    def test_capped_at_max_delay(self):
        assert compute_backoff(50, base=5, max_delay=60, jitter=1.0, random_fn=lambda: 0.99) == 60.0

    @given(
        attempt=st.integers(min_value=0, max_value=40),
        base=st.floats(min_value=0.1, max_value=30),
        cap_factor=st.floats(min_value=1, max_value=1000),
        r1=st.floats(min_value=0, max_value=0.999),
        r2=st.floats(min_value=0, max_value=0.999),
    )
    def test_never_decreases_when_jitter_within_base(self, attempt, base, cap_factor, r1, r2):
        cap = base * cap_factor
        jitter = base
        first = compute_backoff(attempt, base, cap, jitter, random_fn=lambda: r1)
        second = compute_backoff(attempt + 1, base, cap, jitter, random_fn=lambda: r2)

        assert second >= first
        assert second <= cap


class TestEnqueue:
    """Tests for job enqueueing."""

    def test_enqueue_returns_new_id(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = {"id": 123}

        job_id = queue.enqueue(
            "send-email",
            {"kind": "send-email", "message_id": "msg_1"},
            max_attempts=3,
            job_key="send:msg_1",
        )

        assert job_id == 123
        mock_cursor.execute.assert_called_once()
        params = mock_cursor.execute.call_args[0][1]
        assert params[2] == JobStatus.WAITING.value
        mock_db_connection.commit.assert_called_once()

    def test_enqueue_with_delay_is_delayed(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = {"id": 5}

        queue.enqueue("webhook", {"kind": "webhook"}, delay=10)

        params = mock_cursor.execute.call_args[0][1]
        assert params[2] == JobStatus.DELAYED.value

    def test_enqueue_existing_key_returns_existing_id(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.side_effect = [None, {"id": 99}]

        assert queue.enqueue("send-email", {}, job_key="send:msg_1") == 99
        assert mock_cursor.execute.call_count == 2


class TestLeaseAndSettle:
    """Tests for leasing, acknowledging and failing jobs."""

    def test_lease_returns_job(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = _job_row()

        job = queue.lease("send-email", "worker-1")

        assert isinstance(job, JobRecord)
        assert job.status == JobStatus.ACTIVE
        assert job.attempts == 1
        sql = mock_cursor.execute.call_args[0][0]
        assert "FOR UPDATE SKIP LOCKED" in sql

    def test_lease_empty_queue(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = None

        assert queue.lease("send-email", "worker-1") is None

    def test_fail_with_attempts_left_is_delayed(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = _job_row(attempts=2)

        assert queue.fail(7, "timeout") == JobStatus.DELAYED
        # Second attempt failed: base * 2
        params = mock_cursor.execute.call_args[0][1]
        assert params == ("timeout", 10.0, 7)

    def test_fail_uses_explicit_delay(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = _job_row(attempts=1)

        queue.fail(7, "timeout", delay=42.0)

        assert mock_cursor.execute.call_args[0][1] == ("timeout", 42.0, 7)

    def test_fail_exhausted_is_terminal(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = _job_row(attempts=3)

        assert queue.fail(7, "timeout", delay=5.0) == JobStatus.FAILED
        assert "status = 'failed'" in mock_cursor.execute.call_args[0][0]

    def test_fail_unknown_job(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchone.return_value = None

        with pytest.raises(JobQueueError):
            queue.fail(404, "boom")

    def test_next_retry_delay_follows_attempts(self, queue):
        job = JobRecord(**_job_row(attempts=3))
        assert queue.next_retry_delay(job) == 20.0

    def test_requeue_stalled_returns_jobs(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchall.return_value = [
            _job_row(id=1, status="waiting"),
            _job_row(id=2, status="failed", attempts=3),
        ]

        jobs = queue.requeue_stalled("send-email")

        assert [(j.id, j.status) for j in jobs] == [(1, JobStatus.WAITING), (2, JobStatus.FAILED)]
        assert "RETURNING *" in mock_cursor.execute.call_args[0][0]


class TestGetQueueStats:
    """Tests for queue statistics."""

    def test_stats_counts_and_success_rate(self, queue, mock_db_connection):
        mock_cursor = mock_db_connection.cursor.return_value.__enter__.return_value
        mock_cursor.fetchall.return_value = [
            {"status": "waiting", "count": 4},
            {"status": "completed", "count": 9},
            {"status": "failed", "count": 1},
        ]

        stats = queue.get_queue_stats("send-email")

        assert stats.waiting_count == 4
        assert stats.completed_count == 9
        assert stats.success_rate == 90.0
        assert stats.total_jobs == 14


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
