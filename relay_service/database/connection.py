"""PostgreSQL connection pool shared by every store.

Features:
- Connection pooling with automatic validation
- Retry decorator for transient failures
- Repository base class used by the queue and the stores

Version: 2.1.0
"""

from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor

from relay_service.config import RelayConfig
from relay_service.core.exceptions import RelayServiceError, StoreError
from relay_service.core.logger import get_logger

logger = get_logger(__name__)

# Type variable for generic return types
T = TypeVar("T")


# =============================================================================
# Retry Decorator
# =============================================================================
def with_db_retry(
    max_retries: int = 2,
    error_message: str = "Database operation failed",
    error_cls: type[StoreError] = StoreError,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for repository methods with automatic retry on connection errors.

    The decorated method receives a pooled connection as its first argument
    after ``self`` and is responsible for committing. Any exception rolls the
    transaction back; ``OperationalError`` is retried, relay errors propagate
    unchanged and everything else is wrapped in ``error_cls``.

    Args:
        max_retries: Maximum attempts (default: 2).
        error_message: Base error message for failures.
        error_cls: StoreError subclass raised on failure.

    Returns:
        Decorated function with retry logic.

    Example:
        @with_db_retry(error_message="Failed to fetch message")
        def get_message(self, conn, message_id):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self: Repository, *args: Any, **kwargs: Any) -> T:
            last_error: Exception | None = None

            for attempt in range(max_retries):
                conn = self._get_connection()
                try:
                    return func(self, conn, *args, **kwargs)
                except psycopg2.OperationalError as e:
                    conn.rollback()
                    last_error = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"Connection error in {func.__name__}, "
                            f"retrying ({attempt + 1}/{max_retries})"
                        )
                        continue
                    logger.error(f"{error_message} after {max_retries} retries: {e}")
                except RelayServiceError:
                    conn.rollback()
                    raise
                except Exception as e:
                    conn.rollback()
                    logger.error(f"{error_message}: {e}")
                    raise error_cls(f"{error_message}: {e}") from e
                finally:
                    self._return_connection(conn)

            raise error_cls(f"{error_message}: {last_error}") from last_error

        return wrapper

    return decorator


def _validate_connection(conn: psycopg2.extensions.connection) -> bool:
    """Validate if a database connection is alive.

    Args:
        conn: PostgreSQL connection to validate

    Returns:
        True if connection is valid, False if dead/unusable
    """
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        conn.rollback()
        return True
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        return False


class Database:
    """Owns the psycopg2 connection pool.

    Thread-safe for the pool operations the stores need; one instance is
    constructed per process and passed to every repository.
    """

    def __init__(self, config: RelayConfig | None = None) -> None:
        """Initialize the connection pool.

        Args:
            config: Relay configuration (uses a fresh RelayConfig if None).

        Raises:
            StoreError: If connection pool initialization fails.
        """
        self.config = config or RelayConfig()
        self.schema = self.config.SCHEMA_NAME
        self._pool: pool.ThreadedConnectionPool | None = None

        try:
            self._init_pool()
            logger.info("Database connection pool initialized")
        except Exception as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            self._cleanup_pool()
            raise StoreError(f"Connection pool initialization failed: {e}") from e

    def _init_pool(self) -> None:
        min_conn = self.config.DB_POOL_SIZE_MIN
        max_conn = self.config.DB_POOL_SIZE_MAX

        logger.debug(
            f"Initializing PostgreSQL connection pool (min={min_conn}, max={max_conn})..."
        )
        self._pool = pool.ThreadedConnectionPool(
            minconn=min_conn,
            maxconn=max_conn,
            dsn=self.config.DATABASE_URL,
            cursor_factory=RealDictCursor,
        )

    def _cleanup_pool(self) -> None:
        """Clean up connection pool and release all connections."""
        if self._pool:
            try:
                self._pool.closeall()
                logger.debug("Connection pool closed successfully")
            except psycopg2.Error as e:
                logger.warning(f"Error closing connection pool: {e}")
            finally:
                self._pool = None

    def table(self, name: str) -> str:
        """Return the schema-qualified table name."""
        return f"{self.schema}.{name}"

    def get_connection(self) -> psycopg2.extensions.connection:
        """Get connection from pool with automatic validation.

        Raises:
            StoreError: If pool not initialized.
        """
        if not self._pool:
            raise StoreError("Connection pool not initialized")

        conn = self._pool.getconn()

        if not _validate_connection(conn):
            self._pool.putconn(conn, close=True)
            logger.warning("Dead connection detected, retrieving fresh connection")
            conn = self._pool.getconn()

        return conn

    def return_connection(self, conn: psycopg2.extensions.connection) -> None:
        """Return connection to pool."""
        if self._pool:
            self._pool.putconn(conn)

    def health_check(self) -> bool:
        """Check database connectivity.

        Returns:
            True if database is accessible, False otherwise.
        """
        try:
            conn = self.get_connection()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
                conn.rollback()
                return True
            finally:
                self.return_connection(conn)
        except (psycopg2.Error, StoreError) as e:
            logger.warning(f"Health check failed: {e}")
            return False

    def close(self) -> None:
        """Close all connections in pool."""
        if self._pool:
            logger.info("Closing database connection pool...")
            self._cleanup_pool()
            logger.info("Connection pool closed")


class Repository:
    """Base class for stores that issue SQL through a shared ``Database``."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def _table(self, name: str) -> str:
        return self.db.table(name)

    def _get_connection(self) -> psycopg2.extensions.connection:
        return self.db.get_connection()

    def _return_connection(self, conn: psycopg2.extensions.connection) -> None:
        self.db.return_connection(conn)
