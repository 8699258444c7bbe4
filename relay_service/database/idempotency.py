"""Idempotency key store.

Caches the response of a request under ``(key, scope)`` so a retried call
returns the same response instead of repeating its side effects. Entries
expire after a fixed TTL; expired entries are treated as absent and deleted
when they are next looked at.

A request first *reserves* its key (a row without a response), does its work
and then *stores* the response. A concurrent duplicate sees the reservation
and waits for the response instead of doing the work twice.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extras import Json

from relay_service.core.logger import get_logger
from relay_service.database.connection import Repository, with_db_retry

logger = get_logger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class IdempotencyStore(Repository):
    """PostgreSQL-backed idempotency cache."""

    @with_db_retry(error_message="Failed to check idempotency key")
    def check(self, conn, key: str, scope: str) -> dict[str, Any] | None:
        """Return the cached response for ``(key, scope)``.

        Returns None when there is no entry, when the entry expired (it is
        deleted) or when the first request has not finished yet.
        """
        table = self._table("idempotency_keys")
        with conn.cursor() as cur:
            cur.execute(
                f"""
                DELETE FROM {table}
                WHERE key = %s AND scope = %s AND expires_at <= now()
                """,
                (key, scope),
            )
            if cur.rowcount:
                logger.debug(f"Expired idempotency key {key} removed")
            cur.execute(
                f"SELECT response FROM {table} WHERE key = %s AND scope = %s",
                (key, scope),
            )
            row = cur.fetchone()
        conn.commit()

        if not row:
            return None
        return row["response"]

    @with_db_retry(error_message="Failed to reserve idempotency key")
    def reserve(self, conn, key: str, scope: str, ttl: float = DEFAULT_TTL_SECONDS) -> bool:
        """Claim ``(key, scope)`` for the calling request.

        Returns:
            True if this caller owns the key, False if another request
            already holds or completed it.
        """
        table = self._table("idempotency_keys")
        with conn.cursor() as cur:
            cur.execute(
                f"""
                DELETE FROM {table}
                WHERE key = %s AND scope = %s AND expires_at <= now()
                """,
                (key, scope),
            )
            cur.execute(
                f"""
                INSERT INTO {table} (key, scope, response, expires_at)
                VALUES (%s, %s, NULL, now() + make_interval(secs => %s))
                ON CONFLICT (key, scope) DO NOTHING
                """,
                (key, scope, ttl),
            )
            reserved = cur.rowcount == 1
        conn.commit()
        return reserved

    @with_db_retry(error_message="Failed to store idempotency key")
    def store(
        self,
        conn,
        key: str,
        scope: str,
        response: dict[str, Any],
        ttl: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        """Save the response for ``(key, scope)`` for ``ttl`` seconds."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self._table('idempotency_keys')}
                    (key, scope, response, expires_at)
                VALUES (%s, %s, %s, now() + make_interval(secs => %s))
                ON CONFLICT (key, scope) DO UPDATE
                SET response = EXCLUDED.response,
                    expires_at = EXCLUDED.expires_at
                """,
                (key, scope, Json(response), ttl),
            )
        conn.commit()
        logger.debug(f"Idempotency key {key} stored for {scope}")

    @with_db_retry(error_message="Failed to release idempotency key")
    def release(self, conn, key: str, scope: str) -> None:
        """Drop an unfinished reservation so the caller may retry."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                DELETE FROM {self._table('idempotency_keys')}
                WHERE key = %s AND scope = %s AND response IS NULL
                """,
                (key, scope),
            )
        conn.commit()

    @with_db_retry(error_message="Failed to clean up idempotency keys")
    def cleanup(self, conn) -> int:
        """Delete every expired entry. Returns the number removed."""
        with conn.cursor() as cur:
            cur.execute(
                f"DELETE FROM {self._table('idempotency_keys')} WHERE expires_at <= now()"
            )
            deleted = cur.rowcount
        conn.commit()

        if deleted:
            logger.info(f"Deleted {deleted} expired idempotency keys")
        return deleted
