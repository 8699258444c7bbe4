"""Suppression list store.

A suppression row for (project, email) blocks every future send to that
recipient for that project until it is removed.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extras import Json

from relay_service.core.logger import get_logger
from relay_service.database.connection import Repository, with_db_retry
from relay_service.models.suppression import SuppressionReason, SuppressionRecord

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SuppressionStore(Repository):
    """Reads and writes the per-project suppression list."""

    @with_db_retry(error_message="Failed to check suppression")
    def get_suppression(self, conn, project_id: str, email: str) -> SuppressionRecord | None:
        """Return the suppression row blocking ``email``, if any.

        Callers treat a non-None result as "suppressed" and use its reason.
        """
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM {self._table('suppressions')}
                WHERE project_id = %s AND email = %s
                """,
                (project_id, normalize_email(email)),
            )
            row = cur.fetchone()
        conn.commit()
        return SuppressionRecord(**dict(row)) if row else None

    def is_suppressed(self, project_id: str, email: str) -> bool:
        return self.get_suppression(project_id, email) is not None

    @with_db_retry(error_message="Failed to upsert suppression")
    def upsert_suppression(
        self,
        conn,
        project_id: str,
        email: str,
        reason: SuppressionReason,
        source: str,
        metadata: dict[str, Any] | None = None,
    ) -> SuppressionRecord:
        """Insert or update the suppression for (project, email).

        The unique constraint on (project_id, email) serializes concurrent
        upserts; on conflict the reason is overwritten and metadata merged.
        """
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self._table('suppressions')} AS s
                    (project_id, email, reason, source, metadata)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (project_id, email) DO UPDATE
                SET reason = EXCLUDED.reason,
                    metadata = s.metadata || EXCLUDED.metadata,
                    updated_at = now()
                RETURNING *
                """,
                (
                    project_id,
                    normalize_email(email),
                    reason.value,
                    source,
                    Json(metadata or {}),
                ),
            )
            row = cur.fetchone()
        conn.commit()

        logger.info(f"Suppressed {email} for project {project_id} ({reason.value})")
        return SuppressionRecord(**dict(row))

    @with_db_retry(error_message="Failed to remove suppression")
    def remove_suppression(self, conn, project_id: str, email: str) -> bool:
        """Delete a suppression. Returns True if a row was removed."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                DELETE FROM {self._table('suppressions')}
                WHERE project_id = %s AND email = %s
                """,
                (project_id, normalize_email(email)),
            )
            deleted = cur.rowcount
        conn.commit()
        return bool(deleted)
