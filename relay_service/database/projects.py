"""Read access to projects, API keys and templates.

These tables are maintained by administrative tooling; the relay only reads
them, apart from recording when an API key was last used.
"""

from __future__ import annotations

from relay_service.core.logger import get_logger
from relay_service.database.connection import Repository, with_db_retry
from relay_service.models.project import ApiKeyRecord, ProjectRecord, TemplateRecord

logger = get_logger(__name__)


class ProjectStore(Repository):
    """Project, credential and template lookups."""

    @with_db_retry(error_message="Failed to fetch project")
    def get_project(self, conn, project_id: str) -> ProjectRecord | None:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT * FROM {self._table('projects')} WHERE id = %s",
                (project_id,),
            )
            row = cur.fetchone()
        conn.commit()
        return ProjectRecord(**dict(row)) if row else None

    @with_db_retry(error_message="Failed to list API keys")
    def list_api_keys(self, conn, project_id: str | None = None) -> list[ApiKeyRecord]:
        """Non-revoked API keys, for one project or for all of them."""
        with conn.cursor() as cur:
            if project_id is None:
                cur.execute(
                    f"""
                    SELECT * FROM {self._table('api_keys')}
                    WHERE revoked_at IS NULL
                    """
                )
            else:
                cur.execute(
                    f"""
                    SELECT * FROM {self._table('api_keys')}
                    WHERE project_id = %s AND revoked_at IS NULL
                    """,
                    (project_id,),
                )
            rows = cur.fetchall()
        conn.commit()
        return [ApiKeyRecord(**dict(row)) for row in rows]

    @with_db_retry(error_message="Failed to update API key")
    def touch_api_key(self, conn, api_key_id: str) -> None:
        """Record that an API key was just used."""
        with conn.cursor() as cur:
            cur.execute(
                f"UPDATE {self._table('api_keys')} SET last_used_at = now() WHERE id = %s",
                (api_key_id,),
            )
        conn.commit()

    @with_db_retry(error_message="Failed to fetch template")
    def get_template(self, conn, project_id: str, template_id: str) -> TemplateRecord | None:
        """Template by id within a project."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM {self._table('templates')}
                WHERE id = %s AND project_id = %s
                """,
                (template_id, project_id),
            )
            row = cur.fetchone()
        conn.commit()
        return TemplateRecord(**dict(row)) if row else None
