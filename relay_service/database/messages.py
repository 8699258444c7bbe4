"""Message store: accepted messages and their append-only event log.

Version: 1.0.0
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from psycopg2.extras import Json

from relay_service.core.exceptions import StoreError
from relay_service.core.logger import get_logger
from relay_service.database.connection import Repository, with_db_retry
from relay_service.models.message import (
    EventRecord,
    EventType,
    MessageCreate,
    MessageRecord,
    MessageStatus,
)

logger = get_logger(__name__)


def _row_to_message(row: dict[str, Any]) -> MessageRecord:
    data = dict(row)
    data["to"] = data.pop("to_addresses") or []
    data["tags"] = set(data.get("tags") or [])
    data["attachments"] = data.get("attachments") or []
    data["headers"] = data.get("headers") or {}
    return MessageRecord(**data)


class MessageStore(Repository):
    """Persists messages and status transitions.

    Messages are created on accept (API or SMTP relay) and afterwards only
    mutated by the delivery worker holding the message's job lease. Events
    are insert-only.
    """

    @with_db_retry(error_message="Failed to create message")
    def create_message(self, conn, message: MessageCreate) -> MessageRecord:
        """Insert a new message in QUEUED state.

        Args:
            message: Validated message fields.

        Returns:
            The stored record.
        """
        message_id = str(uuid.uuid4())

        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self._table("messages")} (
                    id, project_id, from_address, to_addresses, reply_to,
                    subject, html, text, template_id, variables, attachments,
                    headers, tags, idempotency_key, status
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    message_id,
                    message.project_id,
                    Json(message.from_address.model_dump(mode="json")),
                    Json([a.model_dump(mode="json") for a in message.to]),
                    Json(message.reply_to.model_dump(mode="json"))
                    if message.reply_to
                    else None,
                    message.subject,
                    message.html,
                    message.text,
                    message.template_id,
                    Json(message.variables) if message.variables is not None else None,
                    Json([a.model_dump(mode="json") for a in message.attachments]),
                    Json(message.headers),
                    sorted(message.tags),
                    message.idempotency_key,
                    MessageStatus.QUEUED.value,
                ),
            )
            row = cur.fetchone()
        conn.commit()

        logger.info(f"Message {message_id} created for project {message.project_id}")
        return _row_to_message(row)

    @with_db_retry(error_message="Failed to delete message")
    def delete_message(self, conn, message_id: str) -> bool:
        """Remove a message that never made it onto the queue; events cascade."""
        with conn.cursor() as cur:
            cur.execute(
                f"DELETE FROM {self._table('messages')} WHERE id = %s",
                (message_id,),
            )
            deleted = cur.rowcount
        conn.commit()

        if deleted:
            logger.warning(f"Message {message_id} deleted")
        return bool(deleted)

    @with_db_retry(error_message="Failed to fetch message")
    def get_message(
        self, conn, message_id: str, project_id: str | None = None
    ) -> MessageRecord | None:
        """Get a message by id, optionally restricted to one project."""
        with conn.cursor() as cur:
            if project_id is None:
                cur.execute(
                    f"SELECT * FROM {self._table('messages')} WHERE id = %s",
                    (message_id,),
                )
            else:
                cur.execute(
                    f"""
                    SELECT * FROM {self._table('messages')}
                    WHERE id = %s AND project_id = %s
                    """,
                    (message_id, project_id),
                )
            row = cur.fetchone()
        conn.commit()

        if not row:
            logger.debug(f"Message {message_id} not found")
            return None
        return _row_to_message(row)

    @with_db_retry(error_message="Failed to update message status")
    def update_status(
        self,
        conn,
        message_id: str,
        status: MessageStatus,
        *,
        error: str | None = None,
        external_id: str | None = None,
        sent_at: datetime | None = None,
        delivered_at: datetime | None = None,
    ) -> None:
        """Update a message's delivery status.

        Only the optional fields that are given are written.

        Raises:
            StoreError: If the message does not exist.
        """
        assignments = ["status = %s", "updated_at = now()"]
        params: list[Any] = [status.value]

        for column, value in (
            ("error", error),
            ("external_id", external_id),
            ("sent_at", sent_at),
            ("delivered_at", delivered_at),
        ):
            if value is not None:
                assignments.append(f"{column} = %s")
                params.append(value)

        params.append(message_id)

        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self._table('messages')}
                SET {', '.join(assignments)}
                WHERE id = %s
                """,
                params,
            )
            updated = cur.rowcount
        conn.commit()

        if not updated:
            raise StoreError(f"Message {message_id} not found", entity_id=message_id)
        logger.debug(f"Message {message_id} status updated to {status.value}")

    @with_db_retry(error_message="Failed to record event")
    def record_event(
        self, conn, message_id: str, event_type: EventType, data: dict[str, Any]
    ) -> EventRecord:
        """Append one event to a message's log."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self._table('events')} (message_id, type, data)
                VALUES (%s, %s, %s)
                RETURNING *
                """,
                (message_id, event_type.value, Json(data)),
            )
            row = cur.fetchone()
        conn.commit()

        logger.debug(f"Message {message_id} event {event_type.value} recorded")
        return EventRecord(**dict(row))

    @with_db_retry(error_message="Failed to fetch events")
    def get_events(self, conn, message_id: str) -> list[EventRecord]:
        """Return a message's events in creation order."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM {self._table('events')}
                WHERE message_id = %s
                ORDER BY created_at, id
                """,
                (message_id,),
            )
            rows = cur.fetchall()
        conn.commit()
        return [EventRecord(**dict(row)) for row in rows]
