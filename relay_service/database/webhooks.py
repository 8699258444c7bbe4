"""Webhook subscription and delivery store."""

from __future__ import annotations

from typing import Any

from psycopg2.extras import Json

from relay_service.core.exceptions import StoreError
from relay_service.core.logger import get_logger
from relay_service.database.connection import Repository, with_db_retry
from relay_service.models.webhook import (
    WebhookDeliveryRecord,
    WebhookEventType,
    WebhookSubscription,
)

logger = get_logger(__name__)


def _row_to_subscription(row: dict[str, Any]) -> WebhookSubscription:
    data = dict(row)
    data["events"] = set(data.pop("event_types", None) or [])
    return WebhookSubscription(**data)


class WebhookStore(Repository):
    """Reads subscriptions and records delivery attempts.

    Counters are incremented in SQL so concurrent deliveries to the same
    subscription never lose updates.
    """

    @with_db_retry(error_message="Failed to fetch webhook")
    def get_webhook(self, conn, webhook_id: str) -> WebhookSubscription | None:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT * FROM {self._table('webhooks')} WHERE id = %s",
                (webhook_id,),
            )
            row = cur.fetchone()
        conn.commit()
        return _row_to_subscription(row) if row else None

    @with_db_retry(error_message="Failed to find webhooks")
    def find_active_webhooks(
        self, conn, project_id: str, event_type: WebhookEventType
    ) -> list[WebhookSubscription]:
        """Active subscriptions of a project that listen to ``event_type``."""
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT * FROM {self._table('webhooks')}
                WHERE project_id = %s
                  AND active
                  AND %s = ANY(event_types)
                ORDER BY created_at, id
                """,
                (project_id, event_type.value),
            )
            rows = cur.fetchall()
        conn.commit()
        return [_row_to_subscription(row) for row in rows]

    @with_db_retry(error_message="Failed to record webhook delivery")
    def record_delivery(
        self,
        conn,
        webhook_id: str,
        event_type: WebhookEventType,
        payload: dict[str, Any],
        *,
        status_code: int | None = None,
        response_body: str | None = None,
        error: str | None = None,
    ) -> WebhookDeliveryRecord:
        """Append one delivery attempt.

        Exactly one of (``status_code`` with ``response_body``) or ``error``
        must be provided.

        Raises:
            StoreError: If both or neither outcome fields are given.
        """
        if (status_code is None) == (error is None):
            raise StoreError(
                "A webhook delivery records either a response or an error",
                entity_id=webhook_id,
            )
        if error is not None:
            response_body = None

        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {self._table('webhook_deliveries')}
                    (webhook_id, event_type, payload, status_code, response_body, error)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    webhook_id,
                    event_type.value,
                    Json(payload),
                    status_code,
                    response_body,
                    error,
                ),
            )
            row = cur.fetchone()
        conn.commit()
        return WebhookDeliveryRecord(**dict(row))

    @with_db_retry(error_message="Failed to update webhook counters")
    def increment_counter(self, conn, webhook_id: str, success: bool) -> None:
        """Atomically bump the success or fail counter and last-triggered time."""
        column = "success_count" if success else "fail_count"
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE {self._table('webhooks')}
                SET {column} = {column} + 1,
                    last_triggered_at = now()
                WHERE id = %s
                """,
                (webhook_id,),
            )
        conn.commit()
