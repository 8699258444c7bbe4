"""Database module for the relay service.

Contains the PostgreSQL connection pool, the durable job queue and the
stores for messages, suppressions, webhooks, projects and idempotency keys.
"""

from relay_service.database.connection import Database, Repository, with_db_retry
from relay_service.database.idempotency import IdempotencyStore
from relay_service.database.messages import MessageStore
from relay_service.database.projects import ProjectStore
from relay_service.database.queue import JobQueue, compute_backoff
from relay_service.database.suppressions import SuppressionStore
from relay_service.database.webhooks import WebhookStore

__all__ = [
    "Database",
    "Repository",
    "with_db_retry",
    "JobQueue",
    "compute_backoff",
    "MessageStore",
    "SuppressionStore",
    "WebhookStore",
    "ProjectStore",
    "IdempotencyStore",
]
