"""Project, API key and template records.

These rows are managed by administrative tooling; the relay only reads them
(and bumps ``last_used_at`` on API keys).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ProjectStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    DELETED = "DELETED"


class ProjectRecord(BaseModel):
    """Sending project with its lifecycle status and quotas."""

    id: str
    name: str
    status: ProjectStatus = ProjectStatus.ACTIVE
    daily_quota: int | None = None
    monthly_quota: int | None = None
    created_at: datetime | None = None

    model_config = {"from_attributes": True}

    @property
    def is_active(self) -> bool:
        return self.status == ProjectStatus.ACTIVE


class ApiKeyRecord(BaseModel):
    """Hashed API key with its scopes.

    Attributes:
        key_hash: bcrypt hash of the plaintext key.
        key_prefix: First characters of the key, for display.
        scopes: Granted scopes such as ``send:email`` or ``logs:read``.
        revoked_at: Set once the key is revoked.
    """

    id: str
    project_id: str
    name: str | None = None
    key_hash: str
    key_prefix: str | None = None
    scopes: list[str] = Field(default_factory=list)
    revoked_at: datetime | None = None
    last_used_at: datetime | None = None

    model_config = {"from_attributes": True}

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes


class TemplateRecord(BaseModel):
    """Stored email template with ``{{key}}`` placeholders."""

    id: str
    project_id: str
    name: str
    subject: str
    html: str | None = None
    text: str | None = None

    model_config = {"from_attributes": True}
