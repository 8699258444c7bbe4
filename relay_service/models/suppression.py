"""Suppression list models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class SuppressionReason(str, Enum):
    """Why a recipient is blocked for a project."""

    BOUNCE = "BOUNCE"
    COMPLAINT = "COMPLAINT"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    MANUAL = "MANUAL"


class SuppressionRecord(BaseModel):
    """A (project, email) pair that blocks every future send.

    Attributes:
        project_id: Owning project.
        email: Suppressed recipient, stored lowercase.
        reason: Why the address was suppressed.
        source: Component that created the row (e.g. ``bounce``).
        metadata: Merged details from every suppression event.
    """

    id: int
    project_id: str
    email: str
    reason: SuppressionReason
    source: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}
