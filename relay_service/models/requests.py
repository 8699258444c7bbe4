"""Send request models.

Defines the request model accepted by ``POST /v1/send``.

Version: 1.0.0
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from relay_service.models.message import Address, Attachment


class Priority(str, Enum):
    """Caller priority mapped onto queue priorities (lower runs first)."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def queue_priority(self) -> int:
        return {"high": 1, "normal": 5, "low": 10}[self.value]


class SendEmailRequest(BaseModel):
    """Request model for sending one email.

    Validates the send parameters and normalizes recipients into a list of
    ``Address`` objects.

    Attributes:
        to: Recipient address string, address object, or list of either.
        from_address: Sender (JSON field ``from``).
        reply_to: Optional reply-to address.
        subject: Subject line (1-998 characters); may be omitted when a
            template supplies it.
        text: Plain-text body.
        html: HTML body.
        template_id: Stored template to render instead of inline bodies.
        variables: Values substituted into ``{{key}}`` placeholders.
        attachments: Base64 encoded attachments.
        tags: Up to 10 labels of at most 50 characters.
        headers: Extra MIME headers.
        priority: high, normal or low.
        idempotency_key: Replay token, unique per project for 24 hours.

    Validation:
        - Subject must not be whitespace-only.
        - Either a subject or a template must be provided.
    """

    to: list[Address] = Field(..., min_length=1, max_length=50)
    from_address: Address = Field(..., alias="from")
    reply_to: Address | None = Field(default=None, alias="replyTo")
    subject: str | None = Field(default=None, min_length=1, max_length=998)
    text: str | None = None
    html: str | None = None
    template_id: str | None = Field(default=None, alias="templateId")
    variables: dict[str, Any] | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list, max_length=10)
    headers: dict[str, str] = Field(default_factory=dict)
    priority: Priority = Priority.NORMAL
    idempotency_key: str | None = Field(
        default=None, max_length=255, alias="idempotencyKey"
    )

    model_config = {"populate_by_name": True}

    @field_validator("to", mode="before")
    @classmethod
    def normalize_recipients(cls, v: Any) -> Any:
        """Accept a bare address or address object as a one-element list.

        Bare address strings, alone or in a list, become ``{"email": ...}``.
        """
        if isinstance(v, (str, dict, Address)):
            v = [v]
        if isinstance(v, list):
            return [{"email": item} if isinstance(item, str) else item for item in v]
        return v

    @field_validator("to", mode="after")
    @classmethod
    def dedupe_recipients(cls, v: list[Address]) -> list[Address]:
        seen: set[str] = set()
        unique = []
        for address in v:
            key = str(address.email).lower()
            if key not in seen:
                seen.add(key)
                unique.append(address)
        return unique

    @field_validator("from_address", "reply_to", mode="before")
    @classmethod
    def coerce_address(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"email": v}
        return v

    @field_validator("subject")
    @classmethod
    def validate_subject(cls, v: str | None) -> str | None:
        """Validate subject is not whitespace-only.

        Raises:
            ValueError: If subject is only whitespace.
        """
        if v is not None and not v.strip():
            raise ValueError("Subject cannot be empty or whitespace")
        return v.strip() if v is not None else v

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        for tag in v:
            if len(tag) > 50:
                raise ValueError(f"Tag longer than 50 characters: {tag[:20]}...")
        return v

    @field_validator("headers")
    @classmethod
    def validate_headers(cls, v: dict[str, str]) -> dict[str, str]:
        for name, value in v.items():
            if "\r" in name or "\n" in name or "\r" in value or "\n" in value:
                raise ValueError(f"Header {name!r} contains a line break")
        return v

    @model_validator(mode="after")
    def validate_subject_or_template(self) -> "SendEmailRequest":
        if self.subject is None and self.template_id is None:
            raise ValueError("Either subject or templateId must be provided")
        return self

    @property
    def recipient_emails(self) -> list[str]:
        return [str(a.email) for a in self.to]
