"""Upstream SMTP configuration model.

Defines Pydantic model for the outbound SMTP server the relay hands
messages to.

Version: 1.0.0
"""

from pydantic import BaseModel, Field, model_validator


class SMTPConfig(BaseModel):
    """Upstream SMTP server configuration model.

    Attributes:
        host: SMTP server hostname.
        port: SMTP server port (1-65535).
        username: SMTP authentication username (empty disables AUTH).
        password: SMTP authentication password.
        use_tls: Whether to issue STARTTLS.
        timeout: Connection timeout in seconds.
    """

    host: str = Field(..., min_length=1, description="SMTP server hostname")
    port: int = Field(..., ge=1, le=65535, description="SMTP server port")
    username: str = Field(default="", description="SMTP authentication username")
    password: str = Field(default="", description="SMTP authentication password")
    use_tls: bool = Field(default=False, description="Use STARTTLS")
    timeout: int = Field(
        default=30, ge=5, le=300, description="Connection timeout (seconds)"
    )

    @model_validator(mode="after")
    def validate_credentials(self) -> "SMTPConfig":
        """Require a password whenever a username is configured.

        Raises:
            ValueError: If username is set and password is empty.
        """
        if self.username and not self.password.strip():
            raise ValueError("SMTP password cannot be empty when a username is set")
        return self

    @property
    def requires_auth(self) -> bool:
        return bool(self.username)
