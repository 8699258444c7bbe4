"""Custom exceptions for the relay service.

Defines specific exception types for the different failure classes of the
relay (configuration, persistence, queueing, outbound transport, policy
rejections, authentication and webhook delivery) so callers can handle each
one precisely.

Version: 1.0.0
"""

from __future__ import annotations


class RelayServiceError(Exception):
    """Base exception for all relay service errors.

    Example:
        try:
            send_service.send(project_id, request)
        except RelayServiceError as e:
            logger.error(f"Relay error: {e}")
    """

    pass


class RelayConfigError(RelayServiceError):
    """Exception raised for invalid or missing configuration.

    Example:
        raise RelayConfigError("SMTP_OUT_PASSWORD set without SMTP_OUT_USER")
    """

    pass


class StoreError(RelayServiceError):
    """Exception raised when a persistence operation fails.

    Attributes:
        message (str): Description of the database error.
        entity_id (str, optional): ID of the affected row.
    """

    def __init__(self, message: str, entity_id: str | int | None = None):
        """Initialize store error.

        Args:
            message: Error description.
            entity_id: Optional ID of the affected row.
        """
        super().__init__(message)
        self.entity_id = entity_id


class JobQueueError(StoreError):
    """Exception raised for durable job queue operations."""

    pass


class TransportError(RelayServiceError):
    """Exception raised when the outbound transport fails to dispatch.

    Attributes:
        message (str): Description of the transport error.
        is_transient (bool): Whether the error is temporary (retry recommended).

    Example:
        raise TransportError(
            "Connection timeout to smtp.example.com:587",
            is_transient=True,
        )
    """

    def __init__(self, message: str, is_transient: bool = False):
        """Initialize transport error.

        Args:
            message: Error description.
            is_transient: Whether error is temporary and retryable.
        """
        super().__init__(message)
        self.is_transient = is_transient


class TemplateRenderError(RelayServiceError):
    """Exception raised for template rendering failures.

    Attributes:
        message (str): Description of the template error.
        template_name (str, optional): Name or ID of the template that failed.
    """

    def __init__(self, message: str, template_name: str | None = None):
        """Initialize template render error.

        Args:
            message: Error description.
            template_name: Optional name of the template that failed.
        """
        super().__init__(message)
        self.template_name = template_name


class PolicyError(RelayServiceError):
    """Exception raised when a send request is rejected by policy.

    Policy errors are surfaced synchronously to the caller and guarantee
    that no message was created or queued.

    Attributes:
        code (str): Machine readable rejection code.
        message (str): Human readable description.
    """

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    RECIPIENT_SUPPRESSED = "RECIPIENT_SUPPRESSED"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    MISSING_CONTENT = "MISSING_CONTENT"
    PROJECT_INACTIVE = "PROJECT_INACTIVE"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"

    def __init__(self, code: str, message: str):
        """Initialize policy error.

        Args:
            code: Rejection code (one of the class constants).
            message: Error description.
        """
        super().__init__(message)
        self.code = code
        self.message = message


class AuthenticationError(RelayServiceError):
    """Exception raised when credentials cannot be verified.

    The message is deliberately generic: it never says which part of the
    credentials was wrong.
    """

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class WebhookDeliveryError(RelayServiceError):
    """Exception raised when a webhook endpoint does not accept a delivery.

    Attributes:
        message (str): Description of the failure.
        status_code (int, optional): HTTP status returned by the endpoint.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RetryJob(RelayServiceError):
    """Signal from a processor that the current lease should be retried.

    Raised by a processor that has already recorded the retry in its own
    bookkeeping; the worker runtime turns it into ``JobQueue.fail`` with the
    given delay.

    Attributes:
        error (str): Error text of the failed attempt.
        delay (float | None): Seconds until the next attempt (None lets the
            queue compute it).
    """

    def __init__(self, error: str, delay: float | None = None):
        super().__init__(error)
        self.error = error
        self.delay = delay
