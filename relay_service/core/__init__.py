"""Core module for the relay service.

Provides foundational utilities: exceptions and logging configuration.
"""

from relay_service.core.exceptions import (
    AuthenticationError,
    JobQueueError,
    PolicyError,
    RelayConfigError,
    RelayServiceError,
    RetryJob,
    StoreError,
    TemplateRenderError,
    TransportError,
    WebhookDeliveryError,
)
from relay_service.core.logger import (
    get_logger,
    get_logs_directory,
    log_context,
    setup_logging,
)

__all__ = [
    # Exceptions
    "RelayServiceError",
    "RelayConfigError",
    "StoreError",
    "JobQueueError",
    "TransportError",
    "TemplateRenderError",
    "PolicyError",
    "AuthenticationError",
    "WebhookDeliveryError",
    "RetryJob",
    # Logging
    "get_logger",
    "setup_logging",
    "get_logs_directory",
    "log_context",
]
