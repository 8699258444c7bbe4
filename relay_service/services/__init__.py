"""Services module for the relay service.

Authentication, rate limiting and the send path shared by the HTTP API and
the SMTP relay.
"""

from relay_service.services.auth import (
    SCOPE_LOGS_READ,
    SCOPE_SEND_EMAIL,
    ApiKeyAuthenticator,
    AuthContext,
    generate_api_key,
    generate_webhook_secret,
    hash_api_key,
    verify_api_key,
)
from relay_service.services.rate_limiter import RateLimiter, RateLimitInfo, TokenBucket
from relay_service.services.send import SendService, idempotency_scope

__all__ = [
    "ApiKeyAuthenticator",
    "AuthContext",
    "SCOPE_SEND_EMAIL",
    "SCOPE_LOGS_READ",
    "generate_api_key",
    "generate_webhook_secret",
    "hash_api_key",
    "verify_api_key",
    "RateLimiter",
    "RateLimitInfo",
    "TokenBucket",
    "SendService",
    "idempotency_scope",
]
