"""Webhooks module for the relay service.

Signing, fan-out of lifecycle events to subscribers and HTTP delivery.
"""

from relay_service.webhooks.delivery import WebhookDeliveryProcessor
from relay_service.webhooks.dispatcher import WebhookDispatcher
from relay_service.webhooks.signing import (
    canonical_payload,
    sign_payload,
    utc_timestamp,
    verify_signature,
)

__all__ = [
    "WebhookDispatcher",
    "WebhookDeliveryProcessor",
    "canonical_payload",
    "sign_payload",
    "verify_signature",
    "utc_timestamp",
]
