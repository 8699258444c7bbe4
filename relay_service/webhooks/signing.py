"""Webhook payload serialization and HMAC signatures.

Subscribers receive the JSON body exactly as produced by
``canonical_payload`` and an ``X-Webhook-Signature`` header of the form
``t=<unix-ms>,v1=<hex hmac-sha256 of the body>``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import re
import time
from datetime import datetime, timezone
from typing import Any

_V1_PATTERN = re.compile(r"(?:^|,)\s*v1=([0-9a-fA-F]+)")
_T_PATTERN = re.compile(r"(?:^|,)\s*t=(\d+)")


def utc_timestamp(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def canonical_payload(payload: dict[str, Any]) -> str:
    """Serialize a payload to the compact JSON string that gets signed and sent."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def _to_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def compute_digest(payload: str | bytes, secret: str | bytes) -> str:
    return hmac.new(_to_bytes(secret), _to_bytes(payload), hashlib.sha256).hexdigest()


def sign_payload(
    payload: str | bytes, secret: str | bytes, timestamp_ms: int | None = None
) -> str:
    """Build the signature header value for a serialized payload.

    Example:
        >>> sign_payload('{"a":1}', "whsec_x", timestamp_ms=1700000000000)
        't=1700000000000,v1=...'
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"t={timestamp_ms},v1={compute_digest(payload, secret)}"


def verify_signature(
    payload: str | bytes,
    signature_header: str,
    secret: str | bytes,
    tolerance_ms: int | None = None,
    now_ms: int | None = None,
) -> bool:
    """Check a signature header against a payload.

    The digest comparison is constant time. With ``tolerance_ms`` set, the
    header's ``t`` value must also be within that distance of ``now_ms``.
    """
    match = _V1_PATTERN.search(signature_header or "")
    if not match:
        return False

    if tolerance_ms is not None:
        t_match = _T_PATTERN.search(signature_header)
        if not t_match:
            return False
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        if abs(now_ms - int(t_match.group(1))) > tolerance_ms:
            return False

    expected = compute_digest(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), match.group(1).lower().encode("ascii"))
