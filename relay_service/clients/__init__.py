"""Clients module for the relay service.

Contains the outbound transports: upstream SMTP and the in-memory test
transport.
"""

from relay_service.clients.smtp import SMTPTransport, describe_smtp_error
from relay_service.clients.transport import (
    OutboundEmail,
    TestTransport,
    Transport,
    TransportResult,
    build_mime_message,
    build_transport,
)

__all__ = [
    "Transport",
    "TransportResult",
    "OutboundEmail",
    "SMTPTransport",
    "TestTransport",
    "build_transport",
    "build_mime_message",
    "describe_smtp_error",
]
