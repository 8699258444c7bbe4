"""Inbound SMTP relay for the relay service."""

from relay_service.smtp.relay import (
    RelayAuthenticator,
    RelayHandler,
    RelayState,
    SMTPRelayServer,
)

__all__ = ["RelayAuthenticator", "RelayHandler", "RelayState", "SMTPRelayServer"]
