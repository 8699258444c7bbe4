"""SMTP transport for outbound delivery.

Hands finished messages to an upstream SMTP server (MailHog in development,
a provider relay in production). Features connection reuse for better
performance.

Features:
- Connection reuse with NOOP validation and automatic refresh
- Optional STARTTLS and AUTH
- Per-recipient refusal reporting with the server's reply text
- Transient error detection

Version: 2.1.0
"""

from __future__ import annotations

import smtplib
import threading
import time

from relay_service.clients.transport import (
    OutboundEmail,
    TransportResult,
    build_mime_message,
)
from relay_service.core.exceptions import TransportError
from relay_service.core.logger import get_logger
from relay_service.models.smtp_config import SMTPConfig

logger = get_logger(__name__)


def _reply_text(message: bytes | str) -> str:
    if isinstance(message, bytes):
        return message.decode("utf-8", errors="replace")
    return message


def describe_smtp_error(error: Exception) -> str:
    """Render an smtplib error as one readable line including server replies.

    Example:
        SMTPRecipientsRefused({"a@x.com": (550, b"5.1.1 User unknown")})
        -> "Recipient rejected: a@x.com: 550 5.1.1 User unknown"
    """
    if isinstance(error, smtplib.SMTPRecipientsRefused):
        parts = [
            f"{rcpt}: {code} {_reply_text(msg)}"
            for rcpt, (code, msg) in error.recipients.items()
        ]
        return "Recipient rejected: " + "; ".join(parts)
    if isinstance(error, smtplib.SMTPResponseException):
        return f"{error.smtp_code} {_reply_text(error.smtp_error)}"
    return str(error) or error.__class__.__name__


class SMTPTransport:
    """SMTP delivery transport with connection reuse.

    Reuses one connection across sends and refreshes it when it has been
    idle too long or stops answering NOOP.

    Attributes:
        config: Upstream SMTP configuration.
    """

    # Connection timeout in seconds (refresh after this time)
    CONNECTION_TIMEOUT = 60

    def __init__(self, smtp_config: SMTPConfig) -> None:
        self.config = smtp_config

        # Connection state
        self._connection: smtplib.SMTP | None = None
        self._last_used: float = 0
        self._lock = threading.Lock()

        logger.info(f"SMTP transport initialized: {self.config.host}:{self.config.port}")

    def _get_connection(self) -> smtplib.SMTP:
        """Get or create SMTP connection with automatic refresh.

        Must be called with ``self._lock`` held.

        Raises:
            TransportError: If connection cannot be established.
        """
        now = time.time()

        if self._connection and (now - self._last_used) < self.CONNECTION_TIMEOUT:
            try:
                status = self._connection.noop()[0]
                if status == 250:
                    self._last_used = now
                    return self._connection
            except (smtplib.SMTPException, OSError):
                logger.debug("Stale SMTP connection detected, reconnecting...")
            self._close_connection()
        elif self._connection:
            self._close_connection()

        return self._create_connection()

    def _create_connection(self) -> smtplib.SMTP:
        """Create new SMTP connection.

        Raises:
            TransportError: If connection fails.
        """
        try:
            logger.debug(f"Connecting to SMTP: {self.config.host}:{self.config.port}")
            smtp = smtplib.SMTP(
                self.config.host,
                self.config.port,
                timeout=self.config.timeout,
            )

            if self.config.use_tls:
                logger.debug("Starting TLS...")
                smtp.starttls()

            if self.config.requires_auth:
                logger.debug("Authenticating...")
                smtp.login(self.config.username, self.config.password)

            self._connection = smtp
            self._last_used = time.time()

            logger.debug("SMTP connection established")
            return smtp

        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Failed to establish SMTP connection: {e}")
            raise TransportError(
                f"Failed to connect to SMTP server: {describe_smtp_error(e)}",
                is_transient=self._is_transient_error(e),
            ) from e

    def _close_connection(self) -> None:
        """Close existing SMTP connection safely."""
        if self._connection:
            try:
                self._connection.quit()
            except (smtplib.SMTPException, OSError) as e:
                logger.debug(f"Error closing SMTP connection (non-critical): {e}")
            finally:
                self._connection = None
                self._last_used = 0

    def send(self, email: OutboundEmail) -> TransportResult:
        """Send one message to all its recipients.

        Recipients refused by the upstream make the whole send fail with the
        upstream's reply text, so hard bounces stay classifiable.

        Raises:
            TransportError: If the upstream does not accept the message.
        """
        msg = build_mime_message(email)
        refused = self._send_message(msg, email.envelope_from, email.envelope_to)

        accepted = len(email.envelope_to) - len(refused)
        response = f"250 Accepted {accepted} recipient(s)"
        if refused:
            response += "; refused " + ", ".join(
                f"{rcpt} ({code})" for rcpt, (code, _) in refused.items()
            )

        logger.info(f"Email {msg['Message-ID']} sent - Subject: {email.subject[:50]}...")
        return TransportResult(provider_message_id=msg["Message-ID"], raw_response=response)

    def _send_message(self, msg, from_addr: str, to_addrs: list[str]) -> dict:
        """Send message via SMTP connection with retry on stale connection.

        Returns:
            Recipients the server refused while accepting the others.
        """
        max_retries = 2

        for attempt in range(max_retries):
            with self._lock:
                smtp = self._get_connection()
                try:
                    refused = smtp.send_message(msg, from_addr=from_addr, to_addrs=to_addrs)
                    self._last_used = time.time()
                    return refused
                except smtplib.SMTPRecipientsRefused as e:
                    # Connection is fine; the upstream rejected every recipient.
                    self._reset(smtp)
                    codes = [code for code, _ in e.recipients.values()]
                    raise TransportError(
                        describe_smtp_error(e),
                        is_transient=all(400 <= code < 500 for code in codes),
                    ) from e
                except (smtplib.SMTPSenderRefused, smtplib.SMTPDataError) as e:
                    self._reset(smtp)
                    raise TransportError(
                        describe_smtp_error(e),
                        is_transient=400 <= e.smtp_code < 500,
                    ) from e
                except (smtplib.SMTPException, OSError) as e:
                    logger.warning(
                        f"SMTP send failed (attempt {attempt + 1}/{max_retries}): {e}"
                    )
                    self._close_connection()
                    if attempt == max_retries - 1:
                        raise TransportError(
                            f"Failed to send email after {max_retries} attempts: "
                            f"{describe_smtp_error(e)}",
                            is_transient=True,
                        ) from e

        return {}

    def _reset(self, smtp: smtplib.SMTP) -> None:
        """RSET after a rejected transaction; drop the connection if that fails."""
        try:
            smtp.rset()
        except (smtplib.SMTPException, OSError):
            self._close_connection()

    def verify(self) -> bool:
        """Test SMTP connection and authentication.

        Returns:
            True if connection successful, False otherwise.
        """
        try:
            logger.info("Testing SMTP connection...")
            with self._lock:
                self._get_connection()
            logger.info("SMTP connection test successful")
            return True
        except TransportError as e:
            logger.error(f"SMTP connection test failed: {e}")
            return False

    def close(self) -> None:
        """Close SMTP connection and cleanup resources."""
        with self._lock:
            self._close_connection()
            logger.debug("SMTP transport closed")

    @staticmethod
    def _is_transient_error(error: Exception) -> bool:
        """Determine if error is temporary (retryable)."""
        if isinstance(error, smtplib.SMTPResponseException):
            return 400 <= error.smtp_code < 500
        error_str = str(error).lower()
        transient_keywords = [
            "timeout",
            "timed out",
            "connection",
            "temporarily",
            "try again",
            "unavailable",
            "refused",
            "reset",
            "broken pipe",
        ]
        return any(keyword in error_str for keyword in transient_keywords)

    def __enter__(self) -> SMTPTransport:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
