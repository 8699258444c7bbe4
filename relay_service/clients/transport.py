"""Outbound transport contract, MIME assembly and the in-memory transport.

The delivery worker only talks to a ``Transport``; which one is used (a real
upstream SMTP server or the in-memory test transport) is a configuration
choice made by ``build_transport``.

Version: 1.0.0
"""

from __future__ import annotations

import threading
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, Field

from relay_service.core.exceptions import TransportError
from relay_service.core.logger import get_logger
from relay_service.models.message import Address, Attachment, MessageRecord

if TYPE_CHECKING:
    from relay_service.config.settings import RelayConfig

logger = get_logger(__name__)

# Headers derived from the message itself; caller headers never replace them.
_RESERVED_HEADERS = {"from", "to", "cc", "bcc", "subject", "reply-to", "message-id"}


class OutboundEmail(BaseModel):
    """Final content handed to a transport."""

    from_address: Address
    to: list[Address] = Field(..., min_length=1)
    reply_to: Address | None = None
    subject: str
    html: str | None = None
    text: str | None = None
    attachments: list[Attachment] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_record(cls, message: MessageRecord) -> OutboundEmail:
        return cls(
            from_address=message.from_address,
            to=message.to,
            reply_to=message.reply_to,
            subject=message.subject,
            html=message.html,
            text=message.text,
            attachments=message.attachments,
            headers=message.headers,
        )

    @property
    def envelope_from(self) -> str:
        return str(self.from_address.email)

    @property
    def envelope_to(self) -> list[str]:
        return [str(a.email) for a in self.to]


class TransportResult(BaseModel):
    """Outcome of a successful hand-off to the upstream."""

    provider_message_id: str
    raw_response: str


class Transport(Protocol):
    """Anything that can dispatch an ``OutboundEmail``."""

    def send(self, email: OutboundEmail) -> TransportResult: ...

    def verify(self) -> bool: ...

    def close(self) -> None: ...


def build_mime_message(email: OutboundEmail) -> MIMEMultipart:
    """Assemble the MIME message for an outbound email.

    Addresses are rendered in ``"Name" <email>`` form, text and HTML bodies
    become a multipart/alternative part, attachments are decoded from base64
    and caller headers are merged in (except the address/subject headers).

    Returns:
        The message, with a fresh ``Message-ID`` header.
    """
    body = MIMEMultipart("alternative")
    if email.text:
        body.attach(MIMEText(email.text, "plain", "utf-8"))
    if email.html:
        body.attach(MIMEText(email.html, "html", "utf-8"))

    if email.attachments:
        msg = MIMEMultipart("mixed")
        msg.attach(body)
        for attachment in email.attachments:
            maintype, _, subtype = (
                attachment.content_type or "application/octet-stream"
            ).partition("/")
            part = MIMEBase(maintype, subtype or "octet-stream")
            part.set_payload(attachment.decoded())
            encoders.encode_base64(part)
            part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
            msg.attach(part)
    else:
        msg = body

    domain = str(email.from_address.email).rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)
    msg["Date"] = formatdate(localtime=False)
    msg["From"] = email.from_address.formatted()
    msg["To"] = ", ".join(a.formatted() for a in email.to)
    msg["Subject"] = email.subject
    if email.reply_to:
        msg["Reply-To"] = email.reply_to.formatted()

    for name, value in email.headers.items():
        if name.lower() in _RESERVED_HEADERS:
            logger.debug(f"Ignoring caller header {name}")
            continue
        if name in msg:
            msg.replace_header(name, value)
        else:
            msg[name] = value

    return msg


class TestTransport:
    """In-memory transport for development and tests.

    Records every message it accepts. Failures can be scripted with
    ``fail_next`` to exercise the retry path.
    """

    __test__ = False  # not a pytest test class

    def __init__(self) -> None:
        self.sent: list[MIMEMultipart] = []
        self._failures: list[TransportError] = []
        self._lock = threading.Lock()

    def fail_next(self, message: str, times: int = 1, is_transient: bool = True) -> None:
        """Make the next ``times`` sends raise ``TransportError(message)``."""
        with self._lock:
            self._failures.extend(
                TransportError(message, is_transient=is_transient) for _ in range(times)
            )

    def send(self, email: OutboundEmail) -> TransportResult:
        with self._lock:
            if self._failures:
                raise self._failures.pop(0)
            msg = build_mime_message(email)
            self.sent.append(msg)

        logger.info(f"Test transport accepted {msg['Message-ID']} for {msg['To']}")
        return TransportResult(
            provider_message_id=msg["Message-ID"],
            raw_response=f"250 Accepted {len(email.to)} recipient(s)",
        )

    def verify(self) -> bool:
        return True

    def close(self) -> None:
        pass


def build_transport(config: RelayConfig) -> Transport:
    """Select the outbound transport configured by ``TRANSPORT_MODE``."""
    if config.TRANSPORT_MODE == "test":
        logger.info("Using in-memory test transport")
        return TestTransport()

    from relay_service.clients.smtp import SMTPTransport
    from relay_service.models.smtp_config import SMTPConfig

    config.validate_transport_config()
    return SMTPTransport(SMTPConfig(**config.get_smtp_config()))
