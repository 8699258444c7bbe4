"""Inbound SMTP relay.

Lets applications submit mail over SMTP instead of the HTTP API. Clients
authenticate with AUTH PLAIN/LOGIN using the project id as username and an
API key with the ``send:email`` scope as password. Accepted messages go
through the same path as ``POST /v1/send``: a QUEUED message row, a QUEUED
event and a ``send-email`` job.

Version: 1.0.0
"""

from __future__ import annotations

import base64
from email import message_from_bytes, policy
from email.message import EmailMessage
from email.utils import getaddresses, parseaddr
from enum import Enum
from typing import Any

from aiosmtpd.controller import Controller
from aiosmtpd.smtp import SMTP, AuthResult, Envelope, LoginPassword, Session
from pydantic import ValidationError

from relay_service.config import RelayConfig
from relay_service.core.exceptions import AuthenticationError, PolicyError, RelayServiceError
from relay_service.core.logger import get_logger
from relay_service.models.message import Address, Attachment, MessageCreate, MessageRecord
from relay_service.services.auth import SCOPE_SEND_EMAIL, ApiKeyAuthenticator
from relay_service.services.send import SendService

logger = get_logger(__name__)

RELAY_TAG = "smtp-relay"
DEFAULT_SUBJECT = "(no subject)"


class RelayState(str, Enum):
    """Per-connection progress through one SMTP transaction."""

    CONNECTED = "CONNECTED"
    AUTHENTICATED = "AUTHENTICATED"
    MAIL_FROM_SET = "MAIL_FROM_SET"
    RCPT_ACCUMULATING = "RCPT_ACCUMULATING"
    DATA_RECEIVED = "DATA_RECEIVED"


def get_state(session: Session) -> RelayState:
    return getattr(session, "relay_state", RelayState.CONNECTED)


def set_state(session: Session, state: RelayState) -> None:
    session.relay_state = state


def _decode(value: bytes | str | None) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value or ""


class RelayAuthenticator:
    """aiosmtpd authenticator: username is the project id, password the API key.

    Every rejection looks the same to the client.
    """

    def __init__(self, auth: ApiKeyAuthenticator) -> None:
        self.auth = auth

    def __call__(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        mechanism: str,
        auth_data: Any,
    ) -> AuthResult:
        if not isinstance(auth_data, LoginPassword):
            return AuthResult(success=False, handled=False)

        project_id = _decode(auth_data.login)
        try:
            context = self.auth.authenticate_project(
                project_id, _decode(auth_data.password), SCOPE_SEND_EMAIL
            )
        except AuthenticationError:
            return AuthResult(success=False, handled=False)
        except RelayServiceError as e:
            logger.error(f"SMTP auth error for project {project_id}: {e}")
            return AuthResult(success=False, handled=False)

        set_state(session, RelayState.AUTHENTICATED)
        logger.info(f"SMTP client {session.peer} authenticated for project {context.project_id}")
        return AuthResult(success=True, auth_data=context.project_id)


class RelayHandler:
    """aiosmtpd handler turning SMTP transactions into queued messages."""

    def __init__(self, send_service: SendService) -> None:
        self.send_service = send_service

    async def handle_MAIL(
        self, server: SMTP, session: Session, envelope: Envelope, address: str, mail_options: list
    ) -> str:
        if not session.authenticated:
            return "530 5.7.0 Authentication required"
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        set_state(session, RelayState.MAIL_FROM_SET)
        return "250 OK"

    async def handle_RCPT(
        self, server: SMTP, session: Session, envelope: Envelope, address: str, rcpt_options: list
    ) -> str:
        if not session.authenticated:
            return "530 5.7.0 Authentication required"
        try:
            Address.coerce(address)
        except ValidationError:
            return f"553 5.1.3 Invalid recipient address: {address}"
        envelope.rcpt_tos.append(address)
        envelope.rcpt_options.extend(rcpt_options)
        set_state(session, RelayState.RCPT_ACCUMULATING)
        return "250 OK"

    async def handle_RSET(self, server: SMTP, session: Session, envelope: Envelope) -> str:
        if session.authenticated:
            set_state(session, RelayState.AUTHENTICATED)
        return "250 OK"

    async def handle_DATA(self, server: SMTP, session: Session, envelope: Envelope) -> str:
        project_id = session.auth_data if session.authenticated else None
        if not project_id:
            return "530 5.7.0 Authentication required"
        set_state(session, RelayState.DATA_RECEIVED)

        try:
            message = self.accept_message(
                project_id, envelope.mail_from, list(envelope.rcpt_tos), envelope.content
            )
        except PolicyError as e:
            logger.warning(f"SMTP relay rejected message for project {project_id}: {e.message}")
            return f"550 5.7.1 {e.message}"
        except (ValidationError, LookupError) as e:
            logger.warning(f"SMTP relay received an unusable message: {e}")
            return "550 5.6.0 Message could not be parsed"
        except RelayServiceError as e:
            logger.error(f"SMTP relay failed to queue message: {e}", exc_info=True)
            return "451 4.3.0 Failed to process message"
        finally:
            set_state(session, RelayState.AUTHENTICATED)

        return f"250 2.0.0 Ok: queued as {message.id}"

    def accept_message(
        self,
        project_id: str,
        mail_from: str,
        rcpt_tos: list[str],
        content: bytes | str,
    ) -> MessageRecord:
        """Persist and queue one relayed message.

        The envelope recipients are checked against the suppression list
        first; one suppressed recipient rejects the whole transaction.

        Raises:
            PolicyError: ``RECIPIENT_SUPPRESSED`` if any recipient is suppressed.
            pydantic.ValidationError: If the sender or a recipient is not a
                valid address.
            LookupError: If a body part declares an unknown charset.
        """
        suppressed = self.send_service.find_suppressed(project_id, rcpt_tos)
        if suppressed is not None:
            raise PolicyError(
                PolicyError.RECIPIENT_SUPPRESSED,
                f"Recipient {suppressed.email} is suppressed",
            )

        if isinstance(content, str):
            content = content.encode("utf-8")
        parsed: EmailMessage = message_from_bytes(content, policy=policy.default)

        message = self.send_service.submit(
            MessageCreate(
                project_id=project_id,
                from_address=self._sender(parsed, mail_from),
                to=[Address.coerce(rcpt) for rcpt in rcpt_tos],
                reply_to=self._reply_to(parsed),
                subject=str(parsed.get("Subject") or "").strip() or DEFAULT_SUBJECT,
                html=self._body(parsed, "html"),
                text=self._body(parsed, "plain"),
                attachments=self._attachments(parsed),
                tags={RELAY_TAG},
            ),
            event_data={"source": RELAY_TAG},
        )
        logger.info(
            f"SMTP relay queued message {message.id} from {mail_from} to {', '.join(rcpt_tos)}"
        )
        return message

    @staticmethod
    def _sender(parsed: EmailMessage, mail_from: str) -> Address:
        name, email = parseaddr(str(parsed.get("From") or ""))
        if not email:
            return Address.coerce(mail_from)
        return Address(email=email, name=name or None)

    @staticmethod
    def _reply_to(parsed: EmailMessage) -> Address | None:
        header = parsed.get("Reply-To")
        if not header:
            return None
        addresses = getaddresses([str(header)])
        if not addresses or not addresses[0][1]:
            return None
        name, email = addresses[0]
        return Address(email=email, name=name or None)

    @staticmethod
    def _body(parsed: EmailMessage, subtype: str) -> str | None:
        part = parsed.get_body(preferencelist=(subtype,))
        if part is None:
            return None
        return part.get_content()

    @staticmethod
    def _attachments(parsed: EmailMessage) -> list[Attachment]:
        attachments = []
        for part in parsed.iter_attachments():
            payload = part.get_payload(decode=True) or b""
            attachments.append(
                Attachment(
                    filename=part.get_filename() or "attachment",
                    content=base64.b64encode(payload).decode("ascii"),
                    content_type=part.get_content_type(),
                )
            )
        return attachments


class SMTPRelayServer:
    """Runs the relay in an aiosmtpd ``Controller`` thread."""

    def __init__(
        self,
        config: RelayConfig,
        send_service: SendService,
        authenticator: ApiKeyAuthenticator,
    ) -> None:
        self.config = config
        self.handler = RelayHandler(send_service)
        self.controller = Controller(
            self.handler,
            hostname=config.SMTP_RELAY_HOST,
            port=config.SMTP_RELAY_PORT,
            authenticator=RelayAuthenticator(authenticator),
            auth_required=True,
            auth_require_tls=False,
            data_size_limit=config.SMTP_RELAY_MAX_MESSAGE_SIZE,
        )

    def start(self) -> None:
        self.controller.start()
        logger.info(
            f"SMTP relay listening on {self.config.SMTP_RELAY_HOST}:{self.config.SMTP_RELAY_PORT}"
        )

    def stop(self) -> None:
        self.controller.stop()
        logger.info("SMTP relay stopped")
