"""SMTP client - submits one message per session."""

import asyncio
import ssl
import time
import uuid
from datetime import datetime, timezone
from email.header import Header
from email.utils import format_datetime, formataddr
from typing import List, Optional, Tuple

from mailengine.core.email.transport import LineSocketTransport
from mailengine.core.models.email import OutgoingEmail, SendResult, check_header_value
from mailengine.utils.config import TransportConfig
from mailengine.utils.errors import MailEngineError
from mailengine.utils.logging import async_log_call, get_logger

from .constants import SMTPPorts, Timeouts
from .protocol import SMTPProtocol

logger = get_logger(__name__)


def make_message_id(smtp_host: str) -> str:
    return f"<{uuid.uuid4()}@{smtp_host}>"


def _encode_header(value: str) -> str:
    """RFC 2047-encode a header value only when it is not plain ASCII."""
    try:
        value.encode("ascii")
        return value
    except UnicodeEncodeError:
        return Header(value, "utf-8").encode()


def build_message(
    email: OutgoingEmail,
    from_address: str,
    message_id: str,
    from_name: str = "",
    sent_at: Optional[datetime] = None,
) -> bytes:
    """Render headers and body of an outgoing message.

    Bcc recipients are never written to the headers.

    Raises:
        ValidationError: If the sender name contains a line break
    """
    check_header_value("From", from_name)
    sent_at = sent_at or datetime.now(timezone.utc)
    content_type = "text/html" if email.html else "text/plain"

    headers: List[Tuple[str, str]] = [
        ("From", formataddr((from_name, from_address)) if from_name else from_address),
        ("To", ", ".join(email.to)),
    ]
    if email.cc:
        headers.append(("Cc", ", ".join(email.cc)))
    headers += [
        ("Subject", _encode_header(email.subject)),
        ("Date", format_datetime(sent_at)),
        ("Message-ID", message_id),
    ]
    if email.in_reply_to:
        headers.append(("In-Reply-To", email.in_reply_to))
    if email.references:
        headers.append(("References", " ".join(email.references)))
    headers += [
        ("MIME-Version", "1.0"),
        ("Content-Type", f"{content_type}; charset=UTF-8"),
        ("Content-Transfer-Encoding", "8bit"),
    ]

    head = "\r\n".join(f"{name}: {value}" for name, value in headers)
    return f"{head}\r\n\r\n{email.body}".encode("utf-8")


class SMTPClient:
    """High-level SMTP operations over a hand-written protocol session."""

    def __init__(
        self,
        host: str,
        port: int,
        encryption: str = "tls",
        transport_config: Optional[TransportConfig] = None,
        ehlo_hostname: str = "localhost",
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.host = host
        self.port = port
        self.encryption = encryption
        self.transport_config = transport_config
        self.ehlo_hostname = ehlo_hostname
        self.ssl_context = ssl_context

    @property
    def use_starttls(self) -> bool:
        return SMTPPorts.requires_starttls(self.port, self.encryption)

    @property
    def use_implicit_tls(self) -> bool:
        return SMTPPorts.is_implicit_ssl(self.port, self.encryption)

    def make_transport(self) -> LineSocketTransport:
        return LineSocketTransport(
            self.host,
            self.port,
            use_tls=self.use_implicit_tls,
            config=self.transport_config,
            ssl_context=self.ssl_context,
        )

    async def open_session(
        self, transport: LineSocketTransport, username: str, password: str
    ) -> SMTPProtocol:
        """Greeting, EHLO, optional STARTTLS + EHLO, then AUTH LOGIN."""
        protocol = SMTPProtocol(transport)
        await transport.open()
        await protocol.greeting()
        await protocol.ehlo(self.ehlo_hostname)

        if self.use_starttls:
            await protocol.starttls(self.host)
            await protocol.ehlo(self.ehlo_hostname)

        await protocol.auth_login(username, password)
        return protocol

    @async_log_call
    async def send(
        self,
        username: str,
        password: str,
        email: OutgoingEmail,
        from_address: str,
        from_name: str = "",
    ) -> SendResult:
        """Send one message.

        Raises:
            MailConnectionError: If the server cannot be reached
            AuthenticationError: If the password is rejected
            ProtocolError: If any other stage gets an unexpected reply
        """
        start_time = time.time()
        sent_at = datetime.now(timezone.utc)
        message_id = make_message_id(self.host)
        payload = build_message(email, from_address, message_id, from_name, sent_at)

        transport = self.make_transport()
        try:
            protocol = await self.open_session(transport, username, password)
            await protocol.mail_from(from_address)
            await protocol.rcpt_to(email.recipients)
            await protocol.data(payload)
            await self.quit_quietly(protocol)
        finally:
            await transport.close()

        logger.info(
            "Email sent",
            extra={
                "server": self.host,
                "recipient_count": len(email.recipients),
                "duration_seconds": round(time.time() - start_time, 2),
            },
        )
        return SendResult(
            message_id=message_id, recipients=email.recipients, sent_at=sent_at
        )

    async def quit_quietly(self, protocol: SMTPProtocol) -> None:
        # The message is already accepted at this point
        try:
            await asyncio.wait_for(protocol.quit(), timeout=Timeouts.SMTP_QUIT)
        except (MailEngineError, asyncio.TimeoutError) as e:
            logger.debug(f"SMTP QUIT failed after send: {e}")
