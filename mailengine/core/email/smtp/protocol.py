"""SMTP protocol operations - low-level command/reply interface."""

import base64
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from mailengine.core.email.transport import LineSocketTransport
from mailengine.utils.errors import AuthenticationError, ProtocolError
from mailengine.utils.logging import get_logger

from .constants import SMTPResponse, Stages

logger = get_logger(__name__)


@dataclass
class SMTPReply:
    """A complete (possibly multi-line) SMTP reply."""

    code: int
    lines: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(line for line in self.lines if line)

    def __str__(self) -> str:
        return f"{self.code} {self.text}".strip()


def dot_stuff(payload: bytes) -> bytes:
    """Normalise line endings to CRLF and escape lines starting with '.'."""
    lines = payload.replace(b"\r\n", b"\n").replace(b"\r", b"\n").split(b"\n")
    return b"\r\n".join(b"." + line if line.startswith(b".") else line for line in lines)


class SMTPProtocol:
    """One method per SMTP state transition, each checking the reply code."""

    def __init__(self, transport: LineSocketTransport):
        self.transport = transport
        self.extensions: List[str] = []

    async def read_reply(self) -> SMTPReply:
        """Read reply lines until the final ``NNN <text>`` line."""
        lines: List[str] = []
        while True:
            raw = (await self.transport.read_line()).decode("utf-8", errors="replace")
            logger.debug(f"S: {raw}")

            if len(raw) < 3 or not raw[:3].isdigit():
                raise ProtocolError(
                    "Malformed SMTP reply", details={"reply": raw[:100]}
                )

            lines.append(raw[4:])
            if raw[3:4] != "-":
                return SMTPReply(code=int(raw[:3]), lines=lines)

    def expect(self, reply: SMTPReply, code: int, stage: str) -> SMTPReply:
        if reply.code != code:
            raise ProtocolError(
                f"SMTP {stage} failed: expected {code}, got {reply}",
                details={"code": reply.code, "reply": reply.text[:200]},
                stage=stage,
            )
        return reply

    async def command(
        self, line: str, code: int, stage: str, redacted: Optional[str] = None
    ) -> SMTPReply:
        await self.transport.send(line, redacted=redacted)
        return self.expect(await self.read_reply(), code, stage)

    async def greeting(self) -> SMTPReply:
        return self.expect(
            await self.read_reply(), SMTPResponse.SERVICE_READY, Stages.GREETING
        )

    async def ehlo(self, hostname: str) -> SMTPReply:
        reply = await self.command(f"EHLO {hostname}", SMTPResponse.OK, Stages.EHLO)
        self.extensions = [line.split(" ")[0].upper() for line in reply.lines[1:]]
        return reply

    async def starttls(self, server_hostname: str) -> None:
        """Request STARTTLS and upgrade the socket in place.

        EHLO must be sent again by the caller afterwards.
        """
        await self.command("STARTTLS", SMTPResponse.SERVICE_READY, Stages.STARTTLS)
        await self.transport.start_tls(server_hostname)
        self.extensions = []

    async def auth_login(self, username: str, password: str) -> None:
        """Authenticate with AUTH LOGIN.

        Raises:
            ProtocolError: If the server refuses AUTH LOGIN or the username
            AuthenticationError: If the password is rejected
        """
        await self.command("AUTH LOGIN", SMTPResponse.AUTH_CONTINUE, Stages.AUTH)
        await self.command(
            _b64(username),
            SMTPResponse.AUTH_CONTINUE,
            Stages.AUTH_USER,
            redacted="[username]",
        )

        await self.transport.send(_b64(password), redacted="[REDACTED]")
        reply = await self.read_reply()
        if reply.code != SMTPResponse.AUTH_SUCCESS:
            raise AuthenticationError(
                "SMTP authentication failed",
                details={
                    "stage": Stages.AUTH_PASS,
                    "code": reply.code,
                    "reply": reply.text[:200],
                },
            )

    async def mail_from(self, sender: str) -> SMTPReply:
        return await self.command(
            f"MAIL FROM:<{sender}>", SMTPResponse.OK, Stages.MAIL_FROM
        )

    async def rcpt_to(self, recipients: Iterable[str]) -> None:
        """Send RCPT TO per recipient; the first rejection aborts."""
        for recipient in recipients:
            await self.transport.send(f"RCPT TO:<{recipient}>")
            reply = await self.read_reply()
            if reply.code != SMTPResponse.OK:
                raise ProtocolError(
                    f"SMTP server rejected recipient {recipient}: {reply}",
                    details={
                        "recipient": recipient,
                        "code": reply.code,
                        "reply": reply.text[:200],
                    },
                    stage=Stages.RCPT_TO,
                )

    async def data(self, payload: bytes) -> SMTPReply:
        """Send DATA, the dot-stuffed payload and the terminator."""
        await self.command("DATA", SMTPResponse.START_MAIL, Stages.DATA)

        body = dot_stuff(payload)
        if not body.endswith(b"\r\n"):
            body += b"\r\n"
        logger.debug(f"C: <message, {len(body)} bytes>")
        await self.transport.send_raw(body + b".\r\n")

        return self.expect(await self.read_reply(), SMTPResponse.OK, Stages.MESSAGE)

    async def quit(self) -> None:
        await self.transport.send("QUIT")
        reply = await self.read_reply()
        if reply.code != SMTPResponse.CLOSING:
            logger.debug(f"Unexpected QUIT reply: {reply}")


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")
