"""IMAP connection management - handles connection setup and cleanup."""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional

from mailengine.utils.config import TransportConfig
from mailengine.utils.errors import (
    AuthenticationError,
    MailConnectionError,
    MailEngineError,
)
from mailengine.utils.logging import async_log_call, get_logger

from ..transport import LineSocketTransport
from .constants import GREETING_PREFIX, Tags, Timeouts
from .protocol import IMAPProtocol, TaggedResponse, quote

logger = get_logger(__name__)


@dataclass
class ConnectionStats:
    """Tracks IMAP connection metrics."""

    commands_sent: int = 0
    connected_at: Optional[float] = None
    total_command_time: float = 0.0

    def record_command(self, duration: float) -> None:
        self.commands_sent += 1
        self.total_command_time += duration


class IMAPConnection:
    """Manages one IMAP session: greeting, login and guaranteed teardown.

    Used as an async context manager; the socket is closed on every exit
    path, and LOGOUT is attempted only once the session is logged in.
    """

    def __init__(
        self,
        host: str,
        port: int,
        use_tls: bool = True,
        transport_config: Optional[TransportConfig] = None,
    ):
        self.host = host
        self.port = port
        self.transport = LineSocketTransport(
            host, port, use_tls=use_tls, config=transport_config
        )
        self.protocol = IMAPProtocol(self.transport)
        self.logged_in = False
        self._stats = ConnectionStats()

    @async_log_call
    async def connect(self) -> None:
        """Open the socket and validate the server greeting.

        Raises:
            MailConnectionError: If the connection fails or the greeting
                does not start with ``* OK``
        """
        await self.transport.open()
        self._stats.connected_at = time.time()

        greeting = (await self.transport.read_line()).decode("utf-8", errors="replace")
        logger.debug(f"S: {greeting}")

        if not greeting.startswith(GREETING_PREFIX):
            raise MailConnectionError(
                "Invalid IMAP greeting",
                details={"server": self.host, "greeting": greeting[:100]},
            )

    async def login(self, username: str, password: str) -> None:
        """Authenticate with LOGIN. No retry on rejection.

        Raises:
            AuthenticationError: If the server does not answer OK
        """
        response = await self.command(
            Tags.LOGIN,
            f"LOGIN {quote(username)} {quote(password)}",
            redacted=f"LOGIN {quote(username)} [REDACTED]",
        )

        if not response.ok:
            raise AuthenticationError(
                "IMAP authentication failed",
                details={
                    "server": self.host,
                    "username": username,
                    "response": f"{response.status} {response.text}".strip(),
                },
            )

        self.logged_in = True
        logger.info(f"Logged in to IMAP server {self.host}")

    async def command(
        self, tag: str, command: str, redacted: Optional[str] = None
    ) -> TaggedResponse:
        start_time = time.time()
        response = await self.protocol.command(tag, command, redacted=redacted)
        self._stats.record_command(time.time() - start_time)
        return response

    async def logout(self) -> None:
        """Send LOGOUT; failures are logged, never raised."""
        if not self.logged_in or not self.transport.is_open:
            return

        try:
            await asyncio.wait_for(
                self.protocol.command(Tags.LOGOUT, "LOGOUT"),
                timeout=Timeouts.IMAP_LOGOUT,
            )
        except (MailEngineError, asyncio.TimeoutError) as e:
            logger.debug(f"IMAP logout failed: {e}")
        finally:
            self.logged_in = False

    async def close(self) -> None:
        """Log out if possible, then close the socket."""
        try:
            await self.logout()
        finally:
            await self.transport.close()
            logger.debug(
                "IMAP session closed",
                extra={
                    "server": self.host,
                    "commands": self._stats.commands_sent,
                    "command_seconds": round(self._stats.total_command_time, 3),
                },
            )

    async def __aenter__(self) -> "IMAPConnection":
        try:
            await self.connect()
        except BaseException:
            await self.transport.close()
            raise
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
