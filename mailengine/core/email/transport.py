"""Line-oriented socket transport shared by the IMAP and SMTP clients.

Bytes are pulled from the socket in fixed-size reads and accumulated in a
local buffer; frames are cut from that buffer by terminator (CRLF) or by an
explicit byte count (IMAP literals), so frame boundaries never depend on how
the peer's bytes happen to be split across reads. Every read is bounded by a
deadline.
"""

import asyncio
import ssl
import time
from typing import Optional

from mailengine.utils.config import TransportConfig
from mailengine.utils.errors import MailConnectionError, NetworkTimeoutError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)

CRLF = b"\r\n"


class LineSocketTransport:
    """A bidirectional byte stream with "send command, read frame" semantics."""

    def __init__(
        self,
        host: str,
        port: int,
        use_tls: bool = False,
        config: Optional[TransportConfig] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.config = config or TransportConfig()
        self._ssl_context = ssl_context
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._buffer = bytearray()
        self.bytes_received = 0
        self.bytes_sent = 0

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    def _get_ssl_context(self) -> ssl.SSLContext:
        if self._ssl_context is None:
            self._ssl_context = ssl.create_default_context()
        return self._ssl_context

    async def open(self) -> None:
        """Open the TCP (or implicit TLS) connection.

        Raises:
            NetworkTimeoutError: If the connect deadline expires
            MailConnectionError: If the connection cannot be established
        """
        start_time = time.time()
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(
                    self.host,
                    self.port,
                    ssl=self._get_ssl_context() if self.use_tls else None,
                    server_hostname=self.host if self.use_tls else None,
                ),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(
                f"Connection to {self.host}:{self.port} timed out",
                details={"server": self.host, "port": self.port},
            ) from e
        except (OSError, ssl.SSLError) as e:
            raise MailConnectionError(
                f"Failed to connect to {self.host}:{self.port}: {e}",
                details={"server": self.host, "port": self.port},
            ) from e

        logger.debug(
            f"Connected to {self.host}:{self.port}",
            extra={
                "server": self.host,
                "tls": self.use_tls,
                "duration_seconds": round(time.time() - start_time, 3),
            },
        )

    async def start_tls(self, server_hostname: Optional[str] = None) -> None:
        """Upgrade the open connection to TLS in place (STARTTLS)."""
        writer = self._require_writer()
        if self._buffer:
            # Plaintext bytes after the 220 would be a command injection vector
            raise MailConnectionError(
                "Unexpected data received before TLS handshake",
                details={"server": self.host, "buffered": len(self._buffer)},
            )

        try:
            await asyncio.wait_for(
                writer.start_tls(
                    self._get_ssl_context(),
                    server_hostname=server_hostname or self.host,
                ),
                timeout=self.config.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(
                "TLS handshake timed out", details={"server": self.host}
            ) from e
        except (OSError, ssl.SSLError) as e:
            raise MailConnectionError(
                f"TLS handshake failed: {e}", details={"server": self.host}
            ) from e

        self.use_tls = True
        logger.debug(f"Connection to {self.host} upgraded to TLS")

    ## Writing

    async def send(self, command: str, redacted: Optional[str] = None) -> None:
        """Write a command followed by CRLF.

        Args:
            command: Command line without terminator
            redacted: What to log instead of the command (for credentials)
        """
        logger.debug(f"C: {redacted if redacted is not None else command}")
        await self.send_raw(command.encode("utf-8") + CRLF)

    async def send_raw(self, data: bytes) -> None:
        """Write raw bytes and flush them to the socket."""
        writer = self._require_writer()
        try:
            writer.write(data)
            await asyncio.wait_for(writer.drain(), timeout=self.config.read_timeout)
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(
                "Timed out writing to server", details={"server": self.host}
            ) from e
        except OSError as e:
            raise MailConnectionError(
                f"Connection lost while writing: {e}", details={"server": self.host}
            ) from e
        self.bytes_sent += len(data)

    ## Reading

    async def _fill(self) -> None:
        """Perform one bounded read into the local buffer."""
        reader = self._require_reader()
        try:
            chunk = await asyncio.wait_for(
                reader.read(self.config.buffer_size),
                timeout=self.config.read_timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(
                f"No response from {self.host} within {self.config.read_timeout}s",
                details={"server": self.host},
            ) from e
        except OSError as e:
            raise MailConnectionError(
                f"Connection lost while reading: {e}", details={"server": self.host}
            ) from e

        if not chunk:
            raise MailConnectionError(
                "Connection closed by server", details={"server": self.host}
            )

        self.bytes_received += len(chunk)
        self._buffer.extend(chunk)

        if len(self._buffer) > self.config.max_response_bytes:
            raise MailConnectionError(
                "Response exceeds maximum size",
                details={
                    "server": self.host,
                    "limit": self.config.max_response_bytes,
                },
            )

    async def read_line(self) -> bytes:
        """Return the next line without its CRLF terminator."""
        while True:
            index = self._buffer.find(CRLF)
            if index >= 0:
                line = bytes(self._buffer[:index])
                del self._buffer[: index + len(CRLF)]
                return line
            await self._fill()

    async def read_exactly(self, count: int) -> bytes:
        """Return exactly ``count`` bytes (for length-prefixed literals)."""
        while len(self._buffer) < count:
            await self._fill()
        data = bytes(self._buffer[:count])
        del self._buffer[:count]
        return data

    ## Teardown

    async def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        writer = self._writer
        self._writer = None
        self._reader = None
        self._buffer.clear()

        if writer is None:
            return

        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=5.0)
        except (OSError, ssl.SSLError, asyncio.TimeoutError) as e:
            logger.debug(f"Error while closing connection to {self.host}: {e}")

        logger.debug(
            f"Connection to {self.host} closed",
            extra={"bytes_sent": self.bytes_sent, "bytes_received": self.bytes_received},
        )

    def _require_writer(self) -> asyncio.StreamWriter:
        if self._writer is None:
            raise MailConnectionError("Not connected", details={"server": self.host})
        return self._writer

    def _require_reader(self) -> asyncio.StreamReader:
        if self._reader is None:
            raise MailConnectionError("Not connected", details={"server": self.host})
        return self._reader

    async def __aenter__(self) -> "LineSocketTransport":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
