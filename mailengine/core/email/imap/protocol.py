"""IMAP protocol operations - low-level tagged command interface."""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from mailengine.core.email.imap.constants import IMAPResponse
from mailengine.core.email.transport import LineSocketTransport
from mailengine.utils.errors import ProtocolError, ValidationError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)

LITERAL_RE = re.compile(rb"\{(\d+)\}$")
EXISTS_RE = re.compile(rb"^\* (\d+) EXISTS", re.IGNORECASE)
FETCH_RE = re.compile(rb"^\* (\d+) FETCH ", re.IGNORECASE)
MESSAGE_DATA_RE = re.compile(rb"\b(?:ENVELOPE|BODY\[)", re.IGNORECASE)


@dataclass
class TaggedResponse:
    """Everything the server sent for one tagged command.

    Untagged responses are kept in wire form: a literal announced with
    ``{n}`` is followed by CRLF and its n raw bytes, exactly as received, so
    the FETCH tokenizer can cut it by length.
    """

    tag: str
    status: str
    text: str
    untagged: List[bytes] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == IMAPResponse.OK


def quote(value: str) -> str:
    """Render a string as an IMAP quoted string."""
    if "\r" in value or "\n" in value:
        raise ValidationError("IMAP quoted strings cannot contain line breaks")
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_search(untagged: List[bytes]) -> List[int]:
    """Collect message numbers from ``* SEARCH`` responses."""
    ids: List[int] = []
    for line in untagged:
        if not line.upper().startswith(b"* SEARCH"):
            continue
        for token in line[len(b"* SEARCH") :].split():
            if token.isdigit():
                ids.append(int(token))
    return ids


def parse_exists(untagged: List[bytes]) -> Optional[int]:
    """Return the EXISTS count reported by SELECT, if any."""
    for line in untagged:
        match = EXISTS_RE.match(line)
        if match:
            return int(match.group(1))
    return None


def fetch_responses(
    untagged: List[bytes], sequence: Optional[int] = None
) -> List[bytes]:
    """Return the ``* n FETCH`` responses that carry message data.

    Unsolicited FLAGS-only updates (such as the \\Seen change a non-PEEK
    BODY fetch triggers) and, when ``sequence`` is given, responses for
    other messages are left out.
    """
    responses = []
    for line in untagged:
        match = FETCH_RE.match(line)
        if not match or not MESSAGE_DATA_RE.search(line):
            continue
        if sequence is not None and int(match.group(1)) != sequence:
            continue
        responses.append(line)
    return responses


class IMAPProtocol:
    """Sends tagged commands and collects the responses up to the tag."""

    def __init__(self, transport: LineSocketTransport):
        self.transport = transport

    async def command(
        self, tag: str, command: str, redacted: Optional[str] = None
    ) -> TaggedResponse:
        """Send ``<tag> <command>`` and read until the tagged completion.

        Args:
            tag: Command tag
            command: Command text
            redacted: Command text to log instead (for LOGIN)
        """
        await self.transport.send(
            f"{tag} {command}",
            redacted=f"{tag} {redacted}" if redacted is not None else None,
        )
        return await self.read_response(tag)

    async def read_response(self, tag: str) -> TaggedResponse:
        """Read untagged responses (with literals) until ``tag`` completes."""
        untagged: List[bytes] = []
        prefix = tag.encode("ascii") + b" "

        while True:
            line = await self._read_logical_line()
            logger.debug(f"S: {_preview(line)}")

            if line.startswith(prefix):
                status, _, text = line[len(prefix) :].partition(b" ")
                return TaggedResponse(
                    tag=tag,
                    status=status.decode("ascii", errors="replace").upper(),
                    text=text.decode("utf-8", errors="replace"),
                    untagged=untagged,
                )

            if line.startswith(b"* "):
                untagged.append(line)
            elif line.startswith(b"+"):
                raise ProtocolError(
                    "Server requested a continuation that was not expected",
                    stage=tag,
                )
            else:
                logger.warning(
                    "Ignoring unexpected IMAP response line",
                    extra={"expected_tag": tag, "preview": _preview(line)},
                )

    async def _read_logical_line(self) -> bytes:
        """Read one response line, pulling in any literals it announces."""
        tail = await self.transport.read_line()
        parts = [tail]

        while True:
            match = LITERAL_RE.search(tail)
            if not match:
                break
            literal = await self.transport.read_exactly(int(match.group(1)))
            tail = await self.transport.read_line()
            parts.append(b"\r\n" + literal + tail)

        return b"".join(parts)


def _preview(line: bytes, limit: int = 120) -> str:
    text = line.decode("utf-8", errors="replace")
    return text if len(text) <= limit else text[:limit] + "..."
