"""Parsing of IMAP FETCH responses into messages."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.parser import BytesHeaderParser
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any, Dict, List, Optional, Tuple

from mailengine.utils.errors import MailEngineError, ParseError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)

NO_SUBJECT = "(no subject)"

# Reply/forward markers in the languages our users write in
REPLY_PREFIX_RE = re.compile(
    r"^\s*(?:re|fwd?|aw|antw|sv|wg|tr)\s*(?:\[\d+\])?\s*:\s*", re.IGNORECASE
)
WHITESPACE_RE = re.compile(r"\s+")
HTML_HINT_RE = re.compile(rb"^\s*<(?:!doctype|html|body|div|p|table)\b", re.IGNORECASE)
FETCH_PREFIX_RE = re.compile(rb"^\* (\d+) FETCH\s+", re.IGNORECASE)


class Literal(bytes):
    """Payload of a ``{n}`` literal, kept distinct from atoms."""


class Quoted(bytes):
    """Content of a quoted string, unescaped."""


@dataclass
class ParsedMessage:
    """A received message reduced to the fields the store keeps."""

    sequence: int
    message_id: str
    from_email: str
    from_name: str
    subject: str
    received_at: datetime
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    body_text: str = ""
    body_html: Optional[str] = None
    date_fallback: bool = False

    @property
    def participant(self) -> Dict[str, str]:
        return {"email": self.from_email, "name": self.from_name}


def normalize_subject(subject: Optional[str]) -> str:
    """Reduce a subject to its thread key.

    Strips any run of reply/forward prefixes, collapses whitespace and
    case-folds. ``"Re: FWD:  Hello  World"`` and ``"hello world"`` share a key.
    """
    text = subject or ""
    while True:
        stripped = REPLY_PREFIX_RE.sub("", text, count=1)
        if stripped == text:
            break
        text = stripped
    return WHITESPACE_RE.sub(" ", text).strip().casefold()


## Tokenizer


class FetchTokenizer:
    """Tokenizes the parenthesised data of an IMAP response.

    Produces nested lists of atoms (bytes), :class:`Quoted` strings,
    :class:`Literal` payloads and ``None`` for NIL.
    """

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def parse(self) -> List[Any]:
        items = []
        while True:
            self._skip_spaces()
            if self.pos >= len(self.data):
                return items
            items.append(self._read_token())

    def _skip_spaces(self) -> None:
        while self.pos < len(self.data) and self.data[self.pos] in b" \r\n":
            self.pos += 1

    def _error(self, message: str) -> ParseError:
        return ParseError(message, details={"offset": self.pos})

    def _read_token(self) -> Any:
        char = self.data[self.pos : self.pos + 1]
        if char == b"(":
            return self._read_list()
        if char == b'"':
            return self._read_quoted()
        if char == b"{":
            return self._read_literal()
        if char == b")":
            raise self._error("Unbalanced ')' in FETCH response")
        return self._read_atom()

    def _read_list(self) -> List[Any]:
        self.pos += 1
        items = []
        while True:
            self._skip_spaces()
            if self.pos >= len(self.data):
                raise self._error("Unterminated list in FETCH response")
            if self.data[self.pos : self.pos + 1] == b")":
                self.pos += 1
                return items
            items.append(self._read_token())

    def _read_quoted(self) -> Quoted:
        self.pos += 1
        out = bytearray()
        while self.pos < len(self.data):
            char = self.data[self.pos]
            if char == 0x5C:  # backslash
                self.pos += 1
                if self.pos < len(self.data):
                    out.append(self.data[self.pos])
            elif char == 0x22:  # closing quote
                self.pos += 1
                return Quoted(bytes(out))
            else:
                out.append(char)
            self.pos += 1
        raise self._error("Unterminated quoted string in FETCH response")

    def _read_literal(self) -> Literal:
        end = self.data.find(b"}", self.pos)
        if end < 0:
            raise self._error("Unterminated literal length")
        try:
            size = int(self.data[self.pos + 1 : end])
        except ValueError as e:
            raise self._error("Invalid literal length") from e

        start = end + 1
        if self.data[start : start + 2] != b"\r\n":
            raise self._error("Literal length not followed by CRLF")
        start += 2

        payload = self.data[start : start + size]
        if len(payload) != size:
            raise self._error("Literal shorter than announced")
        self.pos = start + size
        return Literal(payload)

    def _read_atom(self) -> Optional[bytes]:
        start = self.pos
        depth = 0
        while self.pos < len(self.data):
            char = self.data[self.pos : self.pos + 1]
            if char == b"[":
                depth += 1
            elif char == b"]":
                depth -= 1
            elif depth == 0 and char in (b" ", b"(", b")", b"\r", b"\n"):
                # "BODY[...]" may be directly followed by "<origin>"
                break
            self.pos += 1

        atom = self.data[start : self.pos]
        if not atom:
            raise self._error("Empty atom in FETCH response")
        return None if atom.upper() == b"NIL" else atom


## Message Parser


class MessageParser:
    """Turns one ``* n FETCH (...)`` response into a :class:`ParsedMessage`."""

    def parse_fetch(self, raw: bytes) -> ParsedMessage:
        """Parse a FETCH response.

        Raises:
            ParseError: If the response is malformed or has no Message-ID
        """
        try:
            sequence, items = self._split_fetch(raw)
            return self._build(sequence, items)
        except MailEngineError:
            raise
        except (HeaderParseError, LookupError, ValueError, TypeError, IndexError) as e:
            raise ParseError(
                f"Failed to parse FETCH response: {e}",
                details={"preview": raw[:80].decode("utf-8", errors="replace")},
            ) from e

    def _split_fetch(self, raw: bytes) -> Tuple[int, Dict[str, Any]]:
        match = FETCH_PREFIX_RE.match(raw)
        if not match:
            raise ParseError("Not a FETCH response")
        sequence = int(match.group(1))

        tokens = FetchTokenizer(raw[match.end() :]).parse()
        if len(tokens) != 1 or not isinstance(tokens[0], list):
            raise ParseError(
                "FETCH data is not a single list", details={"sequence": sequence}
            )

        data = tokens[0]
        items: Dict[str, Any] = {}
        for index in range(0, len(data) - 1, 2):
            key = data[index]
            if not isinstance(key, bytes) or isinstance(key, (Quoted, Literal)):
                raise ParseError(
                    "FETCH item name is not an atom", details={"sequence": sequence}
                )
            items[key.decode("ascii", errors="replace").upper()] = data[index + 1]
        return sequence, items

    def _build(self, sequence: int, items: Dict[str, Any]) -> ParsedMessage:
        envelope = items.get("ENVELOPE")
        header_block = next(
            (value for key, value in items.items() if key.startswith("BODY[HEADER")),
            None,
        )
        body = next(
            (value for key, value in items.items() if key.startswith("BODY[TEXT]")),
            None,
        )

        headers = BytesHeaderParser().parsebytes(bytes(header_block or b""))
        env = _Envelope(envelope if isinstance(envelope, list) else [])

        message_id = (_decode(headers.get("Message-ID")) or env.message_id).strip()
        if not message_id:
            raise ParseError(
                "Message has no Message-ID and cannot be deduplicated",
                details={"sequence": sequence},
            )

        from_pairs = _addresses(headers.get_all("From")) or env.addresses(2)
        from_name, from_email = from_pairs[0] if from_pairs else ("", "")

        subject = _decode(headers.get("Subject")) or env.subject or NO_SUBJECT
        to = [addr for _, addr in _addresses(headers.get_all("To")) or env.addresses(5)]
        cc = [addr for _, addr in env.addresses(6)]

        received_at, fallback = _parse_date(
            _decode(headers.get("Date")) or env.date, sequence
        )

        body_bytes = bytes(body or b"")
        body_text = body_bytes.decode("utf-8", errors="replace")
        body_html = body_text if HTML_HINT_RE.match(body_bytes) else None

        return ParsedMessage(
            sequence=sequence,
            message_id=message_id,
            from_email=from_email,
            from_name=from_name,
            subject=WHITESPACE_RE.sub(" ", subject).strip(),
            received_at=received_at,
            to=to,
            cc=cc,
            body_text=body_text,
            body_html=body_html,
            date_fallback=fallback,
        )


class _Envelope:
    """Positional access to an ENVELOPE list.

    (date subject from sender reply-to to cc bcc in-reply-to message-id)
    """

    def __init__(self, fields: List[Any]):
        self.fields = fields

    def _text(self, index: int) -> str:
        if index >= len(self.fields) or not isinstance(self.fields[index], bytes):
            return ""
        return _decode(bytes(self.fields[index]).decode("utf-8", errors="replace"))

    @property
    def date(self) -> str:
        return self._text(0)

    @property
    def subject(self) -> str:
        return self._text(1)

    @property
    def message_id(self) -> str:
        return self._text(9)

    def addresses(self, index: int) -> List[Tuple[str, str]]:
        if index >= len(self.fields) or not isinstance(self.fields[index], list):
            return []

        pairs = []
        for entry in self.fields[index]:
            # (name adl mailbox host); a NIL host marks group syntax
            if not isinstance(entry, list) or len(entry) < 4 or entry[3] is None:
                continue
            name = bytes(entry[0]).decode("utf-8", errors="replace") if entry[0] else ""
            mailbox = bytes(entry[2] or b"").decode("utf-8", errors="replace")
            host = bytes(entry[3]).decode("utf-8", errors="replace")
            pairs.append((_decode(name), f"{mailbox}@{host}".lower()))
        return pairs


def _decode(value: Optional[str]) -> str:
    """Decode RFC 2047 encoded words, leaving plain text untouched."""
    if not value:
        return ""
    # Raw 8-bit header bytes arrive surrogate-escaped
    text = str(value).encode("utf-8", "surrogateescape").decode("utf-8", "replace")
    if "=?" not in text:
        return text.strip()
    try:
        return str(make_header(decode_header(text))).strip()
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        logger.debug("Could not decode encoded header, keeping raw value")
        return text.strip()


def _addresses(values: Optional[List[str]]) -> List[Tuple[str, str]]:
    if not values:
        return []
    pairs = []
    for name, addr in getaddresses([str(value) for value in values]):
        if addr:
            pairs.append((_decode(name), addr.strip().lower()))
    return pairs


def _parse_date(value: str, sequence: int) -> Tuple[datetime, bool]:
    """Parse a Date header; fall back to the current UTC time."""
    if value:
        try:
            parsed = parsedate_to_datetime(value)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            # Raises OverflowError when the UTC shift leaves the datetime range
            return parsed.astimezone(timezone.utc), False
        except (TypeError, ValueError, IndexError, OverflowError):
            pass

    logger.debug(
        "Unparsable or missing Date header, using current time",
        extra={"sequence": sequence},
    )
    return datetime.now(timezone.utc), True
