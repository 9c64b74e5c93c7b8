"""IMAP client for fetching the most recent messages of a mailbox."""

import time
from dataclasses import dataclass, field
from typing import List, Optional

from mailengine.core.email.imap.connection import IMAPConnection
from mailengine.core.email.imap.constants import (
    DEFAULT_FETCH_WINDOW,
    FETCH_ITEMS,
    IMAPFolders,
    Tags,
)
from mailengine.core.email.imap.protocol import (
    TaggedResponse,
    fetch_responses,
    parse_exists,
    parse_search,
    quote,
)
from mailengine.core.email.parser import MessageParser, ParsedMessage
from mailengine.utils.config import TransportConfig
from mailengine.utils.errors import ParseError, ProtocolError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FetchResult:
    """Outcome of one fetch: parsed messages plus per-message failures."""

    messages: List[ParsedMessage] = field(default_factory=list)
    parse_errors: List[ParseError] = field(default_factory=list)
    mailbox_exists: Optional[int] = None
    search_count: int = 0


def select_window(ids: List[int], window: int) -> List[int]:
    """Pick the ``window`` highest message numbers, ascending."""
    ordered = sorted(set(ids))
    selected = ordered[-window:] if window > 0 else []

    if ordered and ordered[-1] - ordered[0] + 1 != len(ordered):
        logger.warning(
            "SEARCH returned non-contiguous message numbers",
            extra={"count": len(ordered), "first": ordered[0], "last": ordered[-1]},
        )

    return selected


class IMAPClient:
    """Runs Connect, Login, Select, Search, Fetch and Logout for one mailbox."""

    def __init__(
        self,
        host: str,
        port: int,
        use_tls: bool = True,
        transport_config: Optional[TransportConfig] = None,
        window: int = DEFAULT_FETCH_WINDOW,
        mailbox: str = IMAPFolders.INBOX,
        parser: Optional[MessageParser] = None,
    ):
        self.host = host
        self.port = port
        self.use_tls = use_tls
        self.transport_config = transport_config
        self.window = window
        self.mailbox = mailbox
        self.parser = parser or MessageParser()

    def _connection(self) -> IMAPConnection:
        return IMAPConnection(
            self.host,
            self.port,
            use_tls=self.use_tls,
            transport_config=self.transport_config,
        )

    async def fetch_recent(self, username: str, password: str) -> FetchResult:
        """Fetch and parse the most recent messages of the mailbox.

        Raises:
            MailConnectionError: On connect failure or bad greeting
            AuthenticationError: If LOGIN is rejected
            ProtocolError: If SELECT, SEARCH or FETCH is refused
        """
        start_time = time.time()
        result = FetchResult()

        async with self._connection() as conn:
            await conn.login(username, password)

            select = await conn.command(Tags.SELECT, f"SELECT {self._mailbox_arg()}")
            self._check(select, "SELECT")
            result.mailbox_exists = parse_exists(select.untagged)
            logger.info(
                f"Selected {self.mailbox}",
                extra={"server": self.host, "exists": result.mailbox_exists},
            )

            search = await conn.command(Tags.SEARCH, "SEARCH ALL")
            self._check(search, "SEARCH")
            ids = parse_search(search.untagged)
            result.search_count = len(ids)

            for message_id in select_window(ids, self.window):
                fetch = await conn.command(
                    Tags.fetch(message_id), f"FETCH {message_id} {FETCH_ITEMS}"
                )
                self._check(fetch, "FETCH")
                self._parse_into(result, message_id, fetch)

        logger.info(
            "IMAP fetch complete",
            extra={
                "server": self.host,
                "fetched": len(result.messages),
                "parse_errors": len(result.parse_errors),
                "duration_seconds": round(time.time() - start_time, 2),
            },
        )
        return result

    def _mailbox_arg(self) -> str:
        if self.mailbox.isalnum():
            return self.mailbox
        return quote(self.mailbox)

    def _parse_into(
        self, result: FetchResult, message_id: int, fetch: TaggedResponse
    ) -> None:
        responses = fetch_responses(fetch.untagged, message_id)
        if not responses:
            result.parse_errors.append(
                ParseError(
                    "FETCH returned no message data",
                    details={"sequence": message_id},
                )
            )
            return

        for raw in responses:
            try:
                result.messages.append(self.parser.parse_fetch(raw))
            except ParseError as e:
                e.details.setdefault("sequence", message_id)
                logger.warning(
                    f"Skipping unparsable message: {e.message}",
                    extra={"sequence": message_id},
                )
                result.parse_errors.append(e)

    def _check(self, response: TaggedResponse, stage: str) -> None:
        if not response.ok:
            raise ProtocolError(
                f"IMAP {stage} failed: {response.status} {response.text}".strip(),
                details={"server": self.host, "tag": response.tag},
                stage=stage,
            )
