"""IMAP constants and configuration values."""


class IMAPResponse:
    """Standard IMAP response codes."""

    OK = "OK"
    NO = "NO"
    BAD = "BAD"
    PREAUTH = "PREAUTH"
    BYE = "BYE"


class Tags:
    """Fixed command tags, one per state transition."""

    LOGIN = "A001"
    SELECT = "A002"
    SEARCH = "A003"
    LOGOUT = "A999"

    FETCH_BASE = 1000

    @classmethod
    def fetch(cls, message_id: int) -> str:
        """Tag for FETCH of a sequence number (``A`` + 1000 + id)."""
        return f"A{cls.FETCH_BASE + message_id}"


class Timeouts:
    """Timeout values for IMAP operations (in seconds)."""

    IMAP_LOGOUT = 5.0  # LOGOUT is best-effort on teardown


class IMAPFolders:
    """Standard IMAP folder names."""

    INBOX = "INBOX"


# Envelope headers pulled for every message, plus the text body
HEADER_FIELDS = ("FROM", "TO", "SUBJECT", "DATE", "MESSAGE-ID")
FETCH_ITEMS = (
    f"(ENVELOPE BODY[HEADER.FIELDS ({' '.join(HEADER_FIELDS)})] BODY[TEXT])"
)

GREETING_PREFIX = "* OK"
DEFAULT_FETCH_WINDOW = 50
