"""Email domain models"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from mailengine.utils.errors import ValidationError

EMAIL_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")


def is_valid_email(address: str) -> bool:
    return bool(address) and EMAIL_RE.fullmatch(address) is not None


def check_header_value(field_name: str, value: Optional[str]) -> None:
    """Reject values that would end a header line early.

    Raises:
        ValidationError: If the value contains CR or LF
    """
    if value and ("\r" in value or "\n" in value):
        raise ValidationError(
            f"{field_name} cannot contain line breaks", details={"field": field_name}
        )


class Direction(Enum):
    """Which way a stored message travelled."""

    SENT = "sent"
    RECEIVED = "received"


class EncryptionMode(Enum):
    """Transport security configured for a server."""

    SSL = "ssl"
    TLS = "tls"
    NONE = "none"

    @classmethod
    def from_string(cls, value: str) -> "EncryptionMode":
        """Create EncryptionMode from string.

        Raises:
            ValidationError: If the mode is not one of ssl, tls or none
        """
        try:
            return cls((value or "").lower())
        except ValueError:
            raise ValidationError(f"Invalid encryption mode: {value}")


class ConnectionStatus(Enum):
    """Result of the last sync attempt."""

    UNKNOWN = "unknown"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class ServerSettings:
    """Host, port and credentials for one protocol."""

    host: str
    port: int
    username: str
    encrypted_password: str
    encryption: EncryptionMode = EncryptionMode.SSL

    @property
    def use_tls(self) -> bool:
        return self.encryption != EncryptionMode.NONE


@dataclass
class EmailAccount:
    """A mailbox the engine syncs and sends from.

    Only encrypted passwords live on this object.
    """

    id: str
    user_id: str
    email_address: str
    imap: ServerSettings
    smtp: ServerSettings
    display_name: str = ""
    sync_enabled: bool = True
    last_synced_at: Optional[datetime] = None
    connection_status: ConnectionStatus = ConnectionStatus.UNKNOWN
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None


@dataclass
class EmailThread:
    """Messages grouped by account and normalized subject."""

    id: str
    account_id: str
    subject: str
    subject_key: str
    participants: List[Dict[str, str]] = field(default_factory=list)
    last_message_at: Optional[datetime] = None
    message_count: int = 0
    is_read: bool = False
    is_starred: bool = False


@dataclass
class EmailMessage:
    """A stored message. Never mutated after insert."""

    id: str
    thread_id: str
    account_id: str
    external_id: str
    from_email: str
    subject: str
    direction: Direction
    timestamp: datetime
    from_name: str = ""
    to: List[str] = field(default_factory=list)
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    body_text: str = ""
    body_html: Optional[str] = None


@dataclass
class OutgoingEmail:
    """A message to be sent through SMTP."""

    to: List[str]
    subject: str
    body: str
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    html: bool = False
    in_reply_to: Optional[str] = None
    references: List[str] = field(default_factory=list)

    @property
    def recipients(self) -> List[str]:
        return [*self.to, *self.cc, *self.bcc]

    def validate(self) -> None:
        """Check recipients and every value that ends up in a header.

        Raises:
            ValidationError: On a missing recipient, invalid address, empty
                subject or a line break in a header value
        """
        if not self.to:
            raise ValidationError("At least one recipient is required")

        invalid = [addr for addr in self.recipients if not is_valid_email(addr)]
        if invalid:
            raise ValidationError(
                "Invalid recipient address", details={"recipients": invalid}
            )

        if not self.subject or not self.subject.strip():
            raise ValidationError("Subject cannot be empty")

        check_header_value("Subject", self.subject)
        check_header_value("In-Reply-To", self.in_reply_to)
        for reference in self.references:
            check_header_value("References", reference)


@dataclass
class SendResult:
    """Outcome of a successful send."""

    message_id: str
    recipients: List[str]
    sent_at: datetime
    thread_id: Optional[str] = None
    stored: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message_id": self.message_id,
            "recipients": self.recipients,
            "sent_at": self.sent_at.isoformat(),
            "thread_id": self.thread_id,
            "stored": self.stored,
        }


@dataclass
class SyncSummary:
    """Counts from one sync run."""

    account_id: str
    message_count: int = 0
    new_count: int = 0
    duplicate_count: int = 0
    parse_errors: int = 0
    persist_errors: int = 0
    mailbox_exists: Optional[int] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "account_id": self.account_id,
            "message_count": self.message_count,
            "new_count": self.new_count,
            "duplicate_count": self.duplicate_count,
            "parse_errors": self.parse_errors,
            "persist_errors": self.persist_errors,
            "mailbox_exists": self.mailbox_exists,
            "errors": self.errors,
        }
