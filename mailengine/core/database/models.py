"""SQLAlchemy table definitions with proper types and constraints."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)

from mailengine.core.database.base import metadata


def utc_timestamp(value: Optional[datetime] = None) -> str:
    """Render a datetime as a sortable UTC ISO8601 string."""
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now() -> str:
    return utc_timestamp()


def _timestamps():
    return [
        Column("created_at", String(32), nullable=False, default=_now),
        Column(
            "updated_at",
            String(32),
            nullable=False,
            default=_now,
            onupdate=_now,
        ),
    ]


def _server_columns(prefix: str):
    return [
        Column(f"{prefix}_host", String(255), nullable=False),
        Column(f"{prefix}_port", Integer, nullable=False),
        Column(f"{prefix}_username", String(320), nullable=False),
        Column(f"{prefix}_password_encrypted", Text, nullable=False),
        Column(
            f"{prefix}_encryption",
            String(8),
            nullable=False,
            default="ssl",
            server_default="ssl",
        ),
        CheckConstraint(
            f"{prefix}_encryption IN ('ssl', 'tls', 'none')",
            name=f"{prefix}_encryption_values",
        ),
    ]


email_accounts = Table(
    "email_accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("email_address", String(320), nullable=False),
    Column("display_name", String(255), nullable=False, default="", server_default=""),
    *_server_columns("imap"),
    *_server_columns("smtp"),
    Column("sync_enabled", Boolean, nullable=False, default=True, server_default="1"),
    Column("last_synced_at", String(32), nullable=True),
    Column(
        "connection_status",
        String(16),
        nullable=False,
        default="unknown",
        server_default="unknown",
    ),
    Column("last_error", Text, nullable=True),
    Column("last_error_at", String(32), nullable=True),
    *_timestamps(),
    UniqueConstraint("user_id", "email_address", name="uq_email_accounts_user_address"),
)

email_threads = Table(
    "email_threads",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "account_id",
        String(36),
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("subject", String(1000), nullable=False, default="", server_default=""),
    Column("subject_key", String(1000), nullable=False),
    Column("participants", JSON, nullable=False, default=list),
    Column("last_message_at", String(32), nullable=True),
    Column("message_count", Integer, nullable=False, default=0, server_default="0"),
    Column("is_read", Boolean, nullable=False, default=False, server_default="0"),
    Column("is_starred", Boolean, nullable=False, default=False, server_default="0"),
    *_timestamps(),
    UniqueConstraint("account_id", "subject_key", name="uq_email_threads_account_key"),
    Index("ix_email_threads_last_message", "account_id", "last_message_at"),
)

email_messages = Table(
    "email_messages",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "thread_id",
        String(36),
        ForeignKey("email_threads.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column(
        "account_id",
        String(36),
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("external_id", String(998), nullable=False),
    Column("from_email", String(320), nullable=False, default="", server_default=""),
    Column("from_name", String(255), nullable=False, default="", server_default=""),
    Column("to_addresses", JSON, nullable=False, default=list),
    Column("cc_addresses", JSON, nullable=False, default=list),
    Column("bcc_addresses", JSON, nullable=False, default=list),
    Column("subject", String(1000), nullable=False, default="", server_default=""),
    Column("body_text", Text, nullable=True),
    Column("body_html", Text, nullable=True),
    Column("direction", String(8), nullable=False),
    Column("timestamp", String(32), nullable=False),
    Column("created_at", String(32), nullable=False, default=_now),
    UniqueConstraint(
        "account_id", "external_id", name="uq_email_messages_account_external"
    ),
    CheckConstraint("direction IN ('sent', 'received')", name="direction_values"),
    Index("ix_email_messages_timestamp", "account_id", "timestamp"),
)
