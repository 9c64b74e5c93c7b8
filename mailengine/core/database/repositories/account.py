"""Account repository with SQLAlchemy Core queries."""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncConnection

from mailengine.core.database.models import (
    email_accounts,
    parse_timestamp,
    utc_timestamp,
)
from mailengine.core.models.email import (
    ConnectionStatus,
    EmailAccount,
    EncryptionMode,
    ServerSettings,
)
from mailengine.utils.errors import AccountNotFoundError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)


class AccountRepository:
    """Reads and writes email accounts on a caller-supplied connection."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def get(self, account_id: str) -> EmailAccount:
        """Load an account.

        Raises:
            AccountNotFoundError: If no account has this id
        """
        result = await self.conn.execute(
            select(email_accounts).where(email_accounts.c.id == account_id)
        )
        row = result.mappings().first()
        if row is None:
            raise AccountNotFoundError(
                f"Email account {account_id} not found",
                details={"account_id": account_id},
            )
        return row_to_account(row)

    async def find_by_address(
        self, user_id: str, email_address: str
    ) -> Optional[EmailAccount]:
        result = await self.conn.execute(
            select(email_accounts).where(
                email_accounts.c.user_id == user_id,
                email_accounts.c.email_address == email_address.lower(),
            )
        )
        row = result.mappings().first()
        return row_to_account(row) if row is not None else None

    async def list_for_user(self, user_id: str) -> List[EmailAccount]:
        result = await self.conn.execute(
            select(email_accounts)
            .where(email_accounts.c.user_id == user_id)
            .order_by(email_accounts.c.email_address)
        )
        return [row_to_account(row) for row in result.mappings()]

    async def list_all(self) -> List[EmailAccount]:
        result = await self.conn.execute(
            select(email_accounts).order_by(email_accounts.c.created_at)
        )
        return [row_to_account(row) for row in result.mappings()]

    async def save(self, account: EmailAccount) -> EmailAccount:
        """Insert a new account or update an existing one by id."""
        if not account.id:
            account.id = str(uuid.uuid4())

        values = account_to_row(account)
        existing = await self.conn.execute(
            select(email_accounts.c.id).where(email_accounts.c.id == account.id)
        )

        if existing.first() is None:
            await self.conn.execute(email_accounts.insert().values(**values))
            logger.debug(f"Created email account {account.id}")
        else:
            values.pop("id")
            await self.conn.execute(
                update(email_accounts)
                .where(email_accounts.c.id == account.id)
                .values(**values)
            )
            logger.debug(f"Updated email account {account.id}")

        return account

    async def mark_synced(self, account_id: str, at: datetime) -> None:
        await self.conn.execute(
            update(email_accounts)
            .where(email_accounts.c.id == account_id)
            .values(
                connection_status=ConnectionStatus.CONNECTED.value,
                last_synced_at=utc_timestamp(at),
                last_error=None,
                last_error_at=None,
            )
        )

    async def mark_failed(self, account_id: str, error: str, at: datetime) -> None:
        await self.conn.execute(
            update(email_accounts)
            .where(email_accounts.c.id == account_id)
            .values(
                connection_status=ConnectionStatus.ERROR.value,
                last_error=error[:1000],
                last_error_at=utc_timestamp(at),
            )
        )

    async def delete(self, account_id: str) -> bool:
        """Delete an account; threads and messages cascade."""
        result = await self.conn.execute(
            delete(email_accounts).where(email_accounts.c.id == account_id)
        )
        return result.rowcount > 0


def _server(row: RowMapping, prefix: str) -> ServerSettings:
    return ServerSettings(
        host=row[f"{prefix}_host"],
        port=row[f"{prefix}_port"],
        username=row[f"{prefix}_username"],
        encrypted_password=row[f"{prefix}_password_encrypted"],
        encryption=EncryptionMode(row[f"{prefix}_encryption"]),
    )


def row_to_account(row: RowMapping) -> EmailAccount:
    return EmailAccount(
        id=row["id"],
        user_id=row["user_id"],
        email_address=row["email_address"],
        display_name=row["display_name"] or "",
        imap=_server(row, "imap"),
        smtp=_server(row, "smtp"),
        sync_enabled=bool(row["sync_enabled"]),
        last_synced_at=parse_timestamp(row["last_synced_at"]),
        connection_status=ConnectionStatus(row["connection_status"]),
        last_error=row["last_error"],
        last_error_at=parse_timestamp(row["last_error_at"]),
    )


def account_to_row(account: EmailAccount) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "id": account.id,
        "user_id": account.user_id,
        "email_address": account.email_address.lower(),
        "display_name": account.display_name,
        "sync_enabled": account.sync_enabled,
        "connection_status": account.connection_status.value,
        "last_synced_at": (
            utc_timestamp(account.last_synced_at) if account.last_synced_at else None
        ),
        "last_error": account.last_error,
        "last_error_at": (
            utc_timestamp(account.last_error_at) if account.last_error_at else None
        ),
    }
    for prefix, server in (("imap", account.imap), ("smtp", account.smtp)):
        row[f"{prefix}_host"] = server.host
        row[f"{prefix}_port"] = server.port
        row[f"{prefix}_username"] = server.username
        row[f"{prefix}_password_encrypted"] = server.encrypted_password
        row[f"{prefix}_encryption"] = server.encryption.value
    return row
