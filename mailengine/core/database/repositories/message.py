"""Message repository. Rows are insert-only."""

import uuid
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncConnection

from mailengine.core.database.models import (
    email_messages,
    parse_timestamp,
    utc_timestamp,
)
from mailengine.core.models.email import Direction, EmailMessage


class MessageRepository:
    """Messages are unique on ``(account_id, external_id)``."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def exists(self, account_id: str, external_id: str) -> bool:
        result = await self.conn.execute(
            select(email_messages.c.id).where(
                email_messages.c.account_id == account_id,
                email_messages.c.external_id == external_id,
            )
        )
        return result.first() is not None

    async def insert(self, message: EmailMessage) -> EmailMessage:
        if not message.id:
            message.id = str(uuid.uuid4())

        await self.conn.execute(
            email_messages.insert().values(
                id=message.id,
                thread_id=message.thread_id,
                account_id=message.account_id,
                external_id=message.external_id,
                from_email=message.from_email,
                from_name=message.from_name,
                to_addresses=message.to,
                cc_addresses=message.cc,
                bcc_addresses=message.bcc,
                subject=message.subject,
                body_text=message.body_text,
                body_html=message.body_html,
                direction=message.direction.value,
                timestamp=utc_timestamp(message.timestamp),
            )
        )
        return message

    async def get_by_external_id(
        self, account_id: str, external_id: str
    ) -> Optional[EmailMessage]:
        result = await self.conn.execute(
            select(email_messages).where(
                email_messages.c.account_id == account_id,
                email_messages.c.external_id == external_id,
            )
        )
        row = result.mappings().first()
        return row_to_message(row) if row is not None else None

    async def list_for_thread(self, thread_id: str) -> List[EmailMessage]:
        result = await self.conn.execute(
            select(email_messages)
            .where(email_messages.c.thread_id == thread_id)
            .order_by(email_messages.c.timestamp)
        )
        return [row_to_message(row) for row in result.mappings()]

    async def list_for_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> List[EmailMessage]:
        result = await self.conn.execute(
            select(email_messages)
            .where(email_messages.c.account_id == account_id)
            .order_by(email_messages.c.timestamp.desc())
            .limit(limit)
            .offset(offset)
        )
        return [row_to_message(row) for row in result.mappings()]

    async def count(self, account_id: str) -> int:
        result = await self.conn.execute(
            select(func.count())
            .select_from(email_messages)
            .where(email_messages.c.account_id == account_id)
        )
        return result.scalar_one()


def row_to_message(row: RowMapping) -> EmailMessage:
    return EmailMessage(
        id=row["id"],
        thread_id=row["thread_id"],
        account_id=row["account_id"],
        external_id=row["external_id"],
        from_email=row["from_email"],
        from_name=row["from_name"],
        to=list(row["to_addresses"] or []),
        cc=list(row["cc_addresses"] or []),
        bcc=list(row["bcc_addresses"] or []),
        subject=row["subject"],
        body_text=row["body_text"] or "",
        body_html=row["body_html"],
        direction=Direction(row["direction"]),
        timestamp=parse_timestamp(row["timestamp"]),
    )
