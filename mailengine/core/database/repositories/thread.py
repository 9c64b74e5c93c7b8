"""Thread repository: lookup by subject key, creation and bumping."""

import uuid
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncConnection

from mailengine.core.database.models import (
    email_threads,
    parse_timestamp,
    utc_timestamp,
)
from mailengine.core.models.email import EmailThread


class ThreadRepository:
    """Threads are keyed by ``(account_id, subject_key)``."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def find_by_key(
        self, account_id: str, subject_key: str
    ) -> Optional[EmailThread]:
        result = await self.conn.execute(
            select(email_threads).where(
                email_threads.c.account_id == account_id,
                email_threads.c.subject_key == subject_key,
            )
        )
        row = result.mappings().first()
        return row_to_thread(row) if row is not None else None

    async def get(self, thread_id: str) -> Optional[EmailThread]:
        result = await self.conn.execute(
            select(email_threads).where(email_threads.c.id == thread_id)
        )
        row = result.mappings().first()
        return row_to_thread(row) if row is not None else None

    async def create(
        self,
        account_id: str,
        subject: str,
        subject_key: str,
        participant: Dict[str, str],
        message_at: datetime,
    ) -> EmailThread:
        """Create a thread holding its first message."""
        thread = EmailThread(
            id=str(uuid.uuid4()),
            account_id=account_id,
            subject=subject,
            subject_key=subject_key,
            participants=[participant],
            last_message_at=message_at,
            message_count=1,
        )
        await self.conn.execute(
            email_threads.insert().values(
                id=thread.id,
                account_id=account_id,
                subject=subject,
                subject_key=subject_key,
                participants=thread.participants,
                last_message_at=utc_timestamp(message_at),
                message_count=1,
            )
        )
        return thread

    async def bump(
        self, thread: EmailThread, participant: Dict[str, str], message_at: datetime
    ) -> EmailThread:
        """Record one more message: append participant, count, latest time."""
        participants = [*thread.participants, participant]
        latest = message_at
        if thread.last_message_at is not None and thread.last_message_at > message_at:
            latest = thread.last_message_at

        await self.conn.execute(
            update(email_threads)
            .where(email_threads.c.id == thread.id)
            .values(
                participants=participants,
                message_count=email_threads.c.message_count + 1,
                last_message_at=utc_timestamp(latest),
            )
        )

        thread.participants = participants
        thread.message_count += 1
        thread.last_message_at = latest
        return thread

    async def list_for_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> List[EmailThread]:
        result = await self.conn.execute(
            select(email_threads)
            .where(email_threads.c.account_id == account_id)
            .order_by(email_threads.c.last_message_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return [row_to_thread(row) for row in result.mappings()]


def row_to_thread(row: RowMapping) -> EmailThread:
    return EmailThread(
        id=row["id"],
        account_id=row["account_id"],
        subject=row["subject"],
        subject_key=row["subject_key"],
        participants=list(row["participants"] or []),
        last_message_at=parse_timestamp(row["last_message_at"]),
        message_count=row["message_count"],
        is_read=bool(row["is_read"]),
        is_starred=bool(row["is_starred"]),
    )
