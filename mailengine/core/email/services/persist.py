"""Idempotent persistence of messages into threads."""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from mailengine.core.database.engine_manager import EngineManager
from mailengine.core.database.repositories import MessageRepository, ThreadRepository
from mailengine.core.database.transaction import TransactionManager
from mailengine.core.email.parser import ParsedMessage, normalize_subject
from mailengine.core.models.email import (
    Direction,
    EmailMessage,
    OutgoingEmail,
    SendResult,
)
from mailengine.utils.errors import DatabaseError, PersistError
from mailengine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PersistOutcome:
    stored: bool
    thread_id: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return not self.stored


class ThreadPersister:
    """Writes one message per transaction, grouping by normalized subject.

    A message whose ``(account_id, external_id)`` already exists is a no-op,
    which makes re-running a sync safe.
    """

    def __init__(self, engine_manager: EngineManager):
        self.engine_manager = engine_manager

    async def persist_received(
        self, account_id: str, parsed: ParsedMessage
    ) -> PersistOutcome:
        message = EmailMessage(
            id="",
            thread_id="",
            account_id=account_id,
            external_id=parsed.message_id,
            from_email=parsed.from_email,
            from_name=parsed.from_name,
            to=parsed.to,
            cc=parsed.cc,
            subject=parsed.subject,
            body_text=parsed.body_text,
            body_html=parsed.body_html,
            direction=Direction.RECEIVED,
            timestamp=parsed.received_at,
        )
        return await self.persist(message, parsed.participant)

    async def persist_sent(
        self,
        account_id: str,
        email: OutgoingEmail,
        result: SendResult,
        from_address: str,
        from_name: str = "",
    ) -> PersistOutcome:
        message = EmailMessage(
            id="",
            thread_id="",
            account_id=account_id,
            external_id=result.message_id,
            from_email=from_address,
            from_name=from_name,
            to=list(email.to),
            cc=list(email.cc),
            bcc=list(email.bcc),
            subject=email.subject,
            body_text="" if email.html else email.body,
            body_html=email.body if email.html else None,
            direction=Direction.SENT,
            timestamp=result.sent_at,
        )
        return await self.persist(message, {"email": from_address, "name": from_name})

    async def persist(
        self, message: EmailMessage, participant: Dict[str, str]
    ) -> PersistOutcome:
        """Store a message and upsert its thread in a single transaction.

        Raises:
            PersistError: If the write fails (soft, per message)
        """
        try:
            engine = await self.engine_manager.get_engine()
            async with TransactionManager(engine) as tx:
                messages = MessageRepository(tx.connection)
                if await messages.exists(message.account_id, message.external_id):
                    logger.debug(
                        "Message already stored",
                        extra={"account_id": message.account_id},
                    )
                    return PersistOutcome(stored=False)

                thread_id = await self._upsert_thread(
                    ThreadRepository(tx.connection),
                    message.account_id,
                    message.subject,
                    participant,
                    message.timestamp,
                )
                message.thread_id = thread_id
                await messages.insert(message)

        except (
            SQLAlchemyError, DatabaseError, ArithmeticError, ValueError, TypeError
        ) as e:
            raise PersistError(
                f"Failed to store message: {e}",
                details={
                    "account_id": message.account_id,
                    "external_id": message.external_id,
                },
            ) from e

        return PersistOutcome(stored=True, thread_id=message.thread_id)

    async def _upsert_thread(
        self,
        threads: ThreadRepository,
        account_id: str,
        subject: str,
        participant: Dict[str, str],
        message_at: datetime,
    ) -> str:
        subject_key = normalize_subject(subject)
        thread = await threads.find_by_key(account_id, subject_key)

        if thread is None:
            thread = await threads.create(
                account_id, subject, subject_key, participant, message_at
            )
            logger.debug("Created thread", extra={"account_id": account_id})
        else:
            await threads.bump(thread, participant, message_at)

        return thread.id
