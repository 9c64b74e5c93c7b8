"""
Tests for idempotent message storage and threading
"""
from datetime import datetime, timedelta, timezone

import pytest

from mailengine.core.database.repositories import MessageRepository, ThreadRepository
from mailengine.core.database.transaction import TransactionManager
from mailengine.core.email.parser import ParsedMessage
from mailengine.core.email.services.persist import ThreadPersister
from mailengine.core.models.email import Direction, OutgoingEmail, SendResult
from mailengine.utils.errors import PersistError

BASE_TIME = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)


def parsed(message_id, subject="Project kickoff", sender="alice@example.com", at=BASE_TIME):
    return ParsedMessage(
        sequence=1,
        message_id=message_id,
        from_email=sender,
        from_name=sender.split("@")[0].title(),
        subject=subject,
        received_at=at,
        to=["user@example.com"],
        body_text="Body",
    )


async def fetch_threads(engine_manager, account_id):
    engine = await engine_manager.get_engine()
    async with TransactionManager(engine) as tx:
        return await ThreadRepository(tx.connection).list_for_account(account_id)


async def count_messages(engine_manager, account_id):
    engine = await engine_manager.get_engine()
    async with TransactionManager(engine) as tx:
        return await MessageRepository(tx.connection).count(account_id)


class TestDeduplication:
    """Tests for storing each message once"""

    @pytest.mark.asyncio
    async def test_same_message_stored_once(self, engine_manager, save_account):
        """Test persisting the same Message-ID twice is a no-op the second time"""
        account = await save_account()
        persister = ThreadPersister(engine_manager)

        first = await persister.persist_received(account.id, parsed("<a@x>"))
        second = await persister.persist_received(account.id, parsed("<a@x>"))

        assert first.stored and not first.duplicate
        assert second.duplicate
        assert await count_messages(engine_manager, account.id) == 1

        threads = await fetch_threads(engine_manager, account.id)
        assert len(threads) == 1
        assert threads[0].message_count == 1

    @pytest.mark.asyncio
    async def test_same_message_id_in_two_accounts(self, engine_manager, save_account):
        """Test deduplication is scoped to the account"""
        first = await save_account(email_address="one@example.com")
        second = await save_account(email_address="two@example.com")
        persister = ThreadPersister(engine_manager)

        assert (await persister.persist_received(first.id, parsed("<a@x>"))).stored
        assert (await persister.persist_received(second.id, parsed("<a@x>"))).stored


class TestThreading:
    """Tests for grouping messages by normalized subject"""

    @pytest.mark.asyncio
    async def test_reply_joins_thread(self, engine_manager, save_account):
        """Test a reply lands in the thread of the original"""
        account = await save_account()
        persister = ThreadPersister(engine_manager)

        original = await persister.persist_received(account.id, parsed("<a@x>"))
        reply = await persister.persist_received(
            account.id,
            parsed(
                "<b@x>",
                subject="RE:  project KICKOFF",
                sender="bob@example.com",
                at=BASE_TIME + timedelta(hours=1),
            ),
        )

        assert reply.thread_id == original.thread_id

        [thread] = await fetch_threads(engine_manager, account.id)
        assert thread.subject == "Project kickoff"
        assert thread.subject_key == "project kickoff"
        assert thread.message_count == 2
        assert [p["email"] for p in thread.participants] == [
            "alice@example.com",
            "bob@example.com",
        ]
        assert thread.last_message_at == BASE_TIME + timedelta(hours=1)

        engine = await engine_manager.get_engine()
        async with TransactionManager(engine) as tx:
            messages = await MessageRepository(tx.connection).list_for_thread(thread.id)
        assert [m.external_id for m in messages] == ["<a@x>", "<b@x>"]
        assert all(m.direction == Direction.RECEIVED for m in messages)

    @pytest.mark.asyncio
    async def test_older_message_keeps_latest_time(self, engine_manager, save_account):
        """Test last_message_at never moves backwards"""
        account = await save_account()
        persister = ThreadPersister(engine_manager)

        await persister.persist_received(account.id, parsed("<new@x>"))
        await persister.persist_received(
            account.id, parsed("<old@x>", at=BASE_TIME - timedelta(days=2))
        )

        [thread] = await fetch_threads(engine_manager, account.id)
        assert thread.last_message_at == BASE_TIME
        assert thread.message_count == 2

    @pytest.mark.asyncio
    async def test_different_subjects_make_different_threads(
        self, engine_manager, save_account
    ):
        account = await save_account()
        persister = ThreadPersister(engine_manager)

        a = await persister.persist_received(account.id, parsed("<a@x>", subject="One"))
        b = await persister.persist_received(account.id, parsed("<b@x>", subject="Two"))

        assert a.thread_id != b.thread_id
        assert len(await fetch_threads(engine_manager, account.id)) == 2

    @pytest.mark.asyncio
    async def test_sent_message_joins_received_thread(self, engine_manager, save_account):
        """Test an outgoing reply is threaded with the incoming message"""
        account = await save_account()
        persister = ThreadPersister(engine_manager)
        incoming = await persister.persist_received(account.id, parsed("<a@x>"))

        email = OutgoingEmail(
            to=["alice@example.com"],
            bcc=["boss@example.com"],
            subject="Re: Project kickoff",
            body="Sounds good",
        )
        result = SendResult(
            message_id="<sent-1@smtp.example.com>",
            recipients=email.recipients,
            sent_at=BASE_TIME + timedelta(minutes=5),
        )
        outgoing = await persister.persist_sent(
            account.id, email, result, from_address="user@example.com", from_name="Me"
        )

        assert outgoing.thread_id == incoming.thread_id

        engine = await engine_manager.get_engine()
        async with TransactionManager(engine) as tx:
            stored = await MessageRepository(tx.connection).get_by_external_id(
                account.id, "<sent-1@smtp.example.com>"
            )
        assert stored.direction == Direction.SENT
        assert stored.bcc == ["boss@example.com"]
        assert stored.body_text == "Sounds good"
        assert stored.timestamp == BASE_TIME + timedelta(minutes=5)


class TestPersistFailures:
    """Tests for storage errors"""

    @pytest.mark.asyncio
    async def test_unknown_account_is_persist_error(self, engine_manager):
        """Test a foreign key violation surfaces as a soft PersistError"""
        persister = ThreadPersister(engine_manager)

        with pytest.raises(PersistError) as exc:
            await persister.persist_received("no-such-account", parsed("<a@x>"))

        assert exc.value.fatal is False
        assert exc.value.details["external_id"] == "<a@x>"
        assert await count_messages(engine_manager, "no-such-account") == 0

    @pytest.mark.asyncio
    async def test_unstorable_timestamp_is_persist_error(self, engine_manager, save_account):
        """Test a timestamp that cannot be rendered in UTC is a soft PersistError"""
        account = await save_account()
        persister = ThreadPersister(engine_manager)
        far_future = datetime(9999, 12, 31, 23, 0, tzinfo=timezone(timedelta(hours=-12)))

        with pytest.raises(PersistError) as exc:
            await persister.persist_received(account.id, parsed("<z@x>", at=far_future))

        assert exc.value.details["external_id"] == "<z@x>"
        assert await count_messages(engine_manager, account.id) == 0
