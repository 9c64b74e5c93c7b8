"""
Tests for the mail sync service

Tests cover:
- End-to-end sync against a local IMAP server
- Idempotent re-sync
- Account status bookkeeping
- Structured failures from run_sync
- Per-message store failures and out-of-range dates
"""
import pytest

from mailengine.core.database.repositories import AccountRepository, MessageRepository
from mailengine.core.database.transaction import TransactionManager
from mailengine.core.email.services.persist import ThreadPersister
from mailengine.core.email.services.sync import MailSyncService, run_sync
from mailengine.core.models.email import ConnectionStatus
from mailengine.utils.errors import (
    AccountNotFoundError,
    AuthenticationError,
    ConfigurationError,
    PersistError,
)

from .test_helpers import FakeIMAPServer, fetch_response, header_block


def mailbox(*message_ids):
    return {
        seq: fetch_response(
            seq,
            header_block(message_id=message_id, subject=f"Re: Status {seq % 2}"),
            body=f"Message {seq}",
        )
        for seq, message_id in enumerate(message_ids, start=1)
    }


async def load_account(engine_manager, account_id):
    engine = await engine_manager.get_engine()
    async with TransactionManager(engine) as tx:
        return await AccountRepository(tx.connection).get(account_id)


async def count_messages(engine_manager, account_id):
    engine = await engine_manager.get_engine()
    async with TransactionManager(engine) as tx:
        return await MessageRepository(tx.connection).count(account_id)


class TestSyncAccount:
    """Tests for a successful sync"""

    @pytest.mark.asyncio
    async def test_sync_stores_messages(self, engine_manager, save_account, cipher):
        """Test messages are fetched, parsed and stored"""
        async with FakeIMAPServer(messages=mailbox("<a@x>", "<b@x>", "<c@x>")) as server:
            account = await save_account(imap_port=server.port)
            service = MailSyncService(engine_manager, cipher=cipher)

            summary = await service.sync_account(account.id)

        assert summary.message_count == 3
        assert summary.new_count == 3
        assert summary.duplicate_count == 0
        assert summary.mailbox_exists == 3
        assert await count_messages(engine_manager, account.id) == 3

        stored = await load_account(engine_manager, account.id)
        assert stored.connection_status == ConnectionStatus.CONNECTED
        assert stored.last_synced_at is not None
        assert stored.last_error is None

    @pytest.mark.asyncio
    async def test_decrypted_password_reaches_server(
        self, engine_manager, save_account, cipher
    ):
        """Test LOGIN uses the decrypted stored password"""
        async with FakeIMAPServer(messages={}) as server:
            account = await save_account(imap_port=server.port)
            await MailSyncService(engine_manager, cipher=cipher).sync_account(account.id)

        assert server.received[0] == 'A001 LOGIN "user@example.com" "s3cret-pass"'

    @pytest.mark.asyncio
    async def test_resync_is_idempotent(self, engine_manager, save_account, cipher):
        """Test a second sync over the same mailbox stores nothing new"""
        messages = mailbox("<a@x>", "<b@x>")
        async with FakeIMAPServer(messages=messages) as server:
            account = await save_account(imap_port=server.port)
            service = MailSyncService(engine_manager, cipher=cipher)
            await service.sync_account(account.id)
            second = await service.sync_account(account.id)

        assert second.new_count == 0
        assert second.duplicate_count == 2
        assert await count_messages(engine_manager, account.id) == 2

    @pytest.mark.asyncio
    async def test_parse_errors_are_counted(self, engine_manager, save_account, cipher):
        """Test an unparsable message is reported, not fatal"""
        messages = mailbox("<a@x>", None, "<c@x>")
        async with FakeIMAPServer(messages=messages) as server:
            account = await save_account(imap_port=server.port)
            summary = await MailSyncService(engine_manager, cipher=cipher).sync_account(
                account.id
            )

        assert summary.new_count == 2
        assert summary.parse_errors == 1
        assert summary.errors[0]["error_type"] == "ParseError"
        assert summary.to_dict()["success"] is True

    @pytest.mark.asyncio
    async def test_store_failure_skips_one_message(
        self, engine_manager, save_account, cipher, monkeypatch
    ):
        """Test a message that cannot be stored is logged and the loop goes on"""
        original = ThreadPersister.persist_received

        async def persist_or_fail(self, account_id, parsed):
            if parsed.message_id == "<b@x>":
                raise PersistError(
                    "disk full", details={"external_id": parsed.message_id}
                )
            return await original(self, account_id, parsed)

        monkeypatch.setattr(ThreadPersister, "persist_received", persist_or_fail)

        async with FakeIMAPServer(messages=mailbox("<a@x>", "<b@x>", "<c@x>")) as server:
            account = await save_account(imap_port=server.port)
            summary = await MailSyncService(engine_manager, cipher=cipher).sync_account(
                account.id
            )

        assert summary.persist_errors == 1
        assert summary.new_count == 2
        assert summary.message_count == 2
        assert summary.errors[0]["error_type"] == "PersistError"
        assert await count_messages(engine_manager, account.id) == 2

        stored = await load_account(engine_manager, account.id)
        assert stored.connection_status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_out_of_range_date_does_not_abort_sync(
        self, engine_manager, save_account, cipher
    ):
        """Test a Date past year 9999 in UTC falls back instead of failing the sync"""
        messages = mailbox("<a@x>")
        messages[2] = fetch_response(
            2,
            header_block(
                message_id="<far@x>", date="Fri, 31 Dec 9999 23:00:00 -1200"
            ),
        )
        async with FakeIMAPServer(messages=messages) as server:
            account = await save_account(imap_port=server.port)
            result = await run_sync(account.id, engine_manager=engine_manager)

        assert result["success"] is True
        assert result["new_count"] == 2
        assert result["persist_errors"] == 0
        assert await count_messages(engine_manager, account.id) == 2


class TestSyncFailures:
    """Tests for fatal sync failures"""

    @pytest.mark.asyncio
    async def test_login_failure_marks_account(self, engine_manager, save_account, cipher):
        """Test a rejected LOGIN raises and records the error on the account"""
        async with FakeIMAPServer(login_ok=False) as server:
            account = await save_account(imap_port=server.port)
            with pytest.raises(AuthenticationError):
                await MailSyncService(engine_manager, cipher=cipher).sync_account(
                    account.id
                )

        stored = await load_account(engine_manager, account.id)
        assert stored.connection_status == ConnectionStatus.ERROR
        assert stored.last_error == "IMAP authentication failed"
        assert stored.last_error_at is not None

    @pytest.mark.asyncio
    async def test_unknown_account(self, engine_manager, cipher):
        with pytest.raises(AccountNotFoundError):
            await MailSyncService(engine_manager, cipher=cipher).sync_account("missing")

    @pytest.mark.asyncio
    async def test_sync_disabled(self, engine_manager, save_account, cipher):
        account = await save_account(sync_enabled=False)
        with pytest.raises(ConfigurationError):
            await MailSyncService(engine_manager, cipher=cipher).sync_account(account.id)

    @pytest.mark.asyncio
    async def test_run_sync_returns_failure_dict(self, engine_manager, save_account):
        """Test run_sync reports errors instead of raising"""
        async with FakeIMAPServer(login_ok=False) as server:
            account = await save_account(imap_port=server.port)
            result = await run_sync(account.id, engine_manager=engine_manager)

        assert result["success"] is False
        assert result["account_id"] == account.id
        assert result["error_type"] == "AuthenticationError"
        assert result["category"] == "authentication"

    @pytest.mark.asyncio
    async def test_run_sync_success(self, engine_manager, save_account):
        async with FakeIMAPServer(messages=mailbox("<a@x>")) as server:
            account = await save_account(imap_port=server.port)
            result = await run_sync(account.id, engine_manager=engine_manager)

        assert result["success"] is True
        assert result["new_count"] == 1
