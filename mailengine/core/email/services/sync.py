"""Mail sync service - fetches recent mail and stores it idempotently."""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from mailengine.core.database import get_engine_manager
from mailengine.core.database.engine_manager import EngineManager
from mailengine.core.database.repositories import AccountRepository
from mailengine.core.database.transaction import TransactionManager
from mailengine.core.email.imap.client import IMAPClient
from mailengine.core.models.email import EmailAccount, SyncSummary
from mailengine.security.credential_cipher import CredentialCipher
from mailengine.utils.config import ConfigManager
from mailengine.utils.errors import (
    ConfigurationError,
    DatabaseError,
    ErrorHandler,
    MailEngineError,
    PersistError,
)
from mailengine.utils.logging import async_log_call, get_logger, log_event

from .persist import ThreadPersister

logger = get_logger(__name__)


class MailSyncService:
    """Runs one sync of one account: decrypt, fetch, parse, persist."""

    def __init__(
        self,
        engine_manager: EngineManager,
        cipher: Optional[CredentialCipher] = None,
        config_manager: Optional[ConfigManager] = None,
        client_factory: Optional[Callable[[EmailAccount], IMAPClient]] = None,
    ):
        self.engine_manager = engine_manager
        self.config_manager = config_manager or ConfigManager()
        self.cipher = cipher or CredentialCipher.from_config(self.config_manager)
        self.persister = ThreadPersister(engine_manager)
        self._client_factory = client_factory or self._default_client

    def _default_client(self, account: EmailAccount) -> IMAPClient:
        config = self.config_manager.config
        # Both ssl and tls mean implicit TLS for IMAP
        return IMAPClient(
            account.imap.host,
            account.imap.port,
            use_tls=account.imap.use_tls,
            transport_config=config.transport,
            window=config.sync.fetch_window,
            mailbox=config.sync.mailbox,
        )

    async def _load_account(self, account_id: str) -> EmailAccount:
        engine = await self.engine_manager.get_engine()
        try:
            async with TransactionManager(engine) as tx:
                return await AccountRepository(tx.connection).get(account_id)
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to load email account", details={"account_id": account_id}
            ) from e

    async def _record_status(
        self, account_id: str, error: Optional[MailEngineError] = None
    ) -> None:
        now = datetime.now(timezone.utc)
        engine = await self.engine_manager.get_engine()
        try:
            async with TransactionManager(engine) as tx:
                accounts = AccountRepository(tx.connection)
                if error is None:
                    await accounts.mark_synced(account_id, now)
                else:
                    await accounts.mark_failed(account_id, error.message, now)
        except (SQLAlchemyError, DatabaseError) as e:
            logger.error(f"Failed to record sync status for {account_id}: {e}")

    @async_log_call
    async def sync_account(self, account_id: str) -> SyncSummary:
        """Sync the most recent messages of an account.

        Raises:
            AccountNotFoundError: If the account does not exist
            ConfigurationError: If sync is disabled for the account
            CredentialError: If the stored password cannot be decrypted
            MailConnectionError, AuthenticationError, ProtocolError: From IMAP
        """
        start_time = time.time()
        account = await self._load_account(account_id)

        if not account.sync_enabled:
            raise ConfigurationError(
                "Sync is disabled for this account",
                details={"account_id": account_id},
            )

        summary = SyncSummary(account_id=account_id)
        log_event(
            "sync_started",
            f"Sync started for {account.email_address}",
            account_id=account_id,
        )

        try:
            password = self.cipher.decrypt(account.imap.encrypted_password, account.id)
            result = await self._client_factory(account).fetch_recent(
                account.imap.username, password
            )
        except MailEngineError as e:
            await self._record_status(account_id, e)
            raise

        summary.mailbox_exists = result.mailbox_exists
        summary.parse_errors = len(result.parse_errors)
        summary.errors.extend(error.to_dict() for error in result.parse_errors)

        for parsed in result.messages:
            try:
                outcome = await self.persister.persist_received(account_id, parsed)
            except PersistError as e:
                logger.warning(
                    f"Skipping message that could not be stored: {e.message}",
                    extra={"account_id": account_id},
                )
                summary.persist_errors += 1
                summary.errors.append(e.to_dict())
                continue

            summary.message_count += 1
            if outcome.stored:
                summary.new_count += 1
            else:
                summary.duplicate_count += 1

        await self._record_status(account_id)

        log_event(
            "sync_completed",
            f"Sync completed for {account.email_address}",
            account_id=account_id,
            new_count=summary.new_count,
            duplicate_count=summary.duplicate_count,
            parse_errors=summary.parse_errors,
            persist_errors=summary.persist_errors,
            duration_seconds=round(time.time() - start_time, 2),
        )
        return summary


async def run_sync(
    account_id: str,
    engine_manager: Optional[EngineManager] = None,
    service: Optional[MailSyncService] = None,
) -> Dict[str, Any]:
    """Sync an account and return a structured result instead of raising."""
    owns_engine = engine_manager is None and service is None
    if engine_manager is None:
        engine_manager = service.engine_manager if service else get_engine_manager()

    try:
        service = service or MailSyncService(engine_manager)
        summary = await service.sync_account(account_id)
        return summary.to_dict()
    except MailEngineError as e:
        return {
            "success": False,
            "account_id": account_id,
            **ErrorHandler.handle(e, "Sync failed", log_traceback=False),
        }
    finally:
        if owns_engine:
            await engine_manager.close()
