"""Email send service - submits through SMTP and stores the sent message."""

from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from mailengine.core.database import get_engine_manager
from mailengine.core.database.engine_manager import EngineManager
from mailengine.core.database.repositories import AccountRepository
from mailengine.core.database.transaction import TransactionManager
from mailengine.core.email.smtp.client import SMTPClient
from mailengine.core.models.email import EmailAccount, OutgoingEmail, SendResult
from mailengine.security.credential_cipher import CredentialCipher
from mailengine.utils.config import ConfigManager
from mailengine.utils.errors import (
    DatabaseError,
    ErrorHandler,
    MailEngineError,
    PersistError,
)
from mailengine.utils.logging import async_log_call, get_logger, log_event

from .persist import ThreadPersister

logger = get_logger(__name__)


class MailSendService:
    """Service for sending email from a stored account. No retries."""

    def __init__(
        self,
        engine_manager: EngineManager,
        cipher: Optional[CredentialCipher] = None,
        config_manager: Optional[ConfigManager] = None,
        client_factory: Optional[Callable[[EmailAccount], SMTPClient]] = None,
    ):
        self.engine_manager = engine_manager
        self.config_manager = config_manager or ConfigManager()
        self.cipher = cipher or CredentialCipher.from_config(self.config_manager)
        self.persister = ThreadPersister(engine_manager)
        self._client_factory = client_factory or self._default_client

    def _default_client(self, account: EmailAccount) -> SMTPClient:
        config = self.config_manager.config
        return SMTPClient(
            account.smtp.host,
            account.smtp.port,
            encryption=account.smtp.encryption.value,
            transport_config=config.transport,
            ehlo_hostname=config.sync.ehlo_hostname,
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

    @async_log_call
    async def send(self, account_id: str, email: OutgoingEmail) -> SendResult:
        """Send an email and record it as a ``sent`` message.

        Raises:
            ValidationError: If recipients or subject are invalid
            AccountNotFoundError: If the account does not exist
            CredentialError: If the stored password cannot be decrypted
            MailConnectionError, AuthenticationError, ProtocolError: From SMTP
        """
        email.validate()
        account = await self._load_account(account_id)

        logger.info(
            "Sending email",
            extra={"account_id": account_id, "recipient_count": len(email.recipients)},
        )

        password = self.cipher.decrypt(account.smtp.encrypted_password, account.id)
        result = await self._client_factory(account).send(
            account.smtp.username,
            password,
            email,
            from_address=account.email_address,
            from_name=account.display_name,
        )

        # The message is already delivered; a storage failure must not fail the send
        try:
            outcome = await self.persister.persist_sent(
                account_id,
                email,
                result,
                from_address=account.email_address,
                from_name=account.display_name,
            )
            result.thread_id = outcome.thread_id
            result.stored = outcome.stored
        except PersistError as e:
            logger.warning(
                f"Sent message could not be stored: {e.message}",
                extra={"account_id": account_id},
            )

        log_event(
            "email_sent",
            f"Email sent from {account.email_address}",
            account_id=account_id,
            recipient_count=len(result.recipients),
            stored=result.stored,
        )
        return result


async def run_send(
    account_id: str,
    email: OutgoingEmail,
    engine_manager: Optional[EngineManager] = None,
    service: Optional[MailSendService] = None,
) -> Dict[str, Any]:
    """Send an email and return a structured result instead of raising."""
    owns_engine = engine_manager is None and service is None
    if engine_manager is None:
        engine_manager = service.engine_manager if service else get_engine_manager()

    try:
        service = service or MailSendService(engine_manager)
        result = await service.send(account_id, email)
        return result.to_dict()
    except MailEngineError as e:
        return {
            "success": False,
            "account_id": account_id,
            **ErrorHandler.handle(e, "Send failed", log_traceback=False),
        }
    finally:
        if owns_engine:
            await engine_manager.close()
