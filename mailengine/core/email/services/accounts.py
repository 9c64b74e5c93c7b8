"""Account service - stores accounts with encrypted passwords."""

import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from mailengine.core.database.engine_manager import EngineManager
from mailengine.core.database.repositories import AccountRepository
from mailengine.core.database.transaction import TransactionManager
from mailengine.core.models.email import (
    EmailAccount,
    EncryptionMode,
    ServerSettings,
    check_header_value,
    is_valid_email,
)
from mailengine.security.credential_cipher import CredentialCipher, reencrypt
from mailengine.utils.config import ConfigManager
from mailengine.utils.errors import DatabaseError, ValidationError
from mailengine.utils.logging import get_logger, log_event

logger = get_logger(__name__)


@dataclass
class ServerCredentials:
    """Plaintext server settings as entered by the user."""

    host: str
    port: int
    username: str
    password: str
    encryption: str = "ssl"

    def validate(self, protocol: str) -> None:
        if not self.host:
            raise ValidationError(f"{protocol} host is required")
        if not 0 < self.port < 65536:
            raise ValidationError(f"{protocol} port is out of range")
        if not self.username or not self.password:
            raise ValidationError(f"{protocol} username and password are required")
        EncryptionMode.from_string(self.encryption)


class AccountService:
    """Creates, updates and re-keys email accounts."""

    def __init__(
        self,
        engine_manager: EngineManager,
        cipher: Optional[CredentialCipher] = None,
    ):
        self.engine_manager = engine_manager
        self.cipher = cipher or CredentialCipher.from_config(ConfigManager())

    def _settings(
        self, credentials: ServerCredentials, account_id: str
    ) -> ServerSettings:
        return ServerSettings(
            host=credentials.host.strip(),
            port=credentials.port,
            username=credentials.username.strip(),
            encrypted_password=self.cipher.encrypt(credentials.password, account_id),
            encryption=EncryptionMode.from_string(credentials.encryption),
        )

    async def save_account(
        self,
        user_id: str,
        email_address: str,
        imap: ServerCredentials,
        smtp: ServerCredentials,
        display_name: str = "",
        sync_enabled: bool = True,
    ) -> EmailAccount:
        """Create an account, or update the one with the same address.

        Both passwords are encrypted before anything is written.

        Raises:
            ValidationError: On missing or malformed settings
            CredentialError: If encryption fails
            DatabaseError: If the account cannot be stored
        """
        email_address = email_address.strip()
        if not is_valid_email(email_address):
            raise ValidationError("Invalid email address")
        check_header_value("Display name", display_name)
        imap.validate("IMAP")
        smtp.validate("SMTP")

        engine = await self.engine_manager.get_engine()
        try:
            async with TransactionManager(engine) as tx:
                accounts = AccountRepository(tx.connection)
                existing = await accounts.find_by_address(user_id, email_address)
                account_id = existing.id if existing else str(uuid.uuid4())

                account = EmailAccount(
                    id=account_id,
                    user_id=user_id,
                    email_address=email_address.strip().lower(),
                    display_name=display_name,
                    imap=self._settings(imap, account_id),
                    smtp=self._settings(smtp, account_id),
                    sync_enabled=sync_enabled,
                )
                if existing:
                    account.last_synced_at = existing.last_synced_at
                    account.connection_status = existing.connection_status

                await accounts.save(account)

        except IntegrityError as e:
            raise DatabaseError(
                "Email account conflicts with an existing one",
                details={"user_id": user_id},
            ) from e
        except SQLAlchemyError as e:
            raise DatabaseError(
                "Failed to save email account", details={"user_id": user_id}
            ) from e

        log_event(
            "account_saved",
            "Email account saved",
            account_id=account.id,
            new_account=existing is None,
        )
        return account

    async def list_accounts(self, user_id: str) -> List[EmailAccount]:
        engine = await self.engine_manager.get_engine()
        async with TransactionManager(engine) as tx:
            return await AccountRepository(tx.connection).list_for_user(user_id)

    async def delete_account(self, account_id: str) -> bool:
        engine = await self.engine_manager.get_engine()
        async with TransactionManager(engine) as tx:
            deleted = await AccountRepository(tx.connection).delete(account_id)
        if deleted:
            log_event("account_deleted", "Email account deleted", account_id=account_id)
        return deleted

    async def rotate_key(self, new_cipher: CredentialCipher) -> int:
        """Re-encrypt every stored password under ``new_cipher``.

        All accounts are rewritten in one transaction, so a failure leaves the
        old blobs in place.

        Returns:
            Number of accounts re-encrypted
        """
        engine = await self.engine_manager.get_engine()
        count = 0
        async with TransactionManager(engine) as tx:
            accounts = AccountRepository(tx.connection)
            for account in await accounts.list_all():
                for server in (account.imap, account.smtp):
                    server.encrypted_password = reencrypt(
                        server.encrypted_password, self.cipher, new_cipher, account.id
                    )
                await accounts.save(account)
                count += 1

        self.cipher = new_cipher
        logger.info(f"Re-encrypted credentials of {count} accounts")
        return count
