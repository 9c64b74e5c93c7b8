"""
Tests for account storage and key rotation
"""
import pytest

from mailengine.core.database.repositories import AccountRepository
from mailengine.core.database.transaction import TransactionManager
from mailengine.core.email.services.accounts import AccountService
from mailengine.core.models.email import EncryptionMode
from mailengine.security.credential_cipher import CredentialCipher
from mailengine.utils.errors import CredentialError, ValidationError

from .test_helpers import TEST_PASSWORD, make_credentials


async def load(engine_manager, account_id):
    engine = await engine_manager.get_engine()
    async with TransactionManager(engine) as tx:
        return await AccountRepository(tx.connection).get(account_id)


class TestSaveAccount:
    """Tests for creating and updating accounts"""

    @pytest.mark.asyncio
    async def test_passwords_stored_encrypted(self, engine_manager, save_account, cipher):
        """Test no plaintext password reaches the database"""
        account = await save_account()
        stored = await load(engine_manager, account.id)

        for server in (stored.imap, stored.smtp):
            assert TEST_PASSWORD not in server.encrypted_password
            assert cipher.decrypt(server.encrypted_password, account.id) == TEST_PASSWORD
        assert stored.imap.encryption == EncryptionMode.NONE
        assert stored.email_address == "user@example.com"

    @pytest.mark.asyncio
    async def test_same_address_updates_account(self, engine_manager, save_account):
        """Test saving an existing address keeps its id"""
        first = await save_account()
        second = await save_account(email_address="USER@example.com", display_name="Renamed")

        assert second.id == first.id
        stored = await load(engine_manager, first.id)
        assert stored.display_name == "Renamed"

        service = AccountService(engine_manager)
        assert len(await service.list_accounts("user-1")) == 1

    @pytest.mark.asyncio
    async def test_invalid_address(self, engine_manager, cipher):
        service = AccountService(engine_manager, cipher)
        with pytest.raises(ValidationError):
            await service.save_account(
                "user-1", "not-an-address", make_credentials(993), make_credentials(587)
            )

    @pytest.mark.asyncio
    async def test_display_name_with_line_break(self, engine_manager, cipher):
        service = AccountService(engine_manager, cipher)
        with pytest.raises(ValidationError):
            await service.save_account(
                "user-1",
                "user@example.com",
                make_credentials(993),
                make_credentials(587),
                display_name="Eve\r\nBcc: victim@evil.com",
            )

        assert await service.list_accounts("user-1") == []

    @pytest.mark.asyncio
    async def test_invalid_encryption_mode(self, engine_manager, cipher):
        service = AccountService(engine_manager, cipher)
        with pytest.raises(ValidationError):
            await service.save_account(
                "user-1",
                "user@example.com",
                make_credentials(993, encryption="starttls"),
                make_credentials(587),
            )

    @pytest.mark.asyncio
    async def test_delete_account(self, engine_manager, save_account, cipher):
        account = await save_account()
        service = AccountService(engine_manager, cipher)

        assert await service.delete_account(account.id) is True
        assert await service.delete_account(account.id) is False


class TestRotateKey:
    """Tests for re-encrypting credentials under a new secret"""

    @pytest.mark.asyncio
    async def test_rotate_key(self, engine_manager, save_account, cipher):
        """Test every blob decrypts under the new secret and not the old one"""
        first = await save_account(email_address="one@example.com")
        second = await save_account(email_address="two@example.com")
        new_cipher = CredentialCipher("a-brand-new-secret-for-rotation-tests-42")

        count = await AccountService(engine_manager, cipher).rotate_key(new_cipher)

        assert count == 2
        for account_id in (first.id, second.id):
            stored = await load(engine_manager, account_id)
            assert new_cipher.decrypt(stored.smtp.encrypted_password, account_id) == TEST_PASSWORD
            with pytest.raises(CredentialError):
                cipher.decrypt(stored.imap.encrypted_password, account_id)

    @pytest.mark.asyncio
    async def test_rotation_with_wrong_source_changes_nothing(
        self, engine_manager, save_account
    ):
        """Test a failed rotation leaves the old blobs in place"""
        account = await save_account()
        before = await load(engine_manager, account.id)
        wrong = CredentialCipher("not-the-secret-these-were-written-with!!")

        with pytest.raises(CredentialError):
            await AccountService(engine_manager, wrong).rotate_key(
                CredentialCipher("another-secret-entirely-0123456789abcdef")
            )

        after = await load(engine_manager, account.id)
        assert after.imap.encrypted_password == before.imap.encrypted_password
