"""
Shared test fixtures and configuration for pytest
"""
import os
import tempfile

# Must be set before mailengine computes its paths and reads the secret
os.environ["MAILENGINE_HOME"] = tempfile.mkdtemp(prefix="mailengine-test-")
os.environ["EMAIL_ENCRYPTION_KEY"] = "test-secret-0123456789abcdefghijklmnop"

import pytest

from mailengine.core.database.config import reset_config
from mailengine.core.database.engine_manager import EngineManager
from mailengine.core.email.services.accounts import AccountService
from mailengine.security.credential_cipher import CredentialCipher
from mailengine.utils.config import ConfigManager

from .test_helpers import make_credentials


@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from default configuration"""
    ConfigManager.reset()
    reset_config()
    yield
    ConfigManager.reset()
    reset_config()


@pytest.fixture
def cipher():
    """Credential cipher built from the test secret"""
    return CredentialCipher.from_config()


@pytest.fixture
async def engine_manager(tmp_path):
    """Engine manager on a fresh temporary database with schema"""
    manager = EngineManager(tmp_path / "mailengine.db")
    await manager.init_schema()
    yield manager
    await manager.close()


@pytest.fixture
def save_account(engine_manager, cipher):
    """Factory storing an account pointing at local test servers"""

    async def _save(imap_port=1143, smtp_port=1025, **kwargs):
        service = AccountService(engine_manager, cipher)
        return await service.save_account(
            user_id=kwargs.pop("user_id", "user-1"),
            email_address=kwargs.pop("email_address", "user@example.com"),
            imap=make_credentials(imap_port),
            smtp=make_credentials(smtp_port),
            display_name=kwargs.pop("display_name", "Test User"),
            **kwargs,
        )

    return _save
