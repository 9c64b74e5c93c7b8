"""
Tests for connection testing before an account is saved
"""
import pytest

from mailengine.core.email.services.diagnostics import ConnectionTester

from .test_helpers import FakeIMAPServer, FakeSMTPServer, make_credentials


class TestConnectionTester:
    """Tests for IMAP and SMTP login checks"""

    @pytest.mark.asyncio
    async def test_both_succeed(self):
        async with FakeIMAPServer() as imap, FakeSMTPServer() as smtp:
            result = await ConnectionTester().test_all(
                make_credentials(imap.port), make_credentials(smtp.port)
            )

        assert result["success"] is True
        assert result["imap"]["protocol"] == "imap"
        assert result["smtp"]["starttls"] is False
        assert imap.logged_out
        assert smtp.quit_received
        assert smtp.message is None

    @pytest.mark.asyncio
    async def test_imap_login_rejected(self):
        async with FakeIMAPServer(login_ok=False) as imap:
            result = await ConnectionTester().test_imap(make_credentials(imap.port))

        assert result["success"] is False
        assert result["error_type"] == "AuthenticationError"
        assert result["category"] == "authentication"

    @pytest.mark.asyncio
    async def test_smtp_failure_reports_stage(self):
        async with FakeSMTPServer(greeting_code=421) as smtp:
            result = await ConnectionTester().test_smtp(make_credentials(smtp.port))

        assert result["success"] is False
        assert result["error_type"] == "ProtocolError"
        assert result["stage"] == "greeting"

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        async with FakeIMAPServer() as imap:
            port = imap.port

        result = await ConnectionTester().test_imap(make_credentials(port))

        assert result["success"] is False
        assert result["category"] == "network"
