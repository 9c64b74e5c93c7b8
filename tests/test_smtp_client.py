"""
Tests for SMTP sending

Tests cover:
- Session dialogue and message rendering
- Recipient rejection, auth failure and bad greetings
- TLS mode selection and STARTTLS
"""
import base64
import re
from datetime import datetime, timezone
from unittest.mock import AsyncMock, PropertyMock, patch

import pytest

from mailengine.core.email.smtp.client import SMTPClient, build_message
from mailengine.core.email.smtp.constants import SMTPPorts
from mailengine.core.email.smtp.protocol import dot_stuff
from mailengine.core.email.transport import LineSocketTransport
from mailengine.core.models.email import OutgoingEmail
from mailengine.utils.errors import (
    AuthenticationError,
    MailConnectionError,
    ProtocolError,
    ValidationError,
)

from .test_helpers import TEST_PASSWORD, FakeSMTPServer, make_tls_contexts

MESSAGE_ID_RE = re.compile(r"^<[0-9a-f-]{36}@127\.0\.0\.1>$")


def make_email(**kwargs):
    defaults = {
        "to": ["bob@example.com"],
        "subject": "Quarterly report",
        "body": "Hi Bob,\n.hidden line\nBye",
    }
    defaults.update(kwargs)
    return OutgoingEmail(**defaults)


def make_client(server, encryption="none"):
    return SMTPClient("127.0.0.1", server.port, encryption=encryption)


async def send(server, email=None, password=TEST_PASSWORD, **kwargs):
    return await make_client(server, **kwargs).send(
        "user@example.com",
        password,
        email or make_email(),
        from_address="user@example.com",
        from_name="Test User",
    )


class TestSMTPSend:
    """Tests for a successful send"""

    @pytest.mark.asyncio
    async def test_send_dialogue(self):
        """Test the command sequence of a plain session"""
        async with FakeSMTPServer() as server:
            result = await send(server)

        user_b64 = base64.b64encode(b"user@example.com").decode()
        pass_b64 = base64.b64encode(TEST_PASSWORD.encode()).decode()
        assert server.received == [
            "EHLO localhost",
            "AUTH LOGIN",
            user_b64,
            pass_b64,
            "MAIL FROM:<user@example.com>",
            "RCPT TO:<bob@example.com>",
            "DATA",
            "QUIT",
        ]
        assert server.auth == ["user@example.com", TEST_PASSWORD]
        assert server.quit_received

        assert MESSAGE_ID_RE.match(result.message_id)
        assert result.recipients == ["bob@example.com"]

    @pytest.mark.asyncio
    async def test_message_content(self):
        """Test headers, dot-stuffing and terminator of the DATA payload"""
        async with FakeSMTPServer() as server:
            result = await send(server)

        message = server.message
        head, _, body = message.partition(b"\r\n\r\n")
        headers = head.decode().split("\r\n")

        assert "From: Test User <user@example.com>" in headers
        assert "To: bob@example.com" in headers
        assert "Subject: Quarterly report" in headers
        assert f"Message-ID: {result.message_id}" in headers
        assert "Content-Type: text/plain; charset=UTF-8" in headers
        assert body == b"Hi Bob,\r\n..hidden line\r\nBye\r\n.\r\n"

    @pytest.mark.asyncio
    async def test_all_recipients_get_rcpt(self):
        """Test To, Cc and Bcc each get RCPT but Bcc stays out of headers"""
        email = make_email(cc=["carol@example.com"], bcc=["dave@example.com"])
        async with FakeSMTPServer() as server:
            result = await send(server, email)

        rcpts = [line for line in server.received if line.startswith("RCPT")]
        assert rcpts == [
            "RCPT TO:<bob@example.com>",
            "RCPT TO:<carol@example.com>",
            "RCPT TO:<dave@example.com>",
        ]
        assert b"Cc: carol@example.com" in server.message
        assert b"dave@example.com" not in server.message
        assert len(result.recipients) == 3

    @pytest.mark.asyncio
    async def test_chunked_replies(self):
        """Test multi-line EHLO replies split across reads"""
        async with FakeSMTPServer(chunk_size=2) as server:
            result = await send(server)

        assert server.quit_received
        assert MESSAGE_ID_RE.match(result.message_id)


class TestSMTPFailures:
    """Tests for rejected sessions"""

    @pytest.mark.asyncio
    async def test_rejected_recipient_aborts_before_data(self):
        """Test a 550 to RCPT raises and DATA is never sent"""
        email = make_email(to=["bob@example.com", "ghost@example.com"])
        async with FakeSMTPServer(reject_recipients={"ghost@example.com"}) as server:
            with pytest.raises(ProtocolError) as exc:
                await send(server, email)

        assert exc.value.details["stage"] == "rcpt_to"
        assert exc.value.details["code"] == 550
        assert "DATA" not in server.commands()
        assert server.message is None

    @pytest.mark.asyncio
    async def test_auth_rejected(self):
        """Test a 535 after the password raises AuthenticationError"""
        async with FakeSMTPServer(auth_ok=False) as server:
            with pytest.raises(AuthenticationError) as exc:
                await send(server, password="wrong")

        assert exc.value.details["stage"] == "auth_pass"
        assert "MAIL" not in server.commands()

    @pytest.mark.asyncio
    async def test_bad_greeting(self):
        """Test a non-220 greeting fails at the greeting stage"""
        async with FakeSMTPServer(greeting_code=554) as server:
            with pytest.raises(ProtocolError) as exc:
                await send(server)

        assert exc.value.details["stage"] == "greeting"
        assert server.received == []


class TestTLSModes:
    """Tests for choosing STARTTLS or implicit TLS"""

    @pytest.mark.parametrize(
        "port,encryption,starttls,implicit",
        [
            (587, "tls", True, False),
            (465, "ssl", False, True),
            (465, "tls", False, True),
            (2525, "tls", False, True),
            (587, "ssl", False, True),
            (25, "none", False, False),
            (1025, "none", False, False),
        ],
    )
    def test_mode_mapping(self, port, encryption, starttls, implicit):
        assert SMTPPorts.requires_starttls(port, encryption) is starttls
        assert SMTPPorts.is_implicit_ssl(port, encryption) is implicit

    @pytest.mark.asyncio
    async def test_starttls_upgrade_repeats_ehlo(self):
        """Test STARTTLS is followed by a TLS upgrade and a second EHLO"""
        async with FakeSMTPServer() as server:
            with patch.object(
                SMTPClient, "use_starttls", new_callable=PropertyMock, return_value=True
            ), patch.object(
                LineSocketTransport, "start_tls", new_callable=AsyncMock
            ) as mock_start_tls:
                await send(server)

        mock_start_tls.assert_awaited_once_with("127.0.0.1")
        assert server.commands()[:3] == ["EHLO", "STARTTLS", "EHLO"]

    @pytest.mark.asyncio
    async def test_starttls_handshake_against_local_server(self, tmp_path):
        """Test the session really switches to TLS after 220 and keeps going"""
        server_context, client_context = make_tls_contexts(tmp_path)
        async with FakeSMTPServer(tls_context=server_context) as server:
            client = SMTPClient(
                "127.0.0.1", server.port, encryption="none", ssl_context=client_context
            )
            with patch.object(
                SMTPClient, "use_starttls", new_callable=PropertyMock, return_value=True
            ):
                await client.send(
                    "user@example.com",
                    TEST_PASSWORD,
                    make_email(),
                    from_address="user@example.com",
                )

        assert server.upgraded
        assert server.commands()[:3] == ["EHLO", "STARTTLS", "EHLO"]
        assert server.auth == ["user@example.com", TEST_PASSWORD]
        assert b"Subject: Quarterly report" in server.message

    @pytest.mark.asyncio
    async def test_data_pipelined_after_starttls_reply_is_refused(self):
        """Test plaintext bytes sent with the 220 abort before the handshake"""
        async with FakeSMTPServer(after_starttls=b"250 injected\r\n") as server:
            with patch.object(
                SMTPClient, "use_starttls", new_callable=PropertyMock, return_value=True
            ):
                with pytest.raises(MailConnectionError):
                    await send(server)

        assert server.auth == []
        assert "AUTH LOGIN" not in server.received


class TestMessageRendering:
    """Tests for message building helpers"""

    def test_dot_stuffing(self):
        assert dot_stuff(b".a\n..b\nc") == b"..a\r\n...b\r\nc"
        assert dot_stuff(b"x\r\ny\rz") == b"x\r\ny\r\nz"

    def test_html_and_threading_headers(self):
        email = make_email(
            html=True,
            body="<p>Hi</p>",
            in_reply_to="<orig@example.com>",
            references=["<root@example.com>", "<orig@example.com>"],
        )
        sent_at = datetime(2025, 1, 6, 10, 0, tzinfo=timezone.utc)

        raw = build_message(email, "user@example.com", "<id@host>", sent_at=sent_at)
        head = raw.split(b"\r\n\r\n")[0].decode()

        assert "Content-Type: text/html; charset=UTF-8" in head
        assert "In-Reply-To: <orig@example.com>" in head
        assert "References: <root@example.com> <orig@example.com>" in head
        assert "Date: Mon, 06 Jan 2025 10:00:00 +0000" in head
        assert "From: user@example.com" in head

    def test_non_ascii_subject_is_encoded(self):
        raw = build_message(make_email(subject="Grüße"), "u@example.com", "<id@h>")
        subject = [line for line in raw.decode().split("\r\n") if line.startswith("Subject:")][0]
        assert "=?utf-8?" in subject.lower()

    def test_sender_name_with_line_break_is_rejected(self):
        with pytest.raises(ValidationError):
            build_message(
                make_email(),
                "user@example.com",
                "<id@host>",
                from_name="Eve\r\nBcc: victim@evil.com",
            )
