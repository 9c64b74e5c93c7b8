"""
Tests for the command line interface
"""
import sys
from unittest.mock import AsyncMock, patch

import pytest

from mailengine.cli import cli
from mailengine.cli.cli_parser import setup_argument_parser


class TestArgumentParser:
    """Tests for argument parsing"""

    def test_send_arguments(self):
        args = setup_argument_parser().parse_args(
            [
                "send",
                "acc-1",
                "--to",
                "a@example.com",
                "b@example.com",
                "--subject",
                "Hi",
                "--body",
                "Hello",
                "--html",
            ]
        )
        assert args.command == "send"
        assert args.account_id == "acc-1"
        assert args.to == ["a@example.com", "b@example.com"]
        assert args.cc == []
        assert args.html is True

    def test_add_account_defaults(self):
        args = setup_argument_parser().parse_args(
            ["add-account", "me@example.com", "--imap-host", "imap.x", "--smtp-host", "smtp.x"]
        )
        assert args.imap_port == 993
        assert args.imap_encryption == "ssl"
        assert args.smtp_port == 587
        assert args.smtp_encryption == "tls"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            setup_argument_parser().parse_args([])


class TestMain:
    """Tests for command dispatch and exit codes"""

    def test_sync_success(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["mailengine", "sync", "acc-1"])
        with patch.object(
            cli, "run_sync", new=AsyncMock(return_value={"success": True, "new_count": 1})
        ) as mock_sync:
            assert cli.main() == 0
        mock_sync.assert_awaited_once_with("acc-1")

    def test_sync_failure_exit_code(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["mailengine", "sync", "acc-1"])
        with patch.object(
            cli, "run_sync", new=AsyncMock(return_value={"success": False, "error": "x"})
        ):
            assert cli.main() == 1

    def test_check_key(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["mailengine", "check-key"])
        assert cli.main() == 0

    def test_check_key_missing(self, monkeypatch):
        monkeypatch.delenv("EMAIL_ENCRYPTION_KEY", raising=False)
        monkeypatch.setattr(sys, "argv", ["mailengine", "check-key"])
        assert cli.main() == 1

    def test_init_db(self, monkeypatch):
        monkeypatch.setattr(sys, "argv", ["mailengine", "init-db"])
        assert cli.main() == 0
