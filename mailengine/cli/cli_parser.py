"""Argument parser configuration for the mailengine CLI"""

import argparse


## Argument Adding Utilities


def add_server_arguments(
    parser: argparse.ArgumentParser, protocol: str, port: int, encryption: str
) -> None:
    """Add host/port/user/encryption arguments for one protocol."""

    group = parser.add_argument_group(protocol.upper(), f"{protocol.upper()} server")
    group.add_argument(f"--{protocol}-host", required=True, help="Server hostname")
    group.add_argument(
        f"--{protocol}-port",
        type=int,
        default=port,
        help=f"Server port (default: {port})",
    )
    group.add_argument(
        f"--{protocol}-username",
        help="Login name (default: the email address)",
    )
    group.add_argument(
        f"--{protocol}-encryption",
        default=encryption,
        choices=["ssl", "tls", "none"],
        help=f"Transport security (default: {encryption})",
    )


## Command Setup Functions


def setup_account_commands(subparsers) -> None:
    """Setup add-account and test-connection commands."""

    for name, help_text in (
        ("add-account", "Store an email account with encrypted passwords"),
        ("test-connection", "Check IMAP and SMTP settings without saving"),
    ):
        parser = subparsers.add_parser(name, help=help_text, description=help_text)
        parser.add_argument("email", help="Email address of the account")
        parser.add_argument("--user-id", default="local", help="Owner of the account")
        parser.add_argument("--display-name", default="", help="Sender display name")
        add_server_arguments(parser, "imap", 993, "ssl")
        add_server_arguments(parser, "smtp", 587, "tls")
        parser.add_argument(
            "--skip-test",
            action="store_true",
            help="Save without testing the connection first",
        )


def setup_mail_commands(subparsers) -> None:
    """Setup sync and send commands."""

    sync_parser = subparsers.add_parser(
        "sync",
        help="Fetch recent messages of an account",
        description="Fetch the most recent INBOX messages and store new ones",
    )
    sync_parser.add_argument("account_id", help="Account id")

    send_parser = subparsers.add_parser(
        "send",
        help="Send an email from an account",
        description="Send an email and store it as a sent message",
    )
    send_parser.add_argument("account_id", help="Account id")
    send_parser.add_argument("--to", required=True, nargs="+", help="Recipients")
    send_parser.add_argument("--cc", nargs="+", default=[], help="Cc recipients")
    send_parser.add_argument("--bcc", nargs="+", default=[], help="Bcc recipients")
    send_parser.add_argument("--subject", required=True, help="Subject line")
    send_parser.add_argument("--body", required=True, help="Message body")
    send_parser.add_argument("--html", action="store_true", help="Body is HTML")
    send_parser.add_argument("--in-reply-to", help="Message-ID being answered")


def setup_admin_commands(subparsers) -> None:
    """Setup init-db and check-key commands."""

    subparsers.add_parser(
        "init-db",
        help="Create the database schema",
        description="Create the database tables if they do not exist",
    )
    subparsers.add_parser(
        "check-key",
        help="Validate the credential encryption secret",
        description="Check the encryption secret is set, long enough and working",
    )


def setup_argument_parser() -> argparse.ArgumentParser:
    """Setup and return the argument parser."""

    parser = argparse.ArgumentParser(
        prog="mailengine",
        description="IMAP/SMTP mail engine with encrypted credential storage",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override the configured log level",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    setup_admin_commands(subparsers)
    setup_account_commands(subparsers)
    setup_mail_commands(subparsers)

    return parser
