"""Main CLI entry point."""

import argparse
import asyncio
from pathlib import Path
from typing import Any, Dict

from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from mailengine.core.database import init_db
from mailengine.core.email.services import (
    AccountService,
    ConnectionTester,
    ServerCredentials,
    run_send,
    run_sync,
)
from mailengine.core.models.email import OutgoingEmail
from mailengine.security.credential_cipher import validate_secret
from mailengine.utils.config import ConfigManager
from mailengine.utils.errors import ErrorHandler, MailEngineError, format_error_message
from mailengine.utils.logging import get_logger, init_logging

from .cli_parser import setup_argument_parser

logger = get_logger(__name__)


## Helpers


def _credentials(args: argparse.Namespace, protocol: str, password: str) -> ServerCredentials:
    return ServerCredentials(
        host=getattr(args, f"{protocol}_host"),
        port=getattr(args, f"{protocol}_port"),
        username=getattr(args, f"{protocol}_username") or args.email,
        password=password,
        encryption=getattr(args, f"{protocol}_encryption"),
    )


def _prompt_credentials(args: argparse.Namespace):
    imap_password = Prompt.ask("IMAP password", password=True)
    smtp_password = Prompt.ask(
        "SMTP password (blank = same as IMAP)", password=True, default=""
    )
    return (
        _credentials(args, "imap", imap_password),
        _credentials(args, "smtp", smtp_password or imap_password),
    )


def _print_result(console: Console, title: str, result: Dict[str, Any]) -> None:
    table = Table(title=title, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    for key, value in result.items():
        if key in ("details", "errors") and not value:
            continue
        table.add_row(key, str(value))
    console.print(table)


def _print_connection_results(console: Console, results: Dict[str, Any]) -> None:
    for protocol in ("imap", "smtp"):
        result = results[protocol]
        if result["success"]:
            console.print(
                f"[green]{protocol.upper()} OK[/green] ({result['duration_seconds']}s)"
            )
        else:
            stage = f" at {result['stage']}" if result.get("stage") else ""
            console.print(f"[red]{protocol.upper()} failed{stage}: {result['error']}[/red]")


## Commands


async def cmd_init_db(args: argparse.Namespace, console: Console) -> bool:
    manager = await init_db()
    try:
        healthy = await manager.health_check()
    finally:
        await manager.close()

    if not healthy:
        console.print(f"[red]Database at {manager.db_path} is not responding[/red]")
        return False
    console.print(f"[green]Database ready at {manager.db_path}[/green]")
    return True


async def cmd_check_key(args: argparse.Namespace, console: Console) -> bool:
    config_manager = ConfigManager()
    try:
        secret = config_manager.get_secret()
    except MailEngineError:
        secret = None

    status = validate_secret(secret, config_manager.config.credentials.min_secret_length)
    _print_result(console, "Encryption secret", status)
    return status["working"]


async def cmd_test_connection(args: argparse.Namespace, console: Console) -> bool:
    imap, smtp = _prompt_credentials(args)
    config = ConfigManager().config
    tester = ConnectionTester(config.transport, config.sync.ehlo_hostname)
    results = await tester.test_all(imap, smtp)
    _print_connection_results(console, results)
    return results["success"]


async def cmd_add_account(args: argparse.Namespace, console: Console) -> bool:
    imap, smtp = _prompt_credentials(args)
    config = ConfigManager().config

    if not args.skip_test:
        tester = ConnectionTester(config.transport, config.sync.ehlo_hostname)
        results = await tester.test_all(imap, smtp)
        _print_connection_results(console, results)
        if not results["success"]:
            console.print("[yellow]Account not saved (use --skip-test to force)[/yellow]")
            return False

    manager = await init_db()
    try:
        account = await AccountService(manager).save_account(
            user_id=args.user_id,
            email_address=args.email,
            imap=imap,
            smtp=smtp,
            display_name=args.display_name,
        )
    finally:
        await manager.close()

    console.print(f"[green]Account saved:[/green] {account.id}")
    return True


async def cmd_sync(args: argparse.Namespace, console: Console) -> bool:
    result = await run_sync(args.account_id)
    _print_result(console, "Sync", result)
    return result["success"]


async def cmd_send(args: argparse.Namespace, console: Console) -> bool:
    email = OutgoingEmail(
        to=args.to,
        cc=args.cc,
        bcc=args.bcc,
        subject=args.subject,
        body=args.body,
        html=args.html,
        in_reply_to=args.in_reply_to,
        references=[args.in_reply_to] if args.in_reply_to else [],
    )
    result = await run_send(args.account_id, email)
    _print_result(console, "Send", result)
    return result["success"]


COMMANDS = {
    "init-db": cmd_init_db,
    "check-key": cmd_check_key,
    "test-connection": cmd_test_connection,
    "add-account": cmd_add_account,
    "sync": cmd_sync,
    "send": cmd_send,
}


async def dispatch_command(args: argparse.Namespace, console: Console) -> int:
    """Dispatch a parsed command.

    Returns:
        Exit code (0 = success, 1 = error)
    """
    handler = COMMANDS[args.command]

    try:
        success = await handler(args, console)
        return 0 if success else 1

    except MailEngineError as e:
        ErrorHandler.handle(e, f"Command {args.command} failed", log_traceback=False)
        console.print(f"[red]Error: {format_error_message(e)}[/red]")
        return 1


def main() -> int:
    """Main CLI entry point.

    Returns:
        Exit code
    """
    console = Console()
    parser = setup_argument_parser()
    args = parser.parse_args()

    try:
        config = ConfigManager().config
        init_logging(
            args.log_level or config.logging.log_level,
            log_to_file=config.logging.log_to_file,
            log_dir=Path(config.logging.log_dir),
            force=True,
        )
    except MailEngineError as e:
        console.print(f"[red]Configuration error: {format_error_message(e)}[/red]")
        return 1

    try:
        return asyncio.run(dispatch_command(args, console))

    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130  # Standard SIGINT exit code


if __name__ == "__main__":
    exit(main())
