"""Mail services: sync, send, account storage and connection checks."""

from .accounts import AccountService, ServerCredentials
from .diagnostics import ConnectionTester
from .persist import PersistOutcome, ThreadPersister
from .send import MailSendService, run_send
from .sync import MailSyncService, run_sync

__all__ = [
    "AccountService",
    "ConnectionTester",
    "MailSendService",
    "MailSyncService",
    "PersistOutcome",
    "ServerCredentials",
    "ThreadPersister",
    "run_send",
    "run_sync",
]
