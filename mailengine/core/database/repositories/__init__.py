"""Repositories operating on a caller-supplied connection."""

from .account import AccountRepository
from .message import MessageRepository
from .thread import ThreadRepository

__all__ = ["AccountRepository", "MessageRepository", "ThreadRepository"]
