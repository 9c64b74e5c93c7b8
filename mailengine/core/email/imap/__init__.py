"""IMAP package - hand-written IMAP4rev1 client."""

from .client import FetchResult, IMAPClient
from .connection import IMAPConnection

__all__ = ["IMAPClient", "IMAPConnection", "FetchResult"]
