"""Hand-written IMAP/SMTP transport engine with encrypted credential storage."""

__version__ = "0.1.0"
