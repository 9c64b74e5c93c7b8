"""IMAP and SMTP clients, message parsing and mail services."""
