"""SMTP protocol implementation.

- SMTPProtocol: one method per SMTP state, each checking the reply code
- SMTPClient: a full submission session (connect, auth, envelope, data, quit)

Most callers should use MailSendService from the services layer, which also
decrypts credentials and stores the sent message.
"""

from .client import SMTPClient, build_message
from .protocol import SMTPProtocol, SMTPReply

__all__ = [
    "SMTPClient",
    "SMTPProtocol",
    "SMTPReply",
    "build_message",
]
