from .email import (
    ConnectionStatus,
    Direction,
    EmailAccount,
    EmailMessage,
    EmailThread,
    EncryptionMode,
    OutgoingEmail,
    SendResult,
    ServerSettings,
    SyncSummary,
)

__all__ = [
    "ConnectionStatus",
    "Direction",
    "EmailAccount",
    "EmailMessage",
    "EmailThread",
    "EncryptionMode",
    "OutgoingEmail",
    "SendResult",
    "ServerSettings",
    "SyncSummary",
]
