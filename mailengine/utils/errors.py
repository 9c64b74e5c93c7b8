"""Error taxonomy and centralized error handling for mailengine."""

from enum import Enum
from typing import Any, Dict, Optional

from mailengine.utils.logging import get_logger

_logger = None


def _get_logger():
    """Get logger with lazy initialisation."""
    global _logger
    if _logger is None:
        _logger = get_logger(__name__)
    return _logger


## Error Categories


class ErrorCategory(Enum):
    """Where in the sync/send pipeline an error came from."""

    CREDENTIAL = "credential"
    NETWORK = "network"
    AUTHENTICATION = "authentication"
    PROTOCOL = "protocol"
    PARSE = "parse"
    DATABASE = "database"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


## Custom Exceptions


class MailEngineError(Exception):
    """Base exception for all mailengine errors.

    ``fatal`` errors abort the whole sync/send invocation. Non-fatal errors
    are recorded against a single message and the loop carries on.
    """

    category = ErrorCategory.UNKNOWN
    user_message = "An error occurred"
    fatal = True

    def __init__(
        self, message: str | None = None, details: Dict[str, Any] | None = None
    ):
        """Initialise MailEngineError with optional message and details."""
        self.message = message or self.user_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error details to a dictionary."""
        return {
            "error_type": self.__class__.__name__,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "fatal": self.fatal,
            "details": self.details,
        }


## Credential Errors


class CredentialError(MailEngineError):
    """Malformed or tamper-evident-failing encrypted credential blob."""

    category = ErrorCategory.CREDENTIAL
    user_message = "Stored credentials could not be decrypted"


## Network Errors


class MailConnectionError(MailEngineError):
    """TCP connect failure, dropped connection or unexpected greeting."""

    category = ErrorCategory.NETWORK
    user_message = "Failed to connect to the mail server"


class NetworkTimeoutError(MailConnectionError):
    """The server did not answer within the read deadline."""

    user_message = "The connection timed out"


## Authentication Errors


class AuthenticationError(MailEngineError):
    """LOGIN or AUTH rejected by the server."""

    category = ErrorCategory.AUTHENTICATION
    user_message = "Authentication failed, check your credentials"


## Protocol Errors


class ProtocolError(MailEngineError):
    """A protocol stage answered with an unexpected response."""

    category = ErrorCategory.PROTOCOL
    user_message = "The mail server rejected the request"

    def __init__(
        self,
        message: str | None = None,
        details: Dict[str, Any] | None = None,
        stage: Optional[str] = None,
    ):
        self.stage = stage
        details = dict(details or {})
        if stage:
            details.setdefault("stage", stage)
        super().__init__(message, details)


## Soft (per-message) Errors


class ParseError(MailEngineError):
    """A single message could not be parsed."""

    category = ErrorCategory.PARSE
    user_message = "A message could not be parsed"
    fatal = False


class PersistError(MailEngineError):
    """A single message could not be written to the store."""

    category = ErrorCategory.DATABASE
    user_message = "A message could not be saved"
    fatal = False


## Database Errors


class DatabaseError(MailEngineError):
    """The local store failed."""

    category = ErrorCategory.DATABASE
    user_message = "A database error occurred"


class DatabaseConnectionError(DatabaseError):
    """The store file could not be opened or its schema created."""

    user_message = "Failed to connect to the database"


class DatabaseTransactionError(DatabaseError):
    """A store transaction failed to open or exceeded its time limit."""

    user_message = "A database transaction error occurred"


class AccountNotFoundError(DatabaseError):
    """No account row matches the requested id."""

    user_message = "Email account not found"


## Configuration Errors


class ConfigurationError(MailEngineError):
    """Settings are missing, malformed or unusable."""

    category = ErrorCategory.CONFIGURATION
    user_message = "A configuration error occurred"


class MissingConfigError(ConfigurationError):
    """A required setting (such as the encryption secret) is not set."""

    user_message = "Missing configuration settings"


class InvalidConfigError(ConfigurationError):
    """The config file or a setting in it does not validate."""

    user_message = "Invalid configuration settings"


class FileSystemError(ConfigurationError):
    """An application directory or file cannot be created or written."""

    user_message = "A file system error occurred"


class ValidationError(MailEngineError):
    """Caller input (addresses, ids, settings) was rejected before any I/O."""

    category = ErrorCategory.CONFIGURATION
    user_message = "Invalid input"


## Error Handler


class ErrorHandler:
    """Centralized error handling and logging."""

    @staticmethod
    def handle(
        error: Exception, context: str = "", log_traceback: bool = True
    ) -> Dict[str, Any]:
        """Log an error and return a structured failure description."""
        if isinstance(error, MailEngineError):
            result = error.to_dict()
            extra = {"category": error.category.value, "details": error.details}
        else:
            result = {
                "error_type": "UnknownError",
                "category": ErrorCategory.UNKNOWN.value,
                "message": str(error),
                "user_message": MailEngineError.user_message,
                "fatal": True,
                "details": {"context": context},
            }
            extra = {"category": ErrorCategory.UNKNOWN.value}

        _get_logger().error(
            f"{context}: {result['message']}",
            exc_info=error if log_traceback else None,
            extra=extra,
        )
        return result


def format_error_message(error: Exception) -> str:
    """Format an error message for display."""
    if isinstance(error, MailEngineError):
        return error.message
    return "Unexpected error, see the log for details"
