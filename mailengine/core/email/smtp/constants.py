"""SMTP constants and configuration values."""


class SMTPResponse:
    """Standard SMTP response codes."""

    # 2xx Success
    SERVICE_READY = 220  # Greeting, and go-ahead for STARTTLS
    CLOSING = 221  # Service closing transmission channel
    AUTH_SUCCESS = 235  # Authentication succeeded
    OK = 250  # Requested mail action okay, completed

    # 3xx Intermediate
    AUTH_CONTINUE = 334  # Server challenge during AUTH
    START_MAIL = 354  # Start mail input; end with <CRLF>.<CRLF>

    # 5xx Permanent Failure
    AUTH_FAILED = 535  # Authentication credentials invalid
    MAILBOX_UNAVAILABLE = 550  # Mailbox unavailable


class Stages:
    """Names of the SMTP states, used in ProtocolError.stage."""

    GREETING = "greeting"
    EHLO = "ehlo"
    STARTTLS = "starttls"
    AUTH = "auth"
    AUTH_USER = "auth_user"
    AUTH_PASS = "auth_pass"
    MAIL_FROM = "mail_from"
    RCPT_TO = "rcpt_to"
    DATA = "data"
    MESSAGE = "message"
    QUIT = "quit"


class Timeouts:
    """Timeout values for SMTP operations (in seconds)."""

    SMTP_QUIT = 5.0  # QUIT is best-effort after a successful send


class SMTPPorts:
    """Standard SMTP port numbers."""

    # Submission ports (client to server)
    SUBMISSION = 587  # STARTTLS (recommended)
    SUBMISSION_SSL = 465  # Implicit TLS/SSL

    # Legacy/relay ports
    SMTP = 25  # Plain SMTP (server-to-server)

    @classmethod
    def requires_starttls(cls, port: int, encryption: str) -> bool:
        """Check if the session upgrades with STARTTLS.

        Args:
            port: SMTP port number
            encryption: Account encryption mode (ssl, tls or none)

        Returns:
            True only for mode ``tls`` on the submission port
        """
        return encryption == "tls" and port == cls.SUBMISSION

    @classmethod
    def is_implicit_ssl(cls, port: int, encryption: str) -> bool:
        """Check if TLS starts at connect time.

        Args:
            port: SMTP port number
            encryption: Account encryption mode (ssl, tls or none)

        Returns:
            True for mode ``ssl``, port 465, or ``tls`` off the submission port
        """
        if cls.requires_starttls(port, encryption):
            return False
        return encryption in ("ssl", "tls") or port == cls.SUBMISSION_SSL
