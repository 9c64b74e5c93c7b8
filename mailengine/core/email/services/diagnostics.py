"""Connection tester - checks server settings before an account is saved."""

import time
from typing import Any, Dict, Optional

from mailengine.core.email.imap.connection import IMAPConnection
from mailengine.core.email.smtp.client import SMTPClient
from mailengine.core.models.email import EncryptionMode
from mailengine.utils.config import TransportConfig
from mailengine.utils.errors import MailEngineError, format_error_message
from mailengine.utils.logging import get_logger

from .accounts import ServerCredentials

logger = get_logger(__name__)


class ConnectionTester:
    """Logs in to IMAP and SMTP with plaintext credentials and reports back.

    Nothing is stored and no mail is read or sent.
    """

    def __init__(
        self,
        transport_config: Optional[TransportConfig] = None,
        ehlo_hostname: str = "localhost",
    ):
        self.transport_config = transport_config
        self.ehlo_hostname = ehlo_hostname

    async def test_imap(self, credentials: ServerCredentials) -> Dict[str, Any]:
        """Greeting, LOGIN and LOGOUT."""
        start_time = time.time()
        mode = EncryptionMode.from_string(credentials.encryption)
        connection = IMAPConnection(
            credentials.host,
            credentials.port,
            use_tls=mode != EncryptionMode.NONE,
            transport_config=self.transport_config,
        )

        try:
            async with connection:
                await connection.login(credentials.username, credentials.password)
        except MailEngineError as e:
            return self._failure("imap", e, start_time)

        return self._success("imap", start_time)

    async def test_smtp(self, credentials: ServerCredentials) -> Dict[str, Any]:
        """Greeting, EHLO, STARTTLS where applicable, AUTH LOGIN and QUIT."""
        start_time = time.time()
        mode = EncryptionMode.from_string(credentials.encryption)
        client = SMTPClient(
            credentials.host,
            credentials.port,
            encryption=mode.value,
            transport_config=self.transport_config,
            ehlo_hostname=self.ehlo_hostname,
        )

        transport = client.make_transport()
        try:
            protocol = await client.open_session(
                transport, credentials.username, credentials.password
            )
            await client.quit_quietly(protocol)
        except MailEngineError as e:
            return self._failure("smtp", e, start_time)
        finally:
            await transport.close()

        result = self._success("smtp", start_time)
        result["starttls"] = client.use_starttls
        return result

    async def test_all(
        self, imap: ServerCredentials, smtp: ServerCredentials
    ) -> Dict[str, Any]:
        imap_result = await self.test_imap(imap)
        smtp_result = await self.test_smtp(smtp)
        return {
            "success": imap_result["success"] and smtp_result["success"],
            "imap": imap_result,
            "smtp": smtp_result,
        }

    @staticmethod
    def _success(protocol: str, start_time: float) -> Dict[str, Any]:
        duration = round(time.time() - start_time, 2)
        logger.info(f"{protocol.upper()} connection test passed in {duration}s")
        return {"success": True, "protocol": protocol, "duration_seconds": duration}

    @staticmethod
    def _failure(
        protocol: str, error: MailEngineError, start_time: float
    ) -> Dict[str, Any]:
        logger.warning(
            f"{protocol.upper()} connection test failed: {error.message}",
            extra={"category": error.category.value},
        )
        return {
            "success": False,
            "protocol": protocol,
            "duration_seconds": round(time.time() - start_time, 2),
            "error": format_error_message(error),
            "error_type": error.__class__.__name__,
            "category": error.category.value,
            "stage": error.details.get("stage"),
        }
