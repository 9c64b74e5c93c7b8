"""Encryption of stored mailbox passwords (AES-256-GCM).

Blob format: ``base64(iv) + ":" + base64(ciphertext || tag)``.

The master key is the SHA-256 digest of a server-held secret. When per-account
keys are enabled, each account gets an HKDF-SHA256 subkey derived from the
master key with the account id as context, so one account's blobs can be
re-wrapped without touching the others. Both modes share the blob format.
"""

import base64
import binascii
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from mailengine.utils.config import ConfigManager
from mailengine.utils.errors import CredentialError, MailEngineError
from mailengine.utils.logging import get_logger, log_event

logger = get_logger(__name__)

KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 12  # 96 bits for GCM
TAG_LENGTH = 16  # 128 bits authentication tag
SEPARATOR = ":"
HKDF_INFO_PREFIX = b"mailengine/credential/"


## Key Derivation


def derive_key(secret: str) -> bytes:
    """Hash a secret string to exactly 32 bytes."""
    if not secret:
        raise CredentialError("Encryption secret cannot be empty")

    digest = hashes.Hash(hashes.SHA256())
    digest.update(secret.encode("utf-8"))
    return digest.finalize()


def derive_account_key(master_key: bytes, account_id: str) -> bytes:
    """Derive a per-account subkey from the master key."""
    if not account_id:
        raise CredentialError("Account id is required for per-account keys")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,
        info=HKDF_INFO_PREFIX + str(account_id).encode("utf-8"),
    )
    return hkdf.derive(master_key)


## Encrypt / Decrypt


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise CredentialError(
            "Encryption key must be 32 bytes", details={"key_length": len(key or b"")}
        )


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt a password into a blob.

    Raises:
        CredentialError: If the password is empty or the key is unusable
    """
    if not plaintext:
        raise CredentialError("Password cannot be empty")
    _check_key(key)

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(bytes(key)).encrypt(iv, plaintext.encode("utf-8"), None)

    iv_b64 = base64.b64encode(iv).decode("ascii")
    sealed_b64 = base64.b64encode(sealed).decode("ascii")
    return f"{iv_b64}{SEPARATOR}{sealed_b64}"


def decrypt(blob: str, key: bytes) -> str:
    """Decrypt a blob produced by :func:`encrypt`.

    Raises:
        CredentialError: If the blob is malformed or fails authentication
    """
    if not blob:
        raise CredentialError("Encrypted password cannot be empty")
    _check_key(key)

    parts = blob.split(SEPARATOR)
    if len(parts) != 2:
        raise CredentialError(
            "Invalid encrypted password format",
            details={"segments": len(parts)},
        )

    try:
        iv = base64.b64decode(parts[0], validate=True)
        sealed = base64.b64decode(parts[1], validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialError("Encrypted password is not valid base64") from e

    if len(iv) != IV_LENGTH or len(sealed) < TAG_LENGTH:
        raise CredentialError(
            "Encrypted password has invalid lengths",
            details={"iv_length": len(iv), "sealed_length": len(sealed)},
        )

    try:
        plaintext = AESGCM(bytes(key)).decrypt(iv, sealed, None)
    except InvalidTag as e:
        raise CredentialError(
            "Failed to decrypt password - may be corrupted or key changed"
        ) from e

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CredentialError("Decrypted password is not valid UTF-8") from e


## Cipher


class CredentialCipher:
    """Encrypts and decrypts mailbox passwords with a server-held secret."""

    def __init__(self, secret: str, per_account_keys: bool = True):
        self._master_key = derive_key(secret)
        self.per_account_keys = per_account_keys

    @classmethod
    def from_config(
        cls, config_manager: Optional[ConfigManager] = None
    ) -> "CredentialCipher":
        """Build a cipher from the configured environment secret."""
        config_manager = config_manager or ConfigManager()
        secret = config_manager.get_secret()
        return cls(
            secret,
            per_account_keys=config_manager.config.credentials.per_account_keys,
        )

    def key_for(self, account_id: Optional[str] = None) -> bytes:
        """Return the key used for an account's credentials."""
        if self.per_account_keys:
            if account_id is None:
                raise CredentialError(
                    "Account id is required when per-account keys are enabled"
                )
            return derive_account_key(self._master_key, account_id)
        return self._master_key

    def encrypt(self, plaintext: str, account_id: Optional[str] = None) -> str:
        return encrypt(plaintext, self.key_for(account_id))

    def decrypt(self, blob: str, account_id: Optional[str] = None) -> str:
        return decrypt(blob, self.key_for(account_id))


def reencrypt(
    blob: str,
    source: CredentialCipher,
    target: CredentialCipher,
    account_id: Optional[str] = None,
) -> str:
    """Re-wrap a blob under a different cipher (secret rotation or key mode change)."""
    plaintext = source.decrypt(blob, account_id)
    new_blob = target.encrypt(plaintext, account_id)
    log_event("credential_rewrapped", {"account_id": account_id})
    return new_blob


def validate_secret(
    secret: Optional[str], min_length: int = 32
) -> Dict[str, Any]:
    """Check that a secret is configured and round-trips.

    Returns:
        Dictionary with ``configured``, ``working`` and optional ``error``
    """
    if not secret:
        return {
            "configured": False,
            "working": False,
            "error": "Encryption secret not set in environment",
        }

    if len(secret) < min_length:
        return {
            "configured": True,
            "working": False,
            "error": f"Encryption secret too short (minimum {min_length} characters)",
        }

    probe = "probe-password-123!@#"
    try:
        key = derive_key(secret)
        working = decrypt(encrypt(probe, key), key) == probe
    except MailEngineError as e:
        logger.error(f"Encryption self-test failed: {e.message}")
        return {"configured": True, "working": False, "error": e.message}

    return {
        "configured": True,
        "working": working,
        "error": None if working else "Encryption self-test failed",
    }
