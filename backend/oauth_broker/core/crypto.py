"""Token encryption at rest.

AES-256-GCM with a fresh 16-byte IV per call. Stored format:

    base64(IV[16] || authTag[16] || ciphertext)

Decryption reports failures through DecryptResult instead of raising, so a
tampered or foreign-key row is an explicit outcome at the call site.
"""

import base64
import binascii
import logging
import secrets
from dataclasses import dataclass
from enum import Enum

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from oauth_broker.core.config import WEAK_ENCRYPTION_KEYS
from oauth_broker.core.errors import DecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_HEX_LENGTH = 64


class CipherConfigurationError(ValueError):
    """Raised at construction when the encryption key is unusable."""


class DecryptFailure(Enum):
    """Why a blob could not be decrypted."""

    MALFORMED = "malformed"
    AUTHENTICATION_FAILED = "authentication_failed"


@dataclass(frozen=True)
class DecryptResult:
    """Outcome of TokenCipher.decrypt().

    Attributes:
        plaintext: Decrypted text when successful, None otherwise.
        failure: Failure reason when unsuccessful, None otherwise.
    """

    plaintext: str | None = None
    failure: DecryptFailure | None = None

    @property
    def ok(self) -> bool:
        """True when the blob authenticated and decrypted."""
        return self.failure is None


def generate_key() -> str:
    """Generate a fresh 256-bit key as 64 hex characters."""
    return secrets.token_hex(32)


class TokenCipher:
    """Symmetric authenticated encryption for OAuth tokens.

    Stateless apart from the immutable key, so one instance can be shared
    across concurrent callers.

    Args:
        key: 64 hex characters (32 bytes).
        production: Reject known example keys when True.

    Raises:
        CipherConfigurationError: If the key is missing, not 256 bits, not
            hex, or a known example key in production.
    """

    def __init__(self, key: str | None, *, production: bool = False) -> None:
        if not key:
            raise CipherConfigurationError("ENCRYPTION_KEY is required")
        if len(key) != KEY_HEX_LENGTH:
            raise CipherConfigurationError(
                "ENCRYPTION_KEY must be 64 hex characters (32 bytes)"
            )
        if production and key.lower() in WEAK_ENCRYPTION_KEYS:
            raise CipherConfigurationError(
                "Cannot use example or weak encryption keys in production. "
                "Generate a key with: openssl rand -hex 32"
            )
        try:
            key_bytes = bytes.fromhex(key)
        except ValueError as exc:
            raise CipherConfigurationError(
                "ENCRYPTION_KEY must be 64 hex characters (32 bytes)"
            ) from exc
        self._aesgcm = AESGCM(key_bytes)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt text with a fresh random IV.

        Args:
            plaintext: Token to protect.

        Returns:
            base64(IV || authTag || ciphertext).
        """
        iv = secrets.token_bytes(IV_LENGTH)
        # AESGCM appends the tag to the ciphertext
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> DecryptResult:
        """Verify and decrypt a stored blob.

        Args:
            blob: Value produced by encrypt().

        Returns:
            DecryptResult with plaintext on success, or the failure reason.
        """
        try:
            combined = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, ValueError):
            return DecryptResult(failure=DecryptFailure.MALFORMED)

        if len(combined) < IV_LENGTH + TAG_LENGTH:
            return DecryptResult(failure=DecryptFailure.MALFORMED)

        iv = combined[:IV_LENGTH]
        tag = combined[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
        ciphertext = combined[IV_LENGTH + TAG_LENGTH :]

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            return DecryptResult(failure=DecryptFailure.AUTHENTICATION_FAILED)

        try:
            return DecryptResult(plaintext=plaintext.decode("utf-8"))
        except UnicodeDecodeError:
            return DecryptResult(failure=DecryptFailure.MALFORMED)

    def decrypt_or_raise(self, blob: str) -> str:
        """Decrypt a blob, raising on any failure.

        Raises:
            DecryptionError: If the blob is malformed or fails authentication.
        """
        result = self.decrypt(blob)
        if result.plaintext is None:
            logger.warning(
                "Token decryption failed",
                extra={"reason": result.failure.value if result.failure else None},
            )
            raise DecryptionError()
        return result.plaintext
