"""Tests for token encryption at rest.

AES-256-GCM with a random IV per call; stored as base64(IV || tag || ct).
"""

import base64

import pytest

from oauth_broker.core.config import WEAK_ENCRYPTION_KEYS
from oauth_broker.core.crypto import (
    IV_LENGTH,
    TAG_LENGTH,
    CipherConfigurationError,
    DecryptFailure,
    TokenCipher,
    generate_key,
)
from oauth_broker.core.errors import DecryptionError


class TestConstruction:
    """Key validation at construction time."""

    def test_generated_key_is_64_hex_chars(self):
        key = generate_key()
        assert len(key) == 64
        bytes.fromhex(key)

    @pytest.mark.parametrize("key", [None, ""])
    def test_missing_key_rejected(self, key):
        with pytest.raises(CipherConfigurationError, match="required"):
            TokenCipher(key)

    def test_wrong_length_rejected(self):
        with pytest.raises(CipherConfigurationError, match="64 hex"):
            TokenCipher("ab" * 16)

    def test_non_hex_rejected(self):
        with pytest.raises(CipherConfigurationError, match="64 hex"):
            TokenCipher("g" * 64)

    def test_weak_key_rejected_in_production(self):
        weak = next(iter(WEAK_ENCRYPTION_KEYS))
        with pytest.raises(CipherConfigurationError, match="weak"):
            TokenCipher(weak, production=True)

    def test_weak_key_allowed_outside_production(self):
        weak = next(iter(WEAK_ENCRYPTION_KEYS))
        TokenCipher(weak)


class TestEncryptDecrypt:
    def test_round_trip(self, cipher: TokenCipher):
        blob = cipher.encrypt("ya29.access-token")
        result = cipher.decrypt(blob)
        assert result.ok
        assert result.plaintext == "ya29.access-token"

    def test_round_trip_unicode(self, cipher: TokenCipher):
        assert cipher.decrypt_or_raise(cipher.encrypt("tökén-✓")) == "tökén-✓"

    def test_empty_string(self, cipher: TokenCipher):
        assert cipher.decrypt_or_raise(cipher.encrypt("")) == ""

    def test_fresh_iv_per_call(self, cipher: TokenCipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_blob_layout(self, cipher: TokenCipher):
        raw = base64.b64decode(cipher.encrypt("abcd"))
        assert len(raw) == IV_LENGTH + TAG_LENGTH + len("abcd")


class TestDecryptFailures:
    """Failures come back as DecryptResult, never as plaintext."""

    def test_tampered_ciphertext(self, cipher: TokenCipher):
        raw = bytearray(base64.b64decode(cipher.encrypt("secret-token")))
        raw[-1] ^= 0x01
        result = cipher.decrypt(base64.b64encode(bytes(raw)).decode())
        assert not result.ok
        assert result.plaintext is None
        assert result.failure is DecryptFailure.AUTHENTICATION_FAILED

    def test_tampered_tag(self, cipher: TokenCipher):
        raw = bytearray(base64.b64decode(cipher.encrypt("secret-token")))
        raw[IV_LENGTH] ^= 0x01
        result = cipher.decrypt(base64.b64encode(bytes(raw)).decode())
        assert result.failure is DecryptFailure.AUTHENTICATION_FAILED

    def test_different_key(self, cipher: TokenCipher):
        other = TokenCipher(generate_key())
        result = other.decrypt(cipher.encrypt("secret-token"))
        assert result.failure is DecryptFailure.AUTHENTICATION_FAILED

    def test_not_base64(self, cipher: TokenCipher):
        assert cipher.decrypt("not base64 at all!").failure is DecryptFailure.MALFORMED

    def test_too_short(self, cipher: TokenCipher):
        blob = base64.b64encode(b"\x00" * (IV_LENGTH + TAG_LENGTH - 1)).decode()
        assert cipher.decrypt(blob).failure is DecryptFailure.MALFORMED

    def test_decrypt_or_raise(self, cipher: TokenCipher):
        other = TokenCipher(generate_key())
        with pytest.raises(DecryptionError):
            other.decrypt_or_raise(cipher.encrypt("secret-token"))
