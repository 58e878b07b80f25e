"""
Tests for the vault crypto core.

Tests cover:
- Password stretching and subkey separation
- Password digest verification
- AES-GCM envelope format and failure modes
- Fingerprints, generated secrets and masking
"""
import base64
import hashlib

import pytest

from envguard.exceptions import DecryptionError
from envguard.vault.crypto import (
    KEY_LENGTH,
    NONCE_SIZE,
    decrypt,
    derive_key,
    derive_key_material,
    encrypt,
    fingerprint,
    generate_salt,
    generate_secret,
    hash_password,
    is_ciphertext,
    mask_secret,
    verify_password,
)

ITERATIONS = 1000


@pytest.fixture
def salt():
    return generate_salt()


@pytest.fixture
def key(salt):
    return derive_key("master-password", salt, ITERATIONS)


class TestKeyDerivation:

    def test_salt_is_random_hex(self):
        first, second = generate_salt(), generate_salt()
        assert first != second
        assert len(bytes.fromhex(first)) == 16

    def test_key_is_deterministic(self, salt):
        assert derive_key("pw-12345678", salt, ITERATIONS) == derive_key(
            "pw-12345678", salt, ITERATIONS,
        )

    def test_key_length(self, key):
        assert len(key) == KEY_LENGTH

    def test_salt_changes_key(self):
        assert derive_key("pw-12345678", generate_salt(), ITERATIONS) != derive_key(
            "pw-12345678", generate_salt(), ITERATIONS,
        )

    def test_digest_is_not_the_key(self, salt):
        """The persisted digest must never reveal the encryption key."""
        key, digest = derive_key_material("pw-12345678", salt, ITERATIONS)
        assert digest != key.hex()
        assert digest == hash_password("pw-12345678", salt, ITERATIONS)

    def test_verify_password(self, salt):
        digest = hash_password("pw-12345678", salt, ITERATIONS)
        assert verify_password("pw-12345678", digest, salt, ITERATIONS) is True
        assert verify_password("wrong-password", digest, salt, ITERATIONS) is False

    def test_verify_password_empty_digest(self, salt):
        assert verify_password("pw-12345678", "", salt, ITERATIONS) is False


class TestEnvelope:

    def test_roundtrip(self, key):
        assert decrypt(encrypt("abc123", key), key) == "abc123"

    def test_unicode_and_empty(self, key):
        for value in ("", "contraseña ✓", "x" * 4096):
            assert decrypt(encrypt(value, key), key) == value

    def test_envelope_format(self, key):
        blob = encrypt("abc123", key)
        nonce_hex, body = blob.split(":")
        assert len(bytes.fromhex(nonce_hex)) == NONCE_SIZE
        # ciphertext + 16-byte tag
        assert len(base64.b64decode(body)) == len("abc123") + 16

    def test_fresh_nonce_per_call(self, key):
        assert encrypt("same", key) != encrypt("same", key)

    def test_wrong_key(self, key, salt):
        other = derive_key("another-password", salt, ITERATIONS)
        with pytest.raises(DecryptionError):
            decrypt(encrypt("abc123", key), other)

    def test_tampered_ciphertext(self, key):
        nonce_hex, body = encrypt("abc123", key).split(":")
        raw = bytearray(base64.b64decode(body))
        raw[0] ^= 0x01
        tampered = nonce_hex + ":" + base64.b64encode(bytes(raw)).decode()
        with pytest.raises(DecryptionError):
            decrypt(tampered, key)

    @pytest.mark.parametrize("blob", [
        "no-separator",
        "a:b:c",
        "zz:AAAA",
        "00" * NONCE_SIZE + ":not base64!",
        "00" * 8 + ":" + base64.b64encode(b"x" * 32).decode(),
        "00" * NONCE_SIZE + ":" + base64.b64encode(b"short").decode(),
    ])
    def test_malformed_envelope(self, key, blob):
        with pytest.raises(DecryptionError):
            decrypt(blob, key)

    def test_is_ciphertext(self, key):
        assert is_ciphertext(encrypt("abc123", key)) is True
        assert is_ciphertext("plain value") is False
        assert is_ciphertext("[SECRET]") is False
        assert is_ciphertext(None) is False


class TestHelpers:

    def test_fingerprint(self):
        assert fingerprint("abc") == hashlib.sha256(b"abc").hexdigest()
        assert fingerprint(None) == fingerprint("")

    def test_generate_secret(self):
        value = generate_secret()
        assert len(value) == 64
        assert generate_secret() != value
        assert len(generate_secret(16)) == 32

    def test_mask_secret(self):
        assert mask_secret("abcdefgh") == "abcd****"
        assert mask_secret("abc") == "********"
        assert mask_secret(None) == "********"
