"""
Vault Crypto Core — Key derivation, envelope encryption and fingerprints.

Key derivation:
    PBKDF2-HMAC-SHA256(password, salt, iterations) → stretched seed
    HKDF(seed, "envguard-encryption") → symmetric key (memory only)
    HKDF(seed, "envguard-verifier")   → password digest (persisted)

Envelope format (text, safe for the store):
    <hex nonce 12B>:<base64 ciphertext + GCM tag 16B>

Security Note:
    Never log plaintext, ciphertext, passwords or key material.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import hmac
import base64
import binascii
import hashlib
import secrets
import logging
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionError

logger = logging.getLogger("envguard.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16
KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16
SEPARATOR = ":"

# Work factor for PBKDF2-HMAC-SHA256; persisted per installation so a
# later change of this default never breaks verification of old setups.
DEFAULT_KDF_ITERATIONS = 600_000
DEFAULT_SECRET_LENGTH = 32

_ENCRYPTION_CONTEXT = "envguard-encryption"
_VERIFIER_CONTEXT = "envguard-verifier"


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def generate_salt() -> str:
    """Generate a random per-installation salt, hex encoded."""
    return secrets.token_hex(SALT_SIZE)


def _salt_bytes(salt: str | bytes) -> bytes:
    if isinstance(salt, bytes):
        return salt
    return salt.encode("utf-8")


def stretch_password(
    password: str,
    salt: str | bytes,
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> bytes:
    """Run the slow, iterated key-stretching step over a password.

    Args:
        password: Master password as typed by the user.
        salt: Per-installation salt.
        iterations: PBKDF2 work factor.

    Returns:
        32-byte stretched seed. Never persisted.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=_salt_bytes(salt),
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def derive_subkey(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte key from a seed using HKDF-SHA256.

    Args:
        seed: Input key material (the stretched password).
        context: Context string for domain separation.

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # seed is already salted by PBKDF2
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def derive_key_material(
    password: str,
    salt: str | bytes,
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> tuple[bytes, str]:
    """Return ``(encryption_key, password_digest)`` from a single stretch."""
    seed = stretch_password(password, salt, iterations)
    key = derive_subkey(seed, _ENCRYPTION_CONTEXT)
    digest = derive_subkey(seed, _VERIFIER_CONTEXT).hex()
    return key, digest


def derive_key(
    password: str,
    salt: str | bytes,
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> bytes:
    """Derive the symmetric encryption key for a master password."""
    key, _ = derive_key_material(password, salt, iterations)
    return key


def hash_password(
    password: str,
    salt: str | bytes,
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> str:
    """Compute the persisted one-way digest of a master password."""
    _, digest = derive_key_material(password, salt, iterations)
    return digest


def verify_password(
    password: str,
    stored_digest: str,
    salt: str | bytes,
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> bool:
    """Recompute the password digest and compare in constant time.

    A wrong password yields ``False``; this never raises for a mismatch.
    """
    digest = hash_password(password, salt, iterations)
    return hmac.compare_digest(digest, stored_digest or "")


# ---------------------------------------------------------------------------
# Envelope encryption
# ---------------------------------------------------------------------------

def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt plaintext with AES-256-GCM under a fresh random nonce.

    Args:
        plaintext: Value to encrypt.
        key: 32-byte symmetric key from :func:`derive_key`.

    Returns:
        Envelope text ``<hex nonce>:<base64 ciphertext>``.
    """
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return nonce.hex() + SEPARATOR + base64.b64encode(ct).decode("ascii")


def _split_envelope(blob: str) -> tuple[bytes, bytes]:
    parts = blob.split(SEPARATOR) if isinstance(blob, str) else []
    if len(parts) != 2:
        raise DecryptionError("Invalid encrypted value format")
    try:
        nonce = bytes.fromhex(parts[0])
        ct = base64.b64decode(parts[1], validate=True)
    except (ValueError, binascii.Error) as err:
        raise DecryptionError(
            f"Invalid encrypted value encoding: {err}"
        ) from err
    if len(nonce) != NONCE_SIZE:
        raise DecryptionError(
            f"Invalid nonce size: {len(nonce)} bytes (expected {NONCE_SIZE})"
        )
    if len(ct) < TAG_SIZE:
        raise DecryptionError("Encrypted data too short")
    return nonce, ct


def decrypt(blob: str, key: bytes) -> str:
    """Decrypt an envelope back to plaintext.

    Raises:
        DecryptionError: If the envelope is malformed, the ciphertext was
            corrupted, or it was produced under a different key.
    """
    nonce, ct = _split_envelope(blob)
    try:
        plaintext = AESGCM(key).decrypt(nonce, ct, None)
    except InvalidTag as err:
        raise DecryptionError(
            "Failed to decrypt: wrong master key or corrupted value"
        ) from err
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as err:
        raise DecryptionError("Decrypted value is not valid UTF-8") from err


def is_ciphertext(blob: Optional[str]) -> bool:
    """Check whether a value is structurally an envelope (no key needed)."""
    if not blob:
        return False
    try:
        _split_envelope(blob)
    except DecryptionError:
        return False
    return True


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def fingerprint(value: Optional[str]) -> str:
    """SHA-256 hex digest of a text value (``None`` hashes as empty)."""
    return hashlib.sha256((value or "").encode("utf-8")).hexdigest()


def generate_secret(length: int = DEFAULT_SECRET_LENGTH) -> str:
    """Generate a high-entropy replacement value: ``length`` random bytes, hex."""
    return secrets.token_hex(length)


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Mask a value for display, keeping the first ``visible`` characters."""
    if not value or len(value) <= visible:
        return "*" * 8
    return value[:visible] + "*" * (len(value) - visible)
