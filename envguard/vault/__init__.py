"""Vault — Master key session, encrypted variables and secret rotation.

Security Note (Threat Model):
    The derived master key is held in process memory while the vault is
    unlocked. A memory dump of the process could expose it, and with it
    every stored secret. This is an accepted limitation of a local,
    password-unlocked store; mitigation requires an OS keychain or HSM,
    which is out of scope.
"""

from .session import KeySession
from .store import SecretStore
from .rotation import RotationEngine
from .crypto import (
    encrypt,
    decrypt,
    derive_key,
    hash_password,
    verify_password,
    generate_salt,
    generate_secret,
)

__all__ = [
    "KeySession",
    "SecretStore",
    "RotationEngine",
    "encrypt",
    "decrypt",
    "derive_key",
    "hash_password",
    "verify_password",
    "generate_salt",
    "generate_secret",
]
