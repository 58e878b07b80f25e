"""
KeySession — Master key material held in process memory for one session.

The symmetric key is derived from the master password on the first
successful verification and kept only on this object. It is never
persisted or logged; ``clear()`` drops it.

Security Note:
    Decrypted key bytes live in process memory for the session lifetime.
    A memory dump of the process could expose them; this is an accepted
    limitation of a local, password-unlocked store.
"""
import hmac
import asyncio
import logging
from typing import Callable, Optional
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..exceptions import AuthenticationError
from .crypto import DEFAULT_KDF_ITERATIONS, derive_key_material

logger = logging.getLogger("envguard.vault")

PasswordProvider = Callable[[], Optional[str]]


class KeySession:
    """Holds the derived master key with an explicit set/clear lifecycle.

    Every encrypt or decrypt step acquires the key through :meth:`key`,
    which holds the session lock for the duration of that single step, so
    :meth:`clear` can never race with an in-flight operation.
    """

    def __init__(
        self,
        salt: str,
        password_digest: str,
        iterations: int = DEFAULT_KDF_ITERATIONS,
        password_provider: Optional[PasswordProvider] = None,
    ):
        self._salt = salt
        self._digest = password_digest
        self._iterations = iterations
        self._provider = password_provider
        self._key: bytes | None = None
        self._lock = asyncio.Lock()
        # one provider prompt at a time
        self._unlocking = asyncio.Lock()

    def __repr__(self) -> str:
        state = "unlocked" if self.unlocked else "locked"
        return f"<KeySession [{state}]>"

    @property
    def unlocked(self) -> bool:
        return self._key is not None

    def _derive(self, password: str) -> bytes:
        key, digest = derive_key_material(
            password, self._salt, self._iterations,
        )
        if not hmac.compare_digest(digest, self._digest or ""):
            raise AuthenticationError(
                "Invalid master password", action="unlock",
            )
        return key

    async def unlock(self, password: str) -> None:
        """Verify the master password and keep the derived key.

        Repeated calls while already unlocked still verify the password,
        but leave the established key untouched.

        Raises:
            AuthenticationError: If the password does not match the digest.
        """
        # PBKDF2 is CPU bound; keep the event loop responsive
        key = await asyncio.to_thread(self._derive, password)
        async with self._lock:
            if self._key is None:
                self._key = key
                logger.info("Master key established for session")

    async def clear(self) -> None:
        """Drop the key; waits for any in-flight encrypt/decrypt step."""
        async with self._lock:
            if self._key is not None:
                logger.info("Master key cleared from session")
            self._key = None

    lock = clear

    async def ensure_unlocked(self) -> None:
        """Make sure a key is available, asking the provider if needed.

        Raises:
            AuthenticationError: If no key is established and none can be
                obtained (no provider, provider declined, or wrong password).
        """
        if self._key is not None:
            return
        async with self._unlocking:
            if self._key is not None:
                return
            password = None
            if self._provider is not None:
                # providers may block on a terminal prompt
                password = await asyncio.to_thread(self._provider)
            if not password:
                raise AuthenticationError(
                    "Master key not established; unlock the vault first",
                    action="unlock",
                )
            await self.unlock(password)

    @asynccontextmanager
    async def key(self) -> AsyncIterator[bytes]:
        """Scoped acquisition of the key for a single operation."""
        await self.ensure_unlocked()
        async with self._lock:
            if self._key is None:
                raise AuthenticationError(
                    "Master key was cleared", action="unlock",
                )
            yield self._key
