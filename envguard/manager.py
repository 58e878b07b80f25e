"""
EnvGuard — Wires the local store, key session, audit trail and services.

Usage::

    config = load_config()
    async with await EnvGuard.open(config, password_provider=prompt) as guard:
        env = await guard.environments.get("prod")
        await guard.store.set_variable(env.id, "API_KEY", "abc123", is_secret=True)

One ``clock`` is shared by every component so tests can control "now".
"""
import logging
from typing import Callable, Optional
from datetime import datetime

from .audit import AuditChain
from .config import EnvGuardConfig
from .environments import EnvironmentService
from .models import utcnow
from .storage.database import Database
from .vault.rotation import RotationEngine
from .vault.session import KeySession, PasswordProvider
from .vault.store import SecretStore

logger = logging.getLogger("envguard")


class EnvGuard:

    def __init__(
        self,
        config: EnvGuardConfig,
        db: Database,
        *,
        password_provider: Optional[PasswordProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.db = db
        self.clock = clock or utcnow
        self.session = KeySession(
            config.salt,
            config.password_digest,
            config.kdf_iterations,
            password_provider=password_provider,
        )
        self.audit = AuditChain(db, clock=self.clock)
        self.store = SecretStore(db, self.session, self.audit, clock=self.clock)
        self.rotation = RotationEngine(
            db,
            self.store,
            self.audit,
            default_period_days=config.rotation_defaults.period_days,
            clock=self.clock,
        )
        self.environments = EnvironmentService(db, self.audit, clock=self.clock)

    def __repr__(self) -> str:
        return f"<EnvGuard project={self.config.project_name} db={self.db.path}>"

    @classmethod
    async def open(
        cls,
        config: EnvGuardConfig,
        *,
        password_provider: Optional[PasswordProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "EnvGuard":
        """Open (creating if needed) the store under ``config.data_dir``."""
        db = await Database(config.database_path).connect()
        logger.debug("EnvGuard opened for project %s", config.project_name)
        return cls(config, db, password_provider=password_provider, clock=clock)

    async def unlock(self, password: str) -> None:
        await self.session.unlock(password)

    async def purge_audit(self, retention_days: Optional[int] = None) -> int:
        """Drop audit entries past the retention window (configured by default)."""
        if retention_days is None:
            retention_days = self.config.audit_retention_days
        return await self.audit.purge(retention_days)

    async def close(self) -> None:
        await self.session.clear()
        await self.db.close()

    async def __aenter__(self) -> "EnvGuard":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()
