"""
SecretStore — Variable lifecycle with field-level encryption and auditing.

Provides the public API for variables within an environment:
- ``set_variable(env_id, key, value, ...)`` — create or update (upsert)
- ``get_variable(env_id, key, reveal=...)`` — read, decrypting on request
- ``list_variables(env_id, ...)`` — masked listing with tag/key filters
- ``edit_variable(env_id, key, ...)`` — partial update
- ``delete_variable(env_id, key)`` — remove and record a fingerprint

Every mutation writes the variable row and exactly one audit entry in the
same transaction. Encryption, the only step that can fail on bad key
material, always runs before the transaction opens, so a failure never
leaves a half-applied write behind.

Security Note:
    Never log plaintext or ciphertext values. Only log keys (names),
    environment ids and operations.
"""
import uuid
import asyncio
import logging
import weakref
from typing import Any, Optional
from datetime import timedelta
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..auth import Actor, SYSTEM
from ..audit import AuditChain
from ..exceptions import DecryptionError, NotFoundError, ValidationError
from ..models import (
    AuditAction,
    AuditEntry,
    Environment,
    Variable,
    VariableChange,
    VariableView,
    utcnow,
)
from ..storage.database import Database
from ..storage.repositories import EnvironmentRepository, VariableRepository
from .crypto import decrypt, encrypt, fingerprint, mask_secret
from .session import KeySession

logger = logging.getLogger("envguard.vault")

ENTITY_VARIABLE = "variable"


def validate_rotation_days(value: Any, *, entity_id: Optional[str] = None) -> int:
    """Rotation periods are positive whole days."""
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(
            f"Rotation period must be a positive number of days, got {value!r}",
            entity_id=entity_id,
            action="set",
        )
    return value


class SecretStore:
    """Variables of an environment, encrypted at rest when secret.

    A per-variable lock serializes read-modify-write sequences on the same
    ``(environment, key)`` pair.
    """

    def __init__(
        self,
        db: Database,
        session: KeySession,
        audit: AuditChain,
        clock=utcnow,
    ):
        self._db = db
        self._session = session
        self._audit = audit
        self._clock = clock
        self._environments = EnvironmentRepository()
        self._variables = VariableRepository()
        # entries vanish once no task holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def variable_lock(self, env_id: str, key: str) -> AsyncIterator[None]:
        """Hold the mutual-exclusion lock of one variable."""
        lock = self._locks.setdefault((env_id, key), asyncio.Lock())
        async with lock:
            yield

    async def ensure_unlocked(self) -> None:
        await self._session.ensure_unlocked()

    async def seal(self, plaintext: str) -> str:
        """Encrypt a value with the session's master key."""
        async with self._session.key() as master_key:
            return encrypt(plaintext, master_key)

    async def unseal(self, ciphertext: str, *, entity_id: Optional[str] = None) -> str:
        """Decrypt a stored value with the session's master key."""
        async with self._session.key() as master_key:
            try:
                return decrypt(ciphertext, master_key)
            except DecryptionError as err:
                raise DecryptionError(
                    err.message, entity_id=entity_id, action="decrypt",
                ) from err

    async def environment(self, env_id: str, action: str = "read") -> Environment:
        env = await self._environments.get_by_id(self._db, env_id)
        if env is None:
            raise NotFoundError(
                "Environment not found", entity_id=env_id, action=action,
            )
        return env

    async def _require(self, env_id: str, key: str, action: str) -> Variable:
        variable = await self._variables.get(self._db, env_id, key)
        if variable is None:
            raise NotFoundError(
                f"Variable '{key}' not found", entity_id=env_id, action=action,
            )
        return variable

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def set_variable(
        self,
        env_id: str,
        key: str,
        value: str,
        *,
        is_secret: bool = False,
        tags: Optional[list[str]] = None,
        description: Optional[str] = None,
        rotation_days: Optional[int] = None,
        actor: Optional[Actor] = None,
    ) -> Variable:
        """Create or update a variable.

        Args:
            env_id: Owning environment id.
            key: Variable name, unique within the environment.
            value: Plaintext value; encrypted before storage when secret.
            is_secret: Encrypt at rest.
            tags: Replaces existing tags when given.
            description: Replaces the existing description when given.
            rotation_days: Enables scheduled rotation with this period.
            actor: Acting user recorded in the audit trail.

        Returns:
            The stored variable (``value`` as persisted).

        Raises:
            NotFoundError: Unknown environment.
            ValidationError: Empty key, missing value, bad rotation period.
            AuthenticationError: Secret requested but no valid master key.
        """
        actor = actor or SYSTEM
        actor.require_write("set", entity_id=env_id)
        if not key or not key.strip():
            raise ValidationError("Variable key is required", entity_id=env_id, action="set")
        if value is None:
            raise ValidationError(
                f"Value for '{key}' is required", entity_id=env_id, action="set",
            )
        if rotation_days is not None:
            validate_rotation_days(rotation_days, entity_id=env_id)
            if not is_secret:
                raise ValidationError(
                    "Rotation is only available for secret variables",
                    entity_id=env_id,
                    action="set",
                )
        env = await self.environment(env_id, "set")

        async with self.variable_lock(env.id, key):
            stored = await self.seal(value) if is_secret else value
            now = self._clock()
            async with self._db.transaction() as tx:
                existing = await self._variables.get(tx, env.id, key)
                if existing is None:
                    variable = Variable(
                        id=str(uuid.uuid4()),
                        environment_id=env.id,
                        key=key,
                        value=stored,
                        is_secret=is_secret,
                        encrypted=is_secret,
                        tags=tags or [],
                        description=description or "",
                        created_at=now,
                        updated_at=now,
                    )
                    if rotation_days is not None:
                        variable.rotation_enabled = True
                        variable.rotation_period_days = rotation_days
                        variable.next_rotation = now + timedelta(days=rotation_days)
                    await self._variables.insert(tx, variable)
                    action, old_value = AuditAction.CREATE, None
                else:
                    changes: dict[str, Any] = {
                        "value": stored,
                        "is_secret": is_secret,
                        "encrypted": is_secret,
                        "updated_at": now,
                    }
                    if tags is not None:
                        changes["tags"] = tags
                    if description is not None:
                        changes["description"] = description
                    if rotation_days is not None:
                        changes.update(
                            rotation_enabled=True,
                            rotation_period_days=rotation_days,
                            next_rotation=now + timedelta(days=rotation_days),
                        )
                    elif not is_secret:
                        changes.update(
                            rotation_enabled=False,
                            rotation_period_days=None,
                            next_rotation=None,
                        )
                    variable = existing.model_copy(update=changes)
                    await self._variables.update(tx, variable)
                    action, old_value = AuditAction.UPDATE, existing.value

                await self._audit.append(
                    tx,
                    AuditEntry(
                        action=action,
                        entity_type=ENTITY_VARIABLE,
                        entity_id=variable.id,
                        old_value=old_value,
                        new_value=stored,
                        details=VariableChange(
                            key=key, environment=env.name, is_secret=is_secret,
                        ),
                    ),
                    actor,
                )

        logger.info(
            "Variable %s: env=%s key=%s secret=%s",
            action.value, env.name, key, is_secret,
        )
        return variable

    async def get_variable(
        self,
        env_id: str,
        key: str,
        *,
        reveal: bool = False,
    ) -> Variable:
        """Return a variable; secrets are decrypted only when ``reveal`` is set.

        Raises:
            NotFoundError: Unknown environment or variable.
            AuthenticationError: Reveal requested but no key can be obtained.
            DecryptionError: Stored ciphertext is malformed or under another key.
        """
        await self.environment(env_id, "get")
        variable = await self._require(env_id, key, "get")
        if reveal and variable.encrypted:
            plaintext = await self.unseal(variable.value, entity_id=variable.id)
            return variable.model_copy(update={"value": plaintext})
        return variable

    async def list_variables(
        self,
        env_id: str,
        *,
        tags: Optional[list[str]] = None,
        search: Optional[str] = None,
        reveal: bool = False,
    ) -> list[VariableView]:
        """List variables ordered by key; secret values masked unless revealed."""
        await self.environment(env_id, "list")
        views = []
        for variable in await self._variables.list(
            self._db, env_id, tags=tags, search=search,
        ):
            value = variable.value
            if variable.encrypted:
                if reveal:
                    value = await self.unseal(value, entity_id=variable.id)
                else:
                    value = mask_secret(value)
            views.append(VariableView(
                key=variable.key,
                value=value,
                is_secret=variable.is_secret,
                revealed=reveal and variable.is_secret,
                tags=variable.tags,
                description=variable.description,
                updated_at=variable.updated_at,
            ))
        return views

    async def edit_variable(
        self,
        env_id: str,
        key: str,
        *,
        value: Optional[str] = None,
        tags: Optional[list[str]] = None,
        description: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> Variable:
        """Partially update an existing variable, keeping its secret-ness."""
        actor = actor or SYSTEM
        actor.require_write("edit", entity_id=env_id)
        if value is None and tags is None and description is None:
            raise ValidationError("Nothing to edit", entity_id=env_id, action="edit")
        env = await self.environment(env_id, "edit")

        async with self.variable_lock(env.id, key):
            current = await self._require(env.id, key, "edit")
            stored = current.value
            if value is not None:
                stored = await self.seal(value) if current.encrypted else value
            changes: dict[str, Any] = {"value": stored, "updated_at": self._clock()}
            if tags is not None:
                changes["tags"] = tags
            if description is not None:
                changes["description"] = description
            variable = current.model_copy(update=changes)
            async with self._db.transaction() as tx:
                await self._variables.update(tx, variable)
                await self._audit.append(
                    tx,
                    AuditEntry(
                        action=AuditAction.UPDATE,
                        entity_type=ENTITY_VARIABLE,
                        entity_id=variable.id,
                        old_value=current.value,
                        new_value=stored,
                        details=VariableChange(
                            key=key, environment=env.name, is_secret=current.is_secret,
                        ),
                    ),
                    actor,
                )

        logger.info("Variable edited: env=%s key=%s", env.name, key)
        return variable

    async def delete_variable(
        self,
        env_id: str,
        key: str,
        *,
        actor: Optional[Actor] = None,
    ) -> Variable:
        """Remove a variable; the audit entry keeps only a fingerprint of its value.

        Raises:
            NotFoundError: Unknown environment or variable.
        """
        actor = actor or SYSTEM
        actor.require_write("delete", entity_id=env_id)
        env = await self.environment(env_id, "delete")

        async with self.variable_lock(env.id, key):
            variable = await self._require(env.id, key, "delete")
            async with self._db.transaction() as tx:
                await self._variables.delete(tx, variable.id)
                await self._audit.append(
                    tx,
                    AuditEntry(
                        action=AuditAction.DELETE,
                        entity_type=ENTITY_VARIABLE,
                        entity_id=variable.id,
                        old_value=fingerprint(variable.value),
                        details=VariableChange(
                            key=key, environment=env.name, is_secret=variable.is_secret,
                        ),
                    ),
                    actor,
                )

        logger.info("Variable deleted: env=%s key=%s", env.name, key)
        return variable
