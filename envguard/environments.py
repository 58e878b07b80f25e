"""
Environments — named groups of variables (development, staging, prod, ...).

Deleting an environment cascades to its variables and their rotation
history; every mutation here appends one audit entry in the same
transaction as the write.
"""
import uuid
import logging
from typing import Optional

from .auth import Actor, SYSTEM
from .audit import AuditChain
from .exceptions import NotFoundError, UniquenessViolation, ValidationError
from .models import (
    REDACTED,
    AuditAction,
    AuditEntry,
    CloneDetails,
    Environment,
    EnvironmentDetails,
    EnvironmentSnapshot,
    SnapshotEnvironment,
    SnapshotVariable,
    TransferDetails,
    Variable,
    utcnow,
)
from .storage.database import Database
from .storage.repositories import EnvironmentRepository, VariableRepository
from .vault.crypto import is_ciphertext

logger = logging.getLogger("envguard.environments")

ENTITY_ENVIRONMENT = "environment"


class EnvironmentService:

    def __init__(self, db: Database, audit: AuditChain, clock=utcnow):
        self._db = db
        self._audit = audit
        self._clock = clock
        self._environments = EnvironmentRepository()
        self._variables = VariableRepository()

    async def get(self, name: str) -> Environment:
        env = await self._environments.get_by_name(self._db, name)
        if env is None:
            raise NotFoundError(f"Environment '{name}' not found", action="read")
        return env

    async def get_by_id(self, env_id: str) -> Environment:
        env = await self._environments.get_by_id(self._db, env_id)
        if env is None:
            raise NotFoundError("Environment not found", entity_id=env_id, action="read")
        return env

    async def list(self) -> list[Environment]:
        return await self._environments.list(self._db)

    async def create(
        self,
        name: str,
        description: str = "",
        *,
        actor: Optional[Actor] = None,
    ) -> Environment:
        """Create an environment.

        Raises:
            ValidationError: Empty name.
            UniquenessViolation: An environment with this name exists.
        """
        actor = actor or SYSTEM
        actor.require_write("create")
        if not name or not name.strip():
            raise ValidationError("Environment name is required", action="create")
        now = self._clock()
        env = Environment(
            id=str(uuid.uuid4()),
            name=name.strip(),
            description=description or "",
            created_at=now,
            updated_at=now,
        )
        async with self._db.transaction() as tx:
            if await self._environments.get_by_name(tx, env.name) is not None:
                raise UniquenessViolation(
                    f"Environment '{env.name}' already exists", action="create",
                )
            await self._environments.insert(tx, env)
            await self._audit.append(
                tx,
                AuditEntry(
                    action=AuditAction.CREATE,
                    entity_type=ENTITY_ENVIRONMENT,
                    entity_id=env.id,
                    new_value=env.name,
                    details=EnvironmentDetails(
                        name=env.name, description=env.description,
                    ),
                ),
                actor,
            )
        logger.info("Environment created: %s", env.name)
        return env

    async def delete(self, name: str, *, actor: Optional[Actor] = None) -> int:
        """Delete an environment and, by cascade, all of its variables.

        Returns:
            Number of variables removed with it.
        """
        actor = actor or SYSTEM
        actor.require_write("delete")
        env = await self.get(name)
        async with self._db.transaction() as tx:
            removed = await self._variables.count(tx, env.id)
            await self._environments.delete(tx, env.id)
            await self._audit.append(
                tx,
                AuditEntry(
                    action=AuditAction.DELETE,
                    entity_type=ENTITY_ENVIRONMENT,
                    entity_id=env.id,
                    old_value=env.name,
                    details=EnvironmentDetails(
                        name=env.name,
                        description=env.description,
                        variables=removed,
                    ),
                ),
                actor,
            )
        logger.info("Environment deleted: %s (%d variable(s))", env.name, removed)
        return removed

    async def clone(
        self,
        source: str,
        target: str,
        *,
        include_variables: bool = True,
        actor: Optional[Actor] = None,
    ) -> Environment:
        """Copy an environment; secrets are copied as ciphertext.

        Rotation settings are kept, due dates are not: cloned secrets become
        due for their first rotation in the new environment.
        """
        actor = actor or SYSTEM
        actor.require_write("clone")
        src = await self.get(source)
        now = self._clock()
        env = Environment(
            id=str(uuid.uuid4()),
            name=target,
            description=f"Cloned from {src.name}",
            created_at=now,
            updated_at=now,
        )
        async with self._db.transaction() as tx:
            if await self._environments.get_by_name(tx, target) is not None:
                raise UniquenessViolation(
                    f"Environment '{target}' already exists", action="clone",
                )
            await self._environments.insert(tx, env)
            cloned = 0
            if include_variables:
                for var in await self._variables.list(tx, src.id):
                    await self._variables.insert(tx, var.model_copy(update={
                        "id": str(uuid.uuid4()),
                        "environment_id": env.id,
                        "last_rotated": None,
                        "next_rotation": None,
                        "created_at": now,
                        "updated_at": now,
                    }))
                    cloned += 1
            await self._audit.append(
                tx,
                AuditEntry(
                    action=AuditAction.CLONE,
                    entity_type=ENTITY_ENVIRONMENT,
                    entity_id=env.id,
                    new_value=env.name,
                    details=CloneDetails(
                        source=src.name, target=env.name, cloned_variables=cloned,
                    ),
                ),
                actor,
            )
        logger.info("Environment %s cloned to %s (%d variable(s))", src.name, target, cloned)
        return env

    async def export(
        self,
        name: str,
        *,
        include_secrets: bool = False,
        actor: Optional[Actor] = None,
    ) -> EnvironmentSnapshot:
        """Snapshot an environment; secrets are redacted unless requested.

        Included secrets stay encrypted: the snapshot carries ciphertext.
        """
        env = await self.get(name)
        variables = await self._variables.list(self._db, env.id)
        snapshot = EnvironmentSnapshot(
            exported_at=self._clock(),
            environment=SnapshotEnvironment(name=env.name, description=env.description),
            variables=[
                SnapshotVariable(
                    key=v.key,
                    value=v.value if (include_secrets or not v.is_secret) else REDACTED,
                    is_secret=v.is_secret,
                    tags=v.tags,
                    description=v.description,
                )
                for v in variables
            ],
        )
        await self._audit.append(
            None,
            AuditEntry(
                action=AuditAction.EXPORT,
                entity_type=ENTITY_ENVIRONMENT,
                entity_id=env.id,
                details=TransferDetails(name=env.name, variables=len(variables)),
                extra={"include_secrets": str(include_secrets).lower()},
            ),
            actor,
        )
        return snapshot

    async def import_snapshot(
        self,
        snapshot: EnvironmentSnapshot,
        *,
        name: Optional[str] = None,
        overwrite: bool = False,
        actor: Optional[Actor] = None,
    ) -> TransferDetails:
        """Load a snapshot into a new or existing environment.

        Existing keys are skipped unless ``overwrite``. Secret entries must
        carry ciphertext; redacted or malformed secrets are skipped.
        """
        actor = actor or SYSTEM
        actor.require_write("import")
        target = (name or snapshot.environment.name or "imported").strip()
        now = self._clock()
        imported = skipped = 0
        async with self._db.transaction() as tx:
            env = await self._environments.get_by_name(tx, target)
            if env is None:
                env = Environment(
                    id=str(uuid.uuid4()),
                    name=target,
                    description=snapshot.environment.description or "Imported environment",
                    created_at=now,
                    updated_at=now,
                )
                await self._environments.insert(tx, env)
            for item in snapshot.variables:
                if item.is_secret and not is_ciphertext(item.value):
                    logger.warning("Skipping secret %s: value is not ciphertext", item.key)
                    skipped += 1
                    continue
                existing = await self._variables.get(tx, env.id, item.key)
                if existing is not None and not overwrite:
                    skipped += 1
                    continue
                if existing is not None:
                    changes = {
                        "value": item.value,
                        "is_secret": item.is_secret,
                        "encrypted": item.is_secret,
                        "tags": item.tags,
                        "description": item.description,
                        "updated_at": now,
                    }
                    if not item.is_secret:
                        # only secrets rotate
                        changes.update(
                            rotation_enabled=False,
                            rotation_period_days=None,
                            next_rotation=None,
                        )
                    await self._variables.update(tx, existing.model_copy(update=changes))
                else:
                    await self._variables.insert(tx, Variable(
                        id=str(uuid.uuid4()),
                        environment_id=env.id,
                        key=item.key,
                        value=item.value,
                        is_secret=item.is_secret,
                        encrypted=item.is_secret,
                        tags=item.tags,
                        description=item.description,
                        created_at=now,
                        updated_at=now,
                    ))
                imported += 1
            result = TransferDetails(name=env.name, variables=imported, skipped=skipped)
            await self._audit.append(
                tx,
                AuditEntry(
                    action=AuditAction.IMPORT,
                    entity_type=ENTITY_ENVIRONMENT,
                    entity_id=env.id,
                    new_value=env.name,
                    details=result,
                ),
                actor,
            )
        logger.info(
            "Imported %d variable(s) into %s, skipped %d", imported, target, skipped,
        )
        return result
