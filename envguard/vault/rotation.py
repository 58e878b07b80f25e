"""
Vault Rotation — Scheduled replacement of secret values.

Selects rotation-enabled secrets whose ``next_rotation`` has elapsed,
replaces each value with a freshly generated one and records provenance
(old/new ciphertext fingerprints) in ``rotation_history`` alongside one
``rotate`` audit entry.

Batches run sequentially. Each variable is rotated in its own transaction,
so a failure (or a cancellation between variables) never leaves partial
state; failures are collected in the report and do not stop the batch.

Security Note:
    Generated plaintext exists in memory only until it is encrypted.
    Never log plaintext or ciphertext values.
"""
import uuid
import asyncio
import logging
from typing import Optional
from datetime import datetime, timedelta

from ..auth import Actor, SYSTEM
from ..audit import AuditChain
from ..exceptions import NotFoundError, ValidationError
from ..models import (
    AuditAction,
    AuditEntry,
    RotationDetails,
    RotationFailure,
    RotationHistoryEntry,
    RotationReport,
    RotationStatus,
    Variable,
    utcnow,
)
from ..storage.database import Database
from ..storage.repositories import RotationHistoryRepository, VariableRepository
from .crypto import DEFAULT_SECRET_LENGTH, fingerprint, generate_secret
from .store import ENTITY_VARIABLE, SecretStore, validate_rotation_days

logger = logging.getLogger("envguard.vault")

DEFAULT_ROTATION_PERIOD_DAYS = 90
MANUAL_REASON = "Manual rotation"
SCHEDULED_REASON = "Scheduled rotation"


class RotationEngine:
    """Due-date tracking and value replacement for secret variables."""

    def __init__(
        self,
        db: Database,
        store: SecretStore,
        audit: AuditChain,
        *,
        default_period_days: int = DEFAULT_ROTATION_PERIOD_DAYS,
        secret_length: int = DEFAULT_SECRET_LENGTH,
        clock=utcnow,
    ):
        self._db = db
        self._store = store
        self._audit = audit
        self._default_period = default_period_days
        self._secret_length = secret_length
        self._clock = clock
        self._variables = VariableRepository()
        self._history = RotationHistoryRepository()

    async def due_secrets(
        self,
        env_id: str,
        *,
        include_non_expired: bool = False,
        now: Optional[datetime] = None,
    ) -> list[Variable]:
        """Rotation-enabled secrets whose next rotation is unset or elapsed.

        Args:
            env_id: Environment to scan.
            include_non_expired: Return every rotation-enabled secret.
            now: Reference time (defaults to the engine clock).
        """
        await self._store.environment(env_id, "rotate")
        due_before = None if include_non_expired else (now or self._clock())
        return await self._variables.rotation_candidates(
            self._db, env_id, due_before=due_before,
        )

    async def rotate(
        self,
        variable: Variable,
        *,
        reason: str = MANUAL_REASON,
        actor: Optional[Actor] = None,
        scheduled: bool = False,
    ) -> Optional[Variable]:
        """Replace one secret's value with a newly generated one.

        The stored row is re-read under the variable lock. With
        ``scheduled`` set, a row that stopped being a rotation-enabled
        secret, or was rotated since ``variable`` was read, is left alone.

        Returns:
            The updated variable (``value`` is the new ciphertext), or None
            when a scheduled rotation no longer applies.

        Raises:
            ValidationError: The variable is not a secret.
            NotFoundError: The variable no longer exists.
            AuthenticationError: No master key is available.
        """
        actor = actor or SYSTEM
        actor.require_write("rotate", entity_id=variable.id)
        if not variable.is_secret:
            raise ValidationError(
                f"Variable '{variable.key}' is not a secret",
                entity_id=variable.id,
                action="rotate",
            )
        env = await self._store.environment(variable.environment_id, "rotate")

        async with self._store.variable_lock(env.id, variable.key):
            current = await self._variables.get_by_id(self._db, variable.id)
            if current is None:
                raise NotFoundError(
                    f"Variable '{variable.key}' not found",
                    entity_id=variable.id,
                    action="rotate",
                )
            if scheduled and (
                not current.is_secret
                or not current.rotation_enabled
                or current.last_rotated != variable.last_rotated
            ):
                logger.info(
                    "Skipping rotation of id=%s key=%s: no longer due",
                    current.id, current.key,
                )
                return None
            if not current.is_secret:
                raise ValidationError(
                    f"Variable '{current.key}' is not a secret",
                    entity_id=current.id,
                    action="rotate",
                )
            new_value = await self._store.seal(generate_secret(self._secret_length))
            now = self._clock()
            next_rotation = (
                now + timedelta(days=current.rotation_period_days)
                if current.rotation_period_days else None
            )
            old_fp = fingerprint(current.value)
            new_fp = fingerprint(new_value)
            rotated = current.model_copy(update={
                "value": new_value,
                "encrypted": True,
                "last_rotated": now,
                "next_rotation": next_rotation,
                "updated_at": now,
            })
            async with self._db.transaction() as tx:
                await self._variables.update(tx, rotated)
                await self._history.insert(tx, RotationHistoryEntry(
                    id=str(uuid.uuid4()),
                    variable_id=current.id,
                    rotated_at=now,
                    old_value_fingerprint=old_fp,
                    new_value_fingerprint=new_fp,
                    rotated_by=actor.user_name,
                    reason=reason,
                ))
                await self._audit.append(
                    tx,
                    AuditEntry(
                        action=AuditAction.ROTATE,
                        entity_type=ENTITY_VARIABLE,
                        entity_id=current.id,
                        old_value=old_fp,
                        new_value=new_fp,
                        details=RotationDetails(
                            key=current.key, environment=env.name, reason=reason,
                        ),
                    ),
                    actor,
                )

        logger.info("Rotated secret: env=%s key=%s", env.name, current.key)
        return rotated

    async def rotate_key(
        self,
        env_id: str,
        key: str,
        *,
        reason: str = MANUAL_REASON,
        actor: Optional[Actor] = None,
    ) -> Variable:
        """Rotate a single secret on demand, whatever its schedule."""
        variable = await self._store.get_variable(env_id, key)
        return await self.rotate(variable, reason=reason, actor=actor)

    async def rotate_due(
        self,
        env_id: str,
        *,
        include_non_expired: bool = False,
        reason: str = SCHEDULED_REASON,
        actor: Optional[Actor] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> RotationReport:
        """Rotate every due secret of an environment, one at a time.

        Args:
            env_id: Environment to rotate.
            include_non_expired: Also rotate secrets not yet due.
            reason: Recorded on every history entry.
            actor: Acting user.
            cancel: When set, the batch stops before the next variable.

        Returns:
            Report of rotated and skipped keys, per-variable failures and
            cancellation.
        """
        actor = actor or SYSTEM
        actor.require_write("rotate", entity_id=env_id)
        candidates = await self.due_secrets(
            env_id, include_non_expired=include_non_expired,
        )
        report = RotationReport()
        if not candidates:
            logger.info("No secrets to rotate in env=%s", env_id)
            return report
        # fail fast when no key can be obtained at all
        await self._store.ensure_unlocked()

        logger.info(
            "Starting rotation of %d secret(s) in env=%s", len(candidates), env_id,
        )
        for variable in candidates:
            if cancel is not None and cancel.is_set():
                report.cancelled = True
                logger.warning(
                    "Rotation cancelled after %d of %d secret(s)",
                    report.succeeded + len(report.skipped) + report.failures,
                    len(candidates),
                )
                break
            try:
                rotated = await self.rotate(
                    variable, reason=reason, actor=actor, scheduled=True,
                )
                if rotated is None:
                    report.skipped.append(variable.key)
                else:
                    report.rotated.append(variable.key)
            except Exception as err:
                logger.error(
                    "Error rotating secret id=%s key=%s: %s",
                    variable.id, variable.key, err,
                )
                report.failed.append(RotationFailure(
                    key=variable.key, variable_id=variable.id, error=str(err),
                ))

        logger.info(
            "Rotation complete: rotated=%d skipped=%d errors=%d",
            report.succeeded, len(report.skipped), report.failures,
        )
        return report

    async def schedule(
        self,
        env_id: str,
        *,
        enable: bool,
        default_period_days: Optional[int] = None,
        actor: Optional[Actor] = None,
    ) -> int:
        """Toggle scheduled rotation for every secret of an environment.

        Enabling fills a missing rotation period with ``default_period_days``
        (or the configured default). Nothing is rotated here.

        Returns:
            Number of secrets updated.
        """
        actor = actor or SYSTEM
        actor.require_write("schedule", entity_id=env_id)
        period = self._default_period
        if default_period_days is not None:
            period = validate_rotation_days(default_period_days, entity_id=env_id)
        env = await self._store.environment(env_id, "schedule")
        async with self._db.transaction() as tx:
            updated = await self._variables.set_rotation_enabled(
                tx, env.id, enable, period if enable else None, self._clock(),
            )
        logger.info(
            "Scheduled rotation %s for %d secret(s) in env=%s",
            "enabled" if enable else "disabled", updated, env.name,
        )
        return updated

    async def history(
        self,
        *,
        env_id: Optional[str] = None,
        key: Optional[str] = None,
        limit: int = 20,
    ) -> list[RotationHistoryEntry]:
        """Rotation records, newest first."""
        return await self._history.list(self._db, env_id=env_id, key=key, limit=limit)

    async def status(
        self,
        env_id: str,
        now: Optional[datetime] = None,
    ) -> list[RotationStatus]:
        now = now or self._clock()
        result = []
        for variable in await self.due_secrets(env_id, include_non_expired=True):
            if variable.next_rotation is not None and variable.next_rotation <= now:
                state = "due"
            elif variable.last_rotated is not None:
                state = "ok"
            else:
                state = "pending"
            result.append(RotationStatus(
                key=variable.key,
                last_rotated=variable.last_rotated,
                next_rotation=variable.next_rotation,
                state=state,
            ))
        return result
