"""
Audit Chain — Append-only, tamper-evident log of every mutation.

Each entry carries a fingerprint computed from its own fields:

    sha256("timestamp:action:entity_type:entity_id:old_value:new_value:user_id")

The field order is part of the stored format and must not change. Missing
values are rendered as the empty string.

Each entry also carries a chain fingerprint linking it to its predecessor:

    sha256("<previous chain fingerprint>:<fingerprint>")

so that deleting or reordering whole entries is detectable by
``verify_chain()``. ``purge()`` is the only permitted deletion path; after
a purge the oldest surviving entry anchors the chain.

Security Note:
    Secrets reach this log only as ciphertext or fingerprints, never as
    plaintext. Never log old/new values at any level.
"""
import uuid
import logging
from typing import Optional
from datetime import datetime, timedelta

import orjson

from .auth import Actor, SYSTEM
from .exceptions import NotFoundError, ValidationError
from .models import (
    AuditEntry,
    AuditFilter,
    AuditLogEntry,
    AuditReceipt,
    AuditStats,
    AuditVerification,
    ChainVerification,
    to_timestamp,
    utcnow,
)
from .storage.database import Database
from .storage.repositories import AuditRepository, Executor
from .vault.crypto import fingerprint as sha256_hex

logger = logging.getLogger("envguard.audit")


def compute_fingerprint(
    timestamp: str,
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    old_value: Optional[str],
    new_value: Optional[str],
    user_id: Optional[str],
) -> str:
    """Deterministic fingerprint over the canonical field concatenation."""
    fields = (
        timestamp, action, entity_type, entity_id, old_value, new_value, user_id,
    )
    return sha256_hex(":".join("" if f is None else str(f) for f in fields))


def entry_fingerprint(entry: AuditLogEntry) -> str:
    return compute_fingerprint(
        entry.timestamp,
        entry.action,
        entry.entity_type,
        entry.entity_id,
        entry.old_value,
        entry.new_value,
        entry.user_id,
    )


def chain_link(previous: Optional[str], fp: str) -> str:
    return sha256_hex(f"{previous or ''}:{fp}")


class AuditChain:
    """Append, query, verify and purge audit entries."""

    def __init__(self, db: Database, clock=utcnow):
        self._db = db
        self._clock = clock
        self._repo = AuditRepository()

    async def append(
        self,
        conn: Optional[Executor],
        entry: AuditEntry,
        actor: Optional[Actor] = None,
    ) -> AuditReceipt:
        """Append an entry, joining the caller's transaction when given one.

        Args:
            conn: Open transaction to write in, or None for a standalone append.
            entry: The mutation to record.
            actor: Acting user (defaults to the system actor).

        Returns:
            Receipt with the new entry's id, timestamp and fingerprint.
        """
        if conn is None:
            async with self._db.transaction() as tx:
                return await self.append(tx, entry, actor)

        actor = actor or SYSTEM
        entry_id = str(uuid.uuid4())
        timestamp = to_timestamp(self._clock())
        fp = compute_fingerprint(
            timestamp,
            entry.action.value,
            entry.entity_type,
            entry.entity_id,
            entry.old_value,
            entry.new_value,
            actor.user_id,
        )
        previous = await self._repo.last_chain_fingerprint(conn)
        details = orjson.dumps({
            "payload": entry.details.model_dump() if entry.details else None,
            "extra": entry.extra,
        }).decode("utf-8")
        await self._repo.insert(conn, {
            "id": entry_id,
            "timestamp": timestamp,
            "action": entry.action.value,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "old_value": entry.old_value,
            "new_value": entry.new_value,
            "user_id": actor.user_id,
            "user_name": actor.user_name,
            "ip_address": actor.ip_address,
            "details": details,
            "fingerprint": fp,
            "chain_fingerprint": chain_link(previous, fp),
        })
        logger.debug(
            "Audit append: action=%s entity=%s:%s",
            entry.action.value, entry.entity_type, entry.entity_id,
        )
        return AuditReceipt(id=entry_id, timestamp=timestamp, fingerprint=fp)

    async def get(self, entry_id: str) -> AuditLogEntry:
        entry = await self._repo.get(self._db, entry_id)
        if entry is None:
            raise NotFoundError(
                "Audit entry not found", entity_id=entry_id, action="verify",
            )
        return entry

    async def verify(self, entry_id: str) -> AuditVerification:
        """Recompute an entry's fingerprint from its stored fields.

        Entries with an unknown action or unreadable details never verify.

        Raises:
            NotFoundError: If no entry has this id.
        """
        entry = await self.get(entry_id)
        recomputed = entry_fingerprint(entry)
        valid = recomputed == entry.fingerprint and not entry.malformed
        if not valid:
            logger.warning("Audit entry %s failed integrity check", entry_id)
        return AuditVerification(
            valid=valid,
            recomputed_fingerprint=recomputed,
            stored_fingerprint=entry.fingerprint,
            entry=entry,
        )

    async def verify_chain(self) -> ChainVerification:
        """Walk all entries in insertion order and check every link."""
        entries = await self._repo.all_in_order(self._db)
        previous: Optional[str] = None
        for index, entry in enumerate(entries):
            fp = entry_fingerprint(entry)
            if index == 0:
                # oldest surviving entry anchors the chain
                expected_ok = (
                    fp == entry.fingerprint and entry.chain_fingerprint is not None
                )
            else:
                expected_ok = (
                    fp == entry.fingerprint
                    and entry.chain_fingerprint == chain_link(previous, fp)
                )
            if not expected_ok or entry.malformed:
                logger.warning("Audit chain broken at entry %s", entry.id)
                return ChainVerification(
                    valid=False, checked=index + 1, broken_at=entry.id,
                )
            previous = entry.chain_fingerprint
        return ChainVerification(valid=True, checked=len(entries))

    async def query(self, filters: Optional[AuditFilter] = None) -> list[AuditLogEntry]:
        """Filtered entries, newest first, paginated via limit/offset."""
        return await self._repo.query(self._db, filters or AuditFilter())

    async def entity_history(
        self, entity_type: str, entity_id: str,
    ) -> list[AuditLogEntry]:
        total = await self._repo.count(self._db)
        return await self._repo.query(
            self._db,
            AuditFilter(
                entity_type=entity_type,
                entity_id=entity_id,
                limit=max(total, 1),
            ),
        )

    async def stats(self, now: Optional[datetime] = None) -> AuditStats:
        now = now or self._clock()
        return AuditStats(
            total=await self._repo.count(self._db),
            by_action=await self._repo.count_by_action(self._db),
            recent_activity=await self._repo.count_by_day(
                self._db, now - timedelta(days=7),
            ),
        )

    async def purge(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete entries older than ``now - retention_days``.

        Returns:
            Number of entries removed.
        """
        if retention_days < 0:
            raise ValidationError(
                "retention_days must not be negative", action="purge",
            )
        cutoff = (now or self._clock()) - timedelta(days=retention_days)
        async with self._db.transaction() as tx:
            removed = await self._repo.delete_before(tx, cutoff)
        logger.info(
            "Purged %d audit entr%s older than %d day(s)",
            removed, "y" if removed == 1 else "ies", retention_days,
        )
        return removed
