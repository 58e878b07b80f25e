"""
Typed repositories — one per persisted entity.

All statements use bound parameters; values never reach SQL text.
Each method takes the executor to run on (the ``Database`` itself, or a
``Transaction`` when the caller needs several writes to commit together).
"""
from __future__ import annotations

from typing import Any, Optional, Union
from datetime import datetime

import orjson
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from ..models import (
    AuditAction,
    AuditDetails,
    AuditFilter,
    AuditLogEntry,
    Environment,
    RotationHistoryEntry,
    Variable,
    join_tags,
    split_tags,
    to_timestamp,
)
from .database import Database, Row, Transaction

Executor = Union[Database, Transaction]


def _ts(value: Optional[datetime]) -> Optional[str]:
    return to_timestamp(value) if value is not None else None


# ---------------------------------------------------------------------------
# Environments
# ---------------------------------------------------------------------------

_INSERT_ENVIRONMENT = """
INSERT INTO environments (id, name, description, created_at, updated_at)
VALUES (?, ?, ?, ?, ?)
"""

_SELECT_ENVIRONMENT_BY_NAME = "SELECT * FROM environments WHERE name = ?"
_SELECT_ENVIRONMENT_BY_ID = "SELECT * FROM environments WHERE id = ?"
_SELECT_ENVIRONMENTS = "SELECT * FROM environments ORDER BY name"
_DELETE_ENVIRONMENT = "DELETE FROM environments WHERE id = ?"


class EnvironmentRepository:

    @staticmethod
    def _to_model(row: Row) -> Environment:
        return Environment(**row)

    async def insert(self, conn: Executor, env: Environment) -> None:
        await conn.execute(
            _INSERT_ENVIRONMENT,
            env.id, env.name, env.description,
            to_timestamp(env.created_at), to_timestamp(env.updated_at),
        )

    async def get_by_name(self, conn: Executor, name: str) -> Optional[Environment]:
        row = await conn.fetchrow(_SELECT_ENVIRONMENT_BY_NAME, name)
        return self._to_model(row) if row else None

    async def get_by_id(self, conn: Executor, env_id: str) -> Optional[Environment]:
        row = await conn.fetchrow(_SELECT_ENVIRONMENT_BY_ID, env_id)
        return self._to_model(row) if row else None

    async def list(self, conn: Executor) -> list[Environment]:
        return [self._to_model(r) for r in await conn.fetch(_SELECT_ENVIRONMENTS)]

    async def delete(self, conn: Executor, env_id: str) -> int:
        return await conn.execute(_DELETE_ENVIRONMENT, env_id)


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------

_INSERT_VARIABLE = """
INSERT INTO variables (
    id, environment_id, key, value, encrypted, is_secret, tags, description,
    rotation_enabled, rotation_period_days, last_rotated, next_rotation,
    created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_UPDATE_VARIABLE = """
UPDATE variables
SET value = ?, encrypted = ?, is_secret = ?, tags = ?, description = ?,
    rotation_enabled = ?, rotation_period_days = ?, last_rotated = ?,
    next_rotation = ?, updated_at = ?
WHERE id = ?
"""

_SELECT_VARIABLE = "SELECT * FROM variables WHERE environment_id = ? AND key = ?"
_SELECT_VARIABLE_BY_ID = "SELECT * FROM variables WHERE id = ?"
_COUNT_VARIABLES = "SELECT count(*) FROM variables WHERE environment_id = ?"
_DELETE_VARIABLE = "DELETE FROM variables WHERE id = ?"

_SELECT_ROTATION_CANDIDATES = """
SELECT * FROM variables
WHERE environment_id = ? AND is_secret = 1 AND rotation_enabled = 1
"""

_SET_ROTATION_ENABLED = """
UPDATE variables
SET rotation_enabled = ?,
    rotation_period_days = COALESCE(rotation_period_days, ?),
    updated_at = ?
WHERE environment_id = ? AND is_secret = 1
"""


class VariableRepository:

    @staticmethod
    def _to_model(row: Row) -> Variable:
        data = dict(row)
        data["tags"] = split_tags(data.get("tags"))
        data["value"] = data.get("value") or ""
        for flag in ("encrypted", "is_secret", "rotation_enabled"):
            data[flag] = bool(data[flag])
        return Variable(**data)

    async def insert(self, conn: Executor, var: Variable) -> None:
        await conn.execute(
            _INSERT_VARIABLE,
            var.id, var.environment_id, var.key, var.value,
            int(var.encrypted), int(var.is_secret), join_tags(var.tags),
            var.description, int(var.rotation_enabled),
            var.rotation_period_days, _ts(var.last_rotated),
            _ts(var.next_rotation), to_timestamp(var.created_at),
            to_timestamp(var.updated_at),
        )

    async def update(self, conn: Executor, var: Variable) -> int:
        return await conn.execute(
            _UPDATE_VARIABLE,
            var.value, int(var.encrypted), int(var.is_secret),
            join_tags(var.tags), var.description, int(var.rotation_enabled),
            var.rotation_period_days, _ts(var.last_rotated),
            _ts(var.next_rotation), to_timestamp(var.updated_at), var.id,
        )

    async def get(self, conn: Executor, env_id: str, key: str) -> Optional[Variable]:
        row = await conn.fetchrow(_SELECT_VARIABLE, env_id, key)
        return self._to_model(row) if row else None

    async def get_by_id(self, conn: Executor, var_id: str) -> Optional[Variable]:
        row = await conn.fetchrow(_SELECT_VARIABLE_BY_ID, var_id)
        return self._to_model(row) if row else None

    async def list(
        self,
        conn: Executor,
        env_id: str,
        *,
        tags: Optional[list[str]] = None,
        search: Optional[str] = None,
    ) -> list[Variable]:
        sql = "SELECT * FROM variables WHERE environment_id = ?"
        params: list[Any] = [env_id]
        if tags:
            sql += " AND (" + " OR ".join("(',' || tags || ',') LIKE ?" for _ in tags) + ")"
            params.extend(f"%,{t.strip()},%" for t in tags)
        if search:
            sql += " AND key LIKE ?"
            params.append(f"%{search}%")
        sql += " ORDER BY key"
        return [self._to_model(r) for r in await conn.fetch(sql, *params)]

    async def count(self, conn: Executor, env_id: str) -> int:
        return await conn.fetchval(_COUNT_VARIABLES, env_id) or 0

    async def delete(self, conn: Executor, var_id: str) -> int:
        return await conn.execute(_DELETE_VARIABLE, var_id)

    async def rotation_candidates(
        self,
        conn: Executor,
        env_id: str,
        *,
        due_before: Optional[datetime] = None,
    ) -> list[Variable]:
        """Rotation-enabled secrets; only due ones when ``due_before`` is set."""
        sql = _SELECT_ROTATION_CANDIDATES
        params: list[Any] = [env_id]
        if due_before is not None:
            sql += " AND (next_rotation IS NULL OR next_rotation <= ?)"
            params.append(to_timestamp(due_before))
        sql += " ORDER BY key"
        return [self._to_model(r) for r in await conn.fetch(sql, *params)]

    async def set_rotation_enabled(
        self,
        conn: Executor,
        env_id: str,
        enabled: bool,
        default_period_days: Optional[int],
        now: datetime,
    ) -> int:
        return await conn.execute(
            _SET_ROTATION_ENABLED,
            int(enabled), default_period_days, to_timestamp(now), env_id,
        )


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

_INSERT_AUDIT = """
INSERT INTO audit_logs (
    id, timestamp, action, entity_type, entity_id, old_value, new_value,
    user_id, user_name, ip_address, details, fingerprint, chain_fingerprint
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_AUDIT = "SELECT * FROM audit_logs WHERE id = ?"
_SELECT_LAST_CHAIN = "SELECT chain_fingerprint FROM audit_logs ORDER BY seq DESC LIMIT 1"
_SELECT_AUDIT_IN_ORDER = "SELECT * FROM audit_logs ORDER BY seq"
_DELETE_AUDIT_BEFORE = "DELETE FROM audit_logs WHERE timestamp < ?"
_COUNT_AUDIT = "SELECT count(*) FROM audit_logs"
_COUNT_AUDIT_BY_ACTION = """
SELECT action, count(*) AS count FROM audit_logs
GROUP BY action ORDER BY count DESC
"""
_COUNT_AUDIT_BY_DAY = """
SELECT substr(timestamp, 1, 10) AS day, count(*) AS count FROM audit_logs
WHERE timestamp >= ?
GROUP BY day ORDER BY day DESC
"""


_AUDIT_TEXT_FIELDS = (
    "timestamp", "action", "entity_type", "entity_id", "old_value",
    "new_value", "user_id", "user_name", "ip_address", "details",
    "fingerprint", "chain_fingerprint",
)
_AUDIT_ACTIONS = frozenset(a.value for a in AuditAction)
_DETAILS_ADAPTER = TypeAdapter(AuditDetails)


def _parse_details(raw: Optional[str]) -> tuple[Any, dict[str, str], bool]:
    """Decode the stored ``{"payload": ..., "extra": ...}`` document.

    Returns ``(details, extra, readable)``; anything unexpected yields
    ``(None, {}, False)``.
    """
    if not raw:
        return None, {}, True
    try:
        stored = orjson.loads(raw)
    except orjson.JSONDecodeError:
        return None, {}, False
    if not isinstance(stored, dict):
        return None, {}, False
    extra = stored.get("extra") or {}
    if not isinstance(extra, dict):
        return None, {}, False
    payload = stored.get("payload")
    try:
        details = _DETAILS_ADAPTER.validate_python(payload) if payload is not None else None
    except PydanticValidationError:
        return None, {}, False
    return details, {str(k): str(v) for k, v in extra.items()}, True


class AuditRepository:

    @staticmethod
    def _to_model(row: Row) -> AuditLogEntry:
        """Build an entry without trusting the stored row.

        Unknown actions and unreadable details mark the entry ``malformed``
        instead of failing, so verification can report the row as invalid.
        """
        data = dict(row)
        for field in _AUDIT_TEXT_FIELDS:
            value = data.get(field)
            if value is not None and not isinstance(value, str):
                data[field] = str(value)
        details, extra, readable = _parse_details(data.pop("details", None))
        data["details"] = details
        data["extra"] = extra
        data["malformed"] = not readable or data["action"] not in _AUDIT_ACTIONS
        return AuditLogEntry(**data)

    async def insert(self, conn: Executor, entry: dict[str, Any]) -> None:
        await conn.execute(
            _INSERT_AUDIT,
            entry["id"], entry["timestamp"], entry["action"],
            entry["entity_type"], entry["entity_id"], entry["old_value"],
            entry["new_value"], entry["user_id"], entry["user_name"],
            entry["ip_address"], entry["details"], entry["fingerprint"],
            entry["chain_fingerprint"],
        )

    async def get(self, conn: Executor, entry_id: str) -> Optional[AuditLogEntry]:
        row = await conn.fetchrow(_SELECT_AUDIT, entry_id)
        return self._to_model(row) if row else None

    async def last_chain_fingerprint(self, conn: Executor) -> Optional[str]:
        return await conn.fetchval(_SELECT_LAST_CHAIN)

    async def all_in_order(self, conn: Executor) -> list[AuditLogEntry]:
        return [self._to_model(r) for r in await conn.fetch(_SELECT_AUDIT_IN_ORDER)]

    async def query(self, conn: Executor, filters: AuditFilter) -> list[AuditLogEntry]:
        sql = "SELECT * FROM audit_logs WHERE 1=1"
        params: list[Any] = []
        if filters.action is not None:
            sql += " AND action = ?"
            params.append(filters.action.value)
        if filters.entity_type:
            sql += " AND entity_type = ?"
            params.append(filters.entity_type)
        if filters.entity_id:
            sql += " AND entity_id = ?"
            params.append(filters.entity_id)
        if filters.start is not None:
            sql += " AND timestamp >= ?"
            params.append(to_timestamp(filters.start))
        if filters.end is not None:
            sql += " AND timestamp <= ?"
            params.append(to_timestamp(filters.end))
        sql += " ORDER BY timestamp DESC, seq DESC LIMIT ? OFFSET ?"
        params.extend([filters.limit, filters.offset])
        return [self._to_model(r) for r in await conn.fetch(sql, *params)]

    async def delete_before(self, conn: Executor, cutoff: datetime) -> int:
        return await conn.execute(_DELETE_AUDIT_BEFORE, to_timestamp(cutoff))

    async def count(self, conn: Executor) -> int:
        return await conn.fetchval(_COUNT_AUDIT) or 0

    async def count_by_action(self, conn: Executor) -> dict[str, int]:
        rows = await conn.fetch(_COUNT_AUDIT_BY_ACTION)
        return {r["action"]: r["count"] for r in rows}

    async def count_by_day(self, conn: Executor, since: datetime) -> dict[str, int]:
        rows = await conn.fetch(_COUNT_AUDIT_BY_DAY, to_timestamp(since))
        return {r["day"]: r["count"] for r in rows}


# ---------------------------------------------------------------------------
# Rotation history
# ---------------------------------------------------------------------------

_INSERT_ROTATION = """
INSERT INTO rotation_history (
    id, variable_id, rotated_at, old_value_hash, new_value_hash, rotated_by, reason
) VALUES (?, ?, ?, ?, ?, ?, ?)
"""

_SELECT_ROTATION_HISTORY = """
SELECT rh.*, v.key AS variable_key, e.name AS environment_name
FROM rotation_history rh
JOIN variables v ON rh.variable_id = v.id
JOIN environments e ON v.environment_id = e.id
WHERE 1=1
"""


class RotationHistoryRepository:

    @staticmethod
    def _to_model(row: Row) -> RotationHistoryEntry:
        data = dict(row)
        data["old_value_fingerprint"] = data.pop("old_value_hash")
        data["new_value_fingerprint"] = data.pop("new_value_hash")
        return RotationHistoryEntry(**data)

    async def insert(self, conn: Executor, entry: RotationHistoryEntry) -> None:
        await conn.execute(
            _INSERT_ROTATION,
            entry.id, entry.variable_id, to_timestamp(entry.rotated_at),
            entry.old_value_fingerprint, entry.new_value_fingerprint,
            entry.rotated_by, entry.reason,
        )

    async def list(
        self,
        conn: Executor,
        *,
        env_id: Optional[str] = None,
        variable_id: Optional[str] = None,
        key: Optional[str] = None,
        limit: int = 20,
    ) -> list[RotationHistoryEntry]:
        sql = _SELECT_ROTATION_HISTORY
        params: list[Any] = []
        if env_id:
            sql += " AND e.id = ?"
            params.append(env_id)
        if variable_id:
            sql += " AND v.id = ?"
            params.append(variable_id)
        if key:
            sql += " AND v.key = ?"
            params.append(key)
        sql += " ORDER BY rh.rotated_at DESC LIMIT ?"
        params.append(limit)
        return [self._to_model(r) for r in await conn.fetch(sql, *params)]
