"""
Tests for the audit chain.

Tests cover:
- Fingerprint formula and field order
- Per-entry verification and tamper detection
- Chain verification across deletions and edits
- Query filters, pagination, stats and retention purge
"""
import hashlib
from datetime import timedelta

import pytest
from pydantic import ValidationError as PydanticValidationError

from envguard.audit import chain_link, compute_fingerprint
from envguard.exceptions import NotFoundError, ValidationError
from envguard.models import AuditAction, AuditEntry, AuditFilter, EnvironmentDetails


def make_entry(**overrides):
    data = {
        "action": AuditAction.CREATE,
        "entity_type": "environment",
        "entity_id": "env-1",
        "new_value": "prod",
    }
    data.update(overrides)
    return AuditEntry(**data)


class TestFingerprint:

    def test_formula(self):
        expected = hashlib.sha256(
            b"2024-01-01T12:00:00.000000Z:create:variable:v-1:old:new:u-1"
        ).hexdigest()
        assert compute_fingerprint(
            "2024-01-01T12:00:00.000000Z", "create", "variable", "v-1", "old", "new", "u-1",
        ) == expected

    def test_missing_values_render_empty(self):
        assert compute_fingerprint(
            "ts", "delete", "variable", "v-1", "old", None, "u-1",
        ) == hashlib.sha256(b"ts:delete:variable:v-1:old::u-1").hexdigest()

    def test_field_order_matters(self):
        assert compute_fingerprint("ts", "a", "t", "id", "x", "y", "u") != compute_fingerprint(
            "ts", "a", "t", "id", "y", "x", "u",
        )


class TestAppendAndVerify:

    @pytest.mark.asyncio
    async def test_append_receipt(self, guard):
        receipt = await guard.audit.append(None, make_entry())
        assert receipt.timestamp == "2024-01-01T12:00:00.000000Z"
        entry = await guard.audit.get(receipt.id)
        assert entry.fingerprint == receipt.fingerprint
        assert entry.user_id == "system"
        assert entry.fingerprint == compute_fingerprint(
            receipt.timestamp, "create", "environment", "env-1", None, "prod", "system",
        )

    @pytest.mark.asyncio
    async def test_details_roundtrip(self, guard):
        receipt = await guard.audit.append(None, make_entry(
            details=EnvironmentDetails(name="prod", variables=3),
            extra={"source": "cli"},
        ))
        entry = await guard.audit.get(receipt.id)
        assert isinstance(entry.details, EnvironmentDetails)
        assert entry.details.variables == 3
        assert entry.extra == {"source": "cli"}

    @pytest.mark.asyncio
    async def test_verify_untouched(self, guard):
        receipt = await guard.audit.append(None, make_entry())
        result = await guard.audit.verify(receipt.id)
        assert result.valid is True
        assert result.recomputed_fingerprint == result.stored_fingerprint

    @pytest.mark.asyncio
    async def test_verify_detects_tampering(self, guard):
        receipt = await guard.audit.append(None, make_entry())
        await guard.db.execute(
            "UPDATE audit_logs SET new_value = ? WHERE id = ?", "staging", receipt.id,
        )
        result = await guard.audit.verify(receipt.id)
        assert result.valid is False
        assert result.stored_fingerprint == receipt.fingerprint
        assert result.recomputed_fingerprint != receipt.fingerprint

    @pytest.mark.asyncio
    async def test_verify_unknown_action(self, guard):
        receipt = await guard.audit.append(None, make_entry())
        await guard.db.execute(
            "UPDATE audit_logs SET action = ? WHERE id = ?", "tampered", receipt.id,
        )
        result = await guard.audit.verify(receipt.id)
        assert result.valid is False
        assert result.entry.action == "tampered"
        assert result.entry.malformed is True
        assert result.recomputed_fingerprint != receipt.fingerprint

    @pytest.mark.asyncio
    async def test_verify_unreadable_details(self, guard):
        receipt = await guard.audit.append(None, make_entry(
            details=EnvironmentDetails(name="prod"),
        ))
        await guard.db.execute(
            "UPDATE audit_logs SET details = ? WHERE id = ?", "not json", receipt.id,
        )
        result = await guard.audit.verify(receipt.id)
        assert result.valid is False
        # the covered fields are untouched, only the details are unreadable
        assert result.recomputed_fingerprint == receipt.fingerprint
        assert result.entry.details is None
        assert result.entry.extra == {}

    @pytest.mark.asyncio
    async def test_verify_details_of_wrong_shape(self, guard):
        receipt = await guard.audit.append(None, make_entry())
        await guard.db.execute(
            "UPDATE audit_logs SET details = ? WHERE id = ?",
            '{"payload": {"kind": "nonsense"}, "extra": {}}', receipt.id,
        )
        result = await guard.audit.verify(receipt.id)
        assert result.valid is False
        assert result.entry.malformed is True

    @pytest.mark.asyncio
    async def test_verify_missing(self, guard):
        with pytest.raises(NotFoundError):
            await guard.audit.verify("no-such-entry")


class TestChain:

    @pytest.mark.asyncio
    async def test_chain_links(self, guard):
        first = await guard.audit.append(None, make_entry(entity_id="a"))
        second = await guard.audit.append(None, make_entry(entity_id="b"))
        one = await guard.audit.get(first.id)
        two = await guard.audit.get(second.id)
        assert one.chain_fingerprint == chain_link(None, one.fingerprint)
        assert two.chain_fingerprint == chain_link(one.chain_fingerprint, two.fingerprint)
        assert two.seq > one.seq

    @pytest.mark.asyncio
    async def test_verify_chain(self, guard):
        for name in ("a", "b", "c"):
            await guard.audit.append(None, make_entry(entity_id=name))
        result = await guard.audit.verify_chain()
        assert result.valid is True
        assert result.checked == 3

    @pytest.mark.asyncio
    async def test_chain_detects_removed_entry(self, guard):
        receipts = [
            await guard.audit.append(None, make_entry(entity_id=name))
            for name in ("a", "b", "c")
        ]
        await guard.db.execute("DELETE FROM audit_logs WHERE id = ?", receipts[1].id)
        result = await guard.audit.verify_chain()
        assert result.valid is False
        assert result.broken_at == receipts[2].id

    @pytest.mark.asyncio
    async def test_chain_detects_edit(self, guard):
        receipts = [
            await guard.audit.append(None, make_entry(entity_id=name))
            for name in ("a", "b")
        ]
        await guard.db.execute(
            "UPDATE audit_logs SET user_id = ? WHERE id = ?", "mallory", receipts[0].id,
        )
        result = await guard.audit.verify_chain()
        assert result.valid is False
        assert result.broken_at == receipts[0].id

    @pytest.mark.asyncio
    async def test_chain_reports_tampered_rows(self, guard):
        receipts = [
            await guard.audit.append(None, make_entry(entity_id=name))
            for name in ("a", "b")
        ]
        await guard.db.execute(
            "UPDATE audit_logs SET action = ?, details = ? WHERE id = ?",
            "tampered", "[1, 2", receipts[1].id,
        )
        # listing still works on a damaged log
        entries = await guard.audit.query()
        assert [e.action for e in entries] == ["tampered", AuditAction.CREATE]
        result = await guard.audit.verify_chain()
        assert result.valid is False
        assert result.broken_at == receipts[1].id

    @pytest.mark.asyncio
    async def test_empty_chain(self, guard):
        result = await guard.audit.verify_chain()
        assert result.valid is True
        assert result.checked == 0


class TestQuery:

    @pytest.mark.asyncio
    async def test_filters(self, guard, clock):
        await guard.audit.append(None, make_entry(entity_id="a"))
        clock.advance(hours=1)
        await guard.audit.append(None, make_entry(action=AuditAction.DELETE, entity_id="a"))
        clock.advance(hours=1)
        await guard.audit.append(None, make_entry(entity_type="variable", entity_id="b"))

        newest_first = await guard.audit.query()
        assert [e.entity_id for e in newest_first] == ["b", "a", "a"]
        deletes = await guard.audit.query(AuditFilter(action=AuditAction.DELETE))
        assert len(deletes) == 1
        variables = await guard.audit.query(AuditFilter(entity_type="variable"))
        assert [e.entity_id for e in variables] == ["b"]
        window = await guard.audit.query(AuditFilter(
            start=clock.now - timedelta(minutes=90), end=clock.now - timedelta(minutes=30),
        ))
        assert [e.action for e in window] == [AuditAction.DELETE]

    @pytest.mark.asyncio
    async def test_pagination(self, guard, clock):
        for index in range(5):
            await guard.audit.append(None, make_entry(entity_id=str(index)))
            clock.advance(seconds=1)
        page = await guard.audit.query(AuditFilter(limit=2, offset=1))
        assert [e.entity_id for e in page] == ["3", "2"]

    def test_filter_bounds(self):
        with pytest.raises(PydanticValidationError):
            AuditFilter(limit=0)
        with pytest.raises(PydanticValidationError):
            AuditFilter(offset=-1)

    @pytest.mark.asyncio
    async def test_entity_history(self, guard):
        await guard.audit.append(None, make_entry(entity_id="a"))
        await guard.audit.append(None, make_entry(entity_id="b"))
        await guard.audit.append(None, make_entry(action=AuditAction.UPDATE, entity_id="a"))
        history = await guard.audit.entity_history("environment", "a")
        assert [e.action for e in history] == [AuditAction.UPDATE, AuditAction.CREATE]

    @pytest.mark.asyncio
    async def test_stats(self, guard, clock):
        await guard.audit.append(None, make_entry())
        await guard.audit.append(None, make_entry(action=AuditAction.UPDATE))
        await guard.audit.append(None, make_entry(action=AuditAction.UPDATE))
        stats = await guard.audit.stats()
        assert stats.total == 3
        assert stats.by_action == {"update": 2, "create": 1}
        assert stats.recent_activity == {"2024-01-01": 3}


class TestPurge:

    @pytest.mark.asyncio
    async def test_purge_old_entries(self, guard, clock):
        await guard.audit.append(None, make_entry(entity_id="old"))
        clock.advance(days=40)
        await guard.audit.append(None, make_entry(entity_id="new"))
        removed = await guard.audit.purge(30)
        assert removed == 1
        remaining = await guard.audit.query()
        assert [e.entity_id for e in remaining] == ["new"]
        # the oldest survivor anchors the chain
        assert (await guard.audit.verify_chain()).valid is True

    @pytest.mark.asyncio
    async def test_purge_uses_configured_retention(self, guard, clock):
        await guard.audit.append(None, make_entry())
        clock.advance(days=guard.config.audit_retention_days + 1)
        assert await guard.purge_audit() == 1

    @pytest.mark.asyncio
    async def test_negative_retention(self, guard):
        with pytest.raises(ValidationError):
            await guard.audit.purge(-1)
