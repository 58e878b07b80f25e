"""Tests for environments: lifecycle, cascade delete, clone, export and import."""
import pytest

from envguard.auth import Actor, Role
from envguard.exceptions import NotFoundError, PermissionDenied, UniquenessViolation, ValidationError
from envguard.models import (
    REDACTED,
    AuditAction,
    AuditFilter,
    EnvironmentSnapshot,
    SnapshotEnvironment,
    SnapshotVariable,
)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_create_and_get(self, guard):
        env = await guard.environments.create("staging", "Pre-production")
        assert (await guard.environments.get("staging")).id == env.id
        assert (await guard.environments.get_by_id(env.id)).name == "staging"
        [entry] = await guard.audit.query(AuditFilter(entity_id=env.id))
        assert entry.action == AuditAction.CREATE
        assert entry.entity_type == "environment"
        assert entry.new_value == "staging"

    @pytest.mark.asyncio
    async def test_list_sorted(self, guard):
        for name in ("prod", "dev", "staging"):
            await guard.environments.create(name)
        assert [e.name for e in await guard.environments.list()] == ["dev", "prod", "staging"]

    @pytest.mark.asyncio
    async def test_duplicate_name(self, guard, prod):
        before = (await guard.audit.stats()).total
        with pytest.raises(UniquenessViolation):
            await guard.environments.create("prod")
        assert (await guard.audit.stats()).total == before

    @pytest.mark.asyncio
    async def test_empty_name(self, guard):
        with pytest.raises(ValidationError):
            await guard.environments.create("   ")

    @pytest.mark.asyncio
    async def test_missing(self, guard):
        with pytest.raises(NotFoundError):
            await guard.environments.get("nowhere")
        with pytest.raises(NotFoundError):
            await guard.environments.get_by_id("nowhere")

    @pytest.mark.asyncio
    async def test_viewer_cannot_create(self, guard):
        with pytest.raises(PermissionDenied):
            await guard.environments.create("qa", actor=Actor(role=Role.VIEWER))

    @pytest.mark.asyncio
    async def test_delete_cascades(self, guard, prod):
        await guard.store.set_variable(prod.id, "API_KEY", "abc123", is_secret=True, rotation_days=1)
        await guard.store.set_variable(prod.id, "DEBUG", "false")
        await guard.rotation.rotate_key(prod.id, "API_KEY")

        removed = await guard.environments.delete("prod")
        assert removed == 2
        with pytest.raises(NotFoundError):
            await guard.environments.get("prod")
        assert await guard.db.fetchval("SELECT count(*) FROM variables") == 0
        assert await guard.db.fetchval("SELECT count(*) FROM rotation_history") == 0
        [entry] = await guard.audit.query(AuditFilter(
            action=AuditAction.DELETE, entity_type="environment",
        ))
        assert entry.old_value == "prod"
        assert entry.details.variables == 2


class TestClone:

    @pytest.mark.asyncio
    async def test_clone_copies_variables(self, guard, prod):
        await guard.store.set_variable(prod.id, "API_KEY", "abc123", is_secret=True, rotation_days=7)
        await guard.store.set_variable(prod.id, "DEBUG", "false", tags=["flags"])
        clone = await guard.environments.clone("prod", "prod-copy")
        assert clone.id != prod.id
        secret = await guard.store.get_variable(clone.id, "API_KEY", reveal=True)
        assert secret.value == "abc123"
        assert secret.rotation_period_days == 7
        assert secret.next_rotation is None
        plain = await guard.store.get_variable(clone.id, "DEBUG")
        assert plain.tags == ["flags"]
        [entry] = await guard.audit.query(AuditFilter(action=AuditAction.CLONE))
        assert entry.details.source == "prod"
        assert entry.details.cloned_variables == 2

    @pytest.mark.asyncio
    async def test_clone_without_variables(self, guard, prod):
        await guard.store.set_variable(prod.id, "DEBUG", "false")
        clone = await guard.environments.clone("prod", "empty", include_variables=False)
        assert await guard.store.list_variables(clone.id) == []

    @pytest.mark.asyncio
    async def test_clone_onto_existing(self, guard, prod):
        await guard.environments.create("dev")
        with pytest.raises(UniquenessViolation):
            await guard.environments.clone("prod", "dev")

    @pytest.mark.asyncio
    async def test_clone_missing_source(self, guard):
        with pytest.raises(NotFoundError):
            await guard.environments.clone("nowhere", "copy")


class TestExportImport:

    @pytest.mark.asyncio
    async def test_export_redacts_secrets(self, guard, prod):
        await guard.store.set_variable(prod.id, "API_KEY", "abc123", is_secret=True)
        await guard.store.set_variable(prod.id, "DEBUG", "false")
        snapshot = await guard.environments.export("prod")
        values = {v.key: v.value for v in snapshot.variables}
        assert values == {"API_KEY": REDACTED, "DEBUG": "false"}
        assert snapshot.environment.name == "prod"
        [entry] = await guard.audit.query(AuditFilter(action=AuditAction.EXPORT))
        assert entry.extra == {"include_secrets": "false"}

    @pytest.mark.asyncio
    async def test_export_with_secrets_keeps_ciphertext(self, guard, prod):
        var = await guard.store.set_variable(prod.id, "API_KEY", "abc123", is_secret=True)
        snapshot = await guard.environments.export("prod", include_secrets=True)
        [item] = snapshot.variables
        assert item.value == var.value
        assert "abc123" not in snapshot.model_dump_json()

    @pytest.mark.asyncio
    async def test_import_roundtrip(self, guard, prod):
        await guard.store.set_variable(prod.id, "API_KEY", "abc123", is_secret=True)
        await guard.store.set_variable(prod.id, "DEBUG", "false")
        snapshot = await guard.environments.export("prod", include_secrets=True)
        result = await guard.environments.import_snapshot(snapshot, name="restored")
        assert (result.variables, result.skipped) == (2, 0)
        restored = await guard.environments.get("restored")
        secret = await guard.store.get_variable(restored.id, "API_KEY", reveal=True)
        assert secret.value == "abc123"

    @pytest.mark.asyncio
    async def test_import_skips_redacted_secrets(self, guard, prod):
        await guard.store.set_variable(prod.id, "API_KEY", "abc123", is_secret=True)
        await guard.store.set_variable(prod.id, "DEBUG", "false")
        snapshot = await guard.environments.export("prod")
        result = await guard.environments.import_snapshot(snapshot, name="partial")
        assert (result.variables, result.skipped) == (1, 1)
        partial = await guard.environments.get("partial")
        assert [v.key for v in await guard.store.list_variables(partial.id)] == ["DEBUG"]

    @pytest.mark.asyncio
    async def test_import_existing_keys(self, guard, prod):
        await guard.store.set_variable(prod.id, "DEBUG", "false")
        snapshot = EnvironmentSnapshot(
            exported_at=guard.clock(),
            environment=SnapshotEnvironment(name="prod"),
            variables=[
                SnapshotVariable(key="DEBUG", value="true"),
                SnapshotVariable(key="NEW", value="1"),
            ],
        )
        kept = await guard.environments.import_snapshot(snapshot)
        assert (kept.variables, kept.skipped) == (1, 1)
        assert (await guard.store.get_variable(prod.id, "DEBUG")).value == "false"

        replaced = await guard.environments.import_snapshot(snapshot, overwrite=True)
        assert (replaced.variables, replaced.skipped) == (2, 0)
        assert (await guard.store.get_variable(prod.id, "DEBUG")).value == "true"
        entries = await guard.audit.query(AuditFilter(action=AuditAction.IMPORT))
        assert len(entries) == 2

    @pytest.mark.asyncio
    async def test_overwrite_with_plain_value_clears_rotation(self, guard, prod):
        await guard.store.set_variable(prod.id, "API_KEY", "abc123", is_secret=True, rotation_days=7)
        snapshot = EnvironmentSnapshot(
            exported_at=guard.clock(),
            environment=SnapshotEnvironment(name="prod"),
            variables=[SnapshotVariable(key="API_KEY", value="public")],
        )
        result = await guard.environments.import_snapshot(snapshot, overwrite=True)
        assert (result.variables, result.skipped) == (1, 0)
        var = await guard.store.get_variable(prod.id, "API_KEY")
        assert (var.value, var.is_secret, var.encrypted) == ("public", False, False)
        assert var.rotation_enabled is False
        assert var.rotation_period_days is None
        assert var.next_rotation is None
        assert await guard.rotation.due_secrets(prod.id, include_non_expired=True) == []
