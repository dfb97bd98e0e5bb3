from __future__ import annotations

from datetime import timedelta

import pytest

from dbkeeper.controller.restore import RESTORE_FINALIZER, RestoreReconciler, resolve_source
from dbkeeper.core.errors import SourceResolutionError
from dbkeeper.domain.records import (
    Backup,
    BackupReference,
    BackupSpec,
    BackupStatus,
    ExecutionUnit,
    LatestFromSource,
    ObjectMeta,
    Restore,
    RestoreSource,
    RestoreSpec,
)
from dbkeeper.tests.utils.fakes import finish_unit, make_harness, seed_dependencies


def _reconciler(harness) -> RestoreReconciler:
    return RestoreReconciler(
        harness.store,
        harness.dispatcher,
        harness.guard,
        settings=harness.settings,
        time_provider=harness.clock,
    )


async def _completed_backup(harness, name: str, hours_ago: int, *, phase: str = "Completed", database_ref: str = "orders") -> Backup:
    completed_at = harness.clock.now - timedelta(hours=hours_ago)
    return await harness.store.create(
        Backup(
            metadata=ObjectMeta(name=name, namespace="default"),
            spec=BackupSpec(database_ref=database_ref, storage_ref="s3-primary"),
            status=BackupStatus(
                phase=phase,
                path=f"main/{database_ref}/{name}.sql.gz" if phase == "Completed" else None,
                completed_at=completed_at if phase == "Completed" else None,
            ),
        )
    )


def _restore(source: RestoreSource, **spec) -> Restore:
    return Restore(
        metadata=ObjectMeta(name="r1", namespace="default"),
        spec=RestoreSpec(source=source, database_ref="orders", **spec),
    )


async def _run(harness, restore: Restore) -> Restore:
    await harness.store.create(restore)
    reconciler = _reconciler(harness)
    await reconciler.reconcile("default", restore.name)
    await reconciler.reconcile("default", restore.name)
    return await harness.store.get(Restore, "default", restore.name)


@pytest.mark.asyncio
async def test_latest_from_picks_most_recent_completed_backup() -> None:
    harness = make_harness()
    await seed_dependencies(harness.store)
    await _completed_backup(harness, "nightly-a", 2)
    await _completed_backup(harness, "nightly-b", 1)
    await _completed_backup(harness, "nightly-c", 0)
    await _completed_backup(harness, "nightly-d", 0, phase="Running")
    await _completed_backup(harness, "other", 0, database_ref="payments")

    restore = await _run(harness, _restore(RestoreSource(latest_from=LatestFromSource(database_ref="orders")), on_conflict="drop"))

    assert restore.metadata.finalizers == [RESTORE_FINALIZER]
    assert restore.status.phase == "Running"
    assert restore.status.source_path == "main/orders/nightly-c.sql.gz"
    unit = await harness.store.get(ExecutionUnit, harness.settings.operator_namespace, restore.status.unit_name)
    assert unit.spec.operation == "restore"
    assert unit.spec.backoff_limit == 0
    assert unit.spec.env["SOURCE_PATH"] == "main/orders/nightly-c.sql.gz"
    assert unit.spec.env["ON_CONFLICT"] == "drop"
    assert unit.spec.env["RESTORE_NAME"] == "r1"


@pytest.mark.asyncio
async def test_backup_ref_resolves_path_and_storage() -> None:
    harness = make_harness()
    await seed_dependencies(harness.store)
    await _completed_backup(harness, "nightly-a", 1)

    resolved = await resolve_source(
        harness.store,
        _restore(RestoreSource(backup_ref=BackupReference(name="nightly-a"))),
    )

    assert resolved.path == "main/orders/nightly-a.sql.gz"
    assert resolved.storage_ref == "s3-primary"
    assert resolved.backup_name == "nightly-a"


@pytest.mark.asyncio
async def test_explicit_path_requires_storage() -> None:
    harness = make_harness()
    with pytest.raises(SourceResolutionError, match="storage_ref is required"):
        await resolve_source(harness.store, _restore(RestoreSource(path="main/orders/x.sql.gz")))

    resolved = await resolve_source(
        harness.store,
        _restore(RestoreSource(path="main/orders/x.sql.gz", storage_ref="s3-primary")),
    )
    assert resolved.path == "main/orders/x.sql.gz"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "source,message",
    [
        (RestoreSource(), "either backup_ref, latest_from, or path must be specified"),
        (
            RestoreSource(backup_ref=BackupReference(name="nightly-a"), path="x.sql.gz", storage_ref="s3-primary"),
            "only one of backup_ref, latest_from, or path may be specified (got backup_ref, path)",
        ),
        (RestoreSource(backup_ref=BackupReference(name="ghost")), "backup default/ghost not found"),
        (RestoreSource(backup_ref=BackupReference(name="running")), "backup running is not completed (phase: Running)"),
        (RestoreSource(latest_from=LatestFromSource(database_ref="payments")), "no completed backup found for database payments"),
    ],
)
async def test_invalid_source_fails_without_dispatch(source: RestoreSource, message: str) -> None:
    harness = make_harness()
    await seed_dependencies(harness.store)
    await _completed_backup(harness, "nightly-a", 1)
    await _completed_backup(harness, "running", 0, phase="Running")

    restore = await _run(harness, _restore(source))

    assert restore.status.phase == "Failed"
    assert restore.status.message == message
    assert harness.launcher.launched == []


@pytest.mark.asyncio
async def test_restore_completion_records_duration() -> None:
    harness = make_harness()
    await seed_dependencies(harness.store)
    restore = await _run(harness, _restore(RestoreSource(path="main/orders/x.sql.gz", storage_ref="s3-primary")))
    await finish_unit(harness.store, harness.settings.operator_namespace, restore.status.unit_name)
    harness.clock.advance(45)

    await _reconciler(harness).reconcile("default", "r1")

    completed = await harness.store.get(Restore, "default", "r1")
    assert completed.status.phase == "Completed"
    assert completed.status.message == "Restore completed successfully"
    assert completed.status.duration == "45s"
    assert completed.status.source_path == "main/orders/x.sql.gz"


@pytest.mark.asyncio
async def test_restore_shares_cluster_ceiling_with_backups() -> None:
    harness = make_harness(ceiling=1)
    await seed_dependencies(harness.store)
    await _completed_backup(harness, "nightly-a", 1)
    first = await _run(harness, _restore(RestoreSource(backup_ref=BackupReference(name="nightly-a"))))
    assert first.status.phase == "Running"

    second = Restore(
        metadata=ObjectMeta(name="r2", namespace="default"),
        spec=RestoreSpec(source=RestoreSource(backup_ref=BackupReference(name="nightly-a")), database_ref="orders"),
    )
    throttled = await _run(harness, second)

    assert throttled.status.phase == "Pending"
    assert "active: 1/1" in throttled.status.message
