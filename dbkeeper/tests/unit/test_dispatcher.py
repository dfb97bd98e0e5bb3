from __future__ import annotations

import pytest

from dbkeeper.domain.records import (
    Backup,
    BackupSpec,
    BackupStorage,
    BackupStorageSpec,
    Database,
    DatabaseCluster,
    LocalStorageConfig,
    ObjectMeta,
)
from dbkeeper.services.dispatcher import (
    RUN_ID_ALPHABET,
    Dispatcher,
    ExecutionSubstrate,
    UnitFailed,
    UnitOwner,
    UnitParams,
    UnitRunning,
    UnitSucceeded,
    backup_unit_env,
    generate_run_id,
)
from dbkeeper.tests.utils.fakes import RecordingLauncher, finish_unit, make_harness, seed_dependencies


OWNER = UnitOwner(kind="backup", name="b1", namespace="default")
PARAMS = UnitParams(cluster="main", database="orders", env={"DB_HOST": "pg"}, backoff_limit=3, ttl_seconds_after_finished=3600)


def test_run_id_shape() -> None:
    run_id = generate_run_id()
    assert len(run_id) == 8
    assert set(run_id) <= set(RUN_ID_ALPHABET)


def test_owner_labels_and_unit_name() -> None:
    assert OWNER.labels() == {"dbkeeper.io/backup": "b1", "dbkeeper.io/backup-namespace": "default"}
    assert OWNER.unit_name("abcd1234") == "backup-b1-abcd1234"


@pytest.mark.asyncio
async def test_dispatch_labels_unit_and_launches() -> None:
    harness = make_harness()

    unit = await harness.dispatcher.dispatch(OWNER, "abcd1234", PARAMS)

    assert unit.metadata.name == "backup-b1-abcd1234"
    assert unit.metadata.namespace == harness.settings.operator_namespace
    assert unit.metadata.labels == {
        "dbkeeper.io/backup": "b1",
        "dbkeeper.io/backup-namespace": "default",
        "dbkeeper.io/cluster": "main",
        "dbkeeper.io/run-id": "abcd1234",
        "dbkeeper.io/database": "orders",
    }
    assert unit.spec.env == {"DB_HOST": "pg"}
    assert harness.launcher.launched == ["backup-b1-abcd1234"]


@pytest.mark.asyncio
async def test_dispatch_adopts_existing_unit() -> None:
    harness = make_harness()
    first = await harness.dispatcher.dispatch(OWNER, "abcd1234", PARAMS)

    second = await harness.dispatcher.dispatch(OWNER, "abcd1234", PARAMS)

    assert second.metadata.name == first.metadata.name
    assert harness.launcher.launched == ["backup-b1-abcd1234"]
    assert len(await harness.dispatcher.find_units(OWNER)) == 1


@pytest.mark.asyncio
async def test_launch_failure_removes_unit() -> None:
    harness = make_harness()
    substrate = ExecutionSubstrate(harness.store, RecordingLauncher(fail=True), namespace=harness.settings.operator_namespace)
    dispatcher = Dispatcher(substrate)

    with pytest.raises(ConnectionError):
        await dispatcher.dispatch(OWNER, "abcd1234", PARAMS)

    assert await dispatcher.find_units(OWNER) == []


@pytest.mark.asyncio
async def test_find_units_newest_first() -> None:
    harness = make_harness()
    await harness.dispatcher.dispatch(OWNER, "older000", PARAMS)
    harness.clock.advance(60)
    await harness.dispatcher.dispatch(OWNER, "newer000", PARAMS)

    units = await harness.dispatcher.find_units(OWNER)

    assert [unit.metadata.name for unit in units] == ["backup-b1-newer000", "backup-b1-older000"]


@pytest.mark.asyncio
async def test_poll_reports_unit_phases() -> None:
    harness = make_harness()
    namespace = harness.settings.operator_namespace
    await harness.dispatcher.dispatch(OWNER, "abcd1234", PARAMS)
    assert await harness.dispatcher.poll(OWNER, "backup-b1-abcd1234") == UnitRunning(unit_name="backup-b1-abcd1234")

    await finish_unit(harness.store, namespace, "backup-b1-abcd1234", annotations={"backup-path": "p"})
    outcome = await harness.dispatcher.poll(OWNER, "backup-b1-abcd1234")
    assert outcome == UnitSucceeded(unit_name="backup-b1-abcd1234", annotations={"backup-path": "p"})


@pytest.mark.asyncio
async def test_poll_falls_back_to_owner_labels() -> None:
    harness = make_harness()
    await harness.dispatcher.dispatch(OWNER, "abcd1234", PARAMS)
    await finish_unit(harness.store, harness.settings.operator_namespace, "backup-b1-abcd1234", reason="disk full")

    outcome = await harness.dispatcher.poll(OWNER, "backup-b1-gone0000")

    assert outcome == UnitFailed(unit_name="backup-b1-abcd1234", reason="disk full")


@pytest.mark.asyncio
async def test_poll_without_any_unit_fails() -> None:
    harness = make_harness()
    outcome = await harness.dispatcher.poll(OWNER, "backup-b1-gone0000")
    assert outcome == UnitFailed(unit_name=None, reason="backup execution unit not found")


@pytest.mark.asyncio
async def test_cancel_removes_every_owned_unit() -> None:
    harness = make_harness()
    await harness.dispatcher.dispatch(OWNER, "first000", PARAMS)
    await harness.dispatcher.dispatch(OWNER, "second00", PARAMS)
    other = UnitOwner(kind="backup", name="b2", namespace="default")
    await harness.dispatcher.dispatch(other, "third000", PARAMS)

    await harness.dispatcher.cancel(OWNER, "backup-b1-first000")
    await harness.dispatcher.cancel(OWNER, "backup-b1-first000")

    assert sorted(harness.launcher.aborted) == ["backup-b1-first000", "backup-b1-second00"]
    remaining = await harness.substrate.list_units({})
    assert [unit.metadata.name for unit in remaining] == ["backup-b2-third000"]


@pytest.mark.asyncio
async def test_backup_env_for_local_storage() -> None:
    harness = make_harness()
    await seed_dependencies(harness.store)
    storage = BackupStorage(
        metadata=ObjectMeta(name="local"),
        spec=BackupStorageSpec(local=LocalStorageConfig(root="/var/backups"), path_template="{cluster}/{database}/{year}"),
    )
    backup = Backup(
        metadata=ObjectMeta(name="b1", namespace="default"),
        spec=BackupSpec(database_ref="orders", storage_ref="local"),
    )

    env = backup_unit_env(
        backup=backup,
        database=await harness.store.get(Database, "default", "orders"),
        cluster=await harness.store.get(DatabaseCluster, "", "main"),
        storage=storage,
        run_id="abcd1234",
        unit_name="backup-b1-abcd1234",
    )

    assert env["STORAGE_TYPE"] == "local"
    assert env["LOCAL_ROOT"] == "/var/backups"
    assert env["PATH_TEMPLATE"] == "{cluster}/{database}/{year}"
    assert env["FILENAME_TEMPLATE"] == harness.settings.default_filename_template
    assert env["DB_PORT"] == "5432"
    assert env["DB_CREDENTIALS_SECRET"] == "main-admin"
    assert env["DATABASE_NAME"] == "orders"
    assert "S3_BUCKET" not in env
