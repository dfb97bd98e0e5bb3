from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from dbkeeper.domain.records import (
    Backup,
    BackupSchedule,
    BackupScheduleSpec,
    BackupSpec,
    BackupStatus,
    ObjectMeta,
    RetentionPolicy,
)
from dbkeeper.services.object_storage import StoredObject
from dbkeeper.services.retention import (
    RETENTION_ANNOTATION,
    SCHEDULE_LABEL,
    SCHEDULE_NAMESPACE_LABEL,
    BackupObject,
    RetentionEngine,
    collect_backup_objects,
    parse_key_timestamp,
    plan_object_retention,
    plan_record_pruning,
)
from dbkeeper.tests.utils.fakes import FakeObjectStorage, make_harness, seed_dependencies


NOW = datetime(2026, 1, 20, 14, 45, tzinfo=timezone.utc)


def _daily_objects(days: int, prefix: str = "main/orders/") -> list[BackupObject]:
    objects = []
    for offset in range(days):
        stamp = (NOW - timedelta(days=offset)).replace(hour=2, minute=0)
        key = f"{prefix}{stamp.strftime('%Y%m%d-%H%M%S')}-run{offset:04d}.sql.gz"
        objects.append(BackupObject(key=key, timestamp=stamp))
    return objects


def _stored(objects: list[BackupObject]) -> list[StoredObject]:
    return [StoredObject(key=obj.key, size=1024) for obj in objects]


def test_forty_daily_backups_keep_seven() -> None:
    objects = _daily_objects(40)
    plan = plan_object_retention(objects, RetentionPolicy(keep_last=3, keep_daily=7), now=NOW)

    assert len(plan.keep) == 7
    assert len(plan.delete) == 33
    assert {obj.key for obj in plan.keep} == {obj.key for obj in objects[:7]}


def test_keep_last_only() -> None:
    objects = _daily_objects(5)
    plan = plan_object_retention(objects, RetentionPolicy(keep_last=2), now=NOW)
    assert [obj.key for obj in plan.keep] == [objects[0].key, objects[1].key]


def test_daily_tier_keeps_earliest_object_of_each_day() -> None:
    early = BackupObject(key="a/20260120-010000.sql.gz", timestamp=NOW.replace(hour=1, minute=0))
    late = BackupObject(key="a/20260120-120000.sql.gz", timestamp=NOW.replace(hour=12, minute=0))
    plan = plan_object_retention([late, early], RetentionPolicy(keep_daily=1), now=NOW)
    assert [obj.key for obj in plan.keep] == [early.key]
    assert [obj.key for obj in plan.delete] == [late.key]


def test_weekly_tier_uses_iso_weeks() -> None:
    # Two weeks back from Tuesday 2026-01-20 14:45 reaches into the ISO week of 2026-01-05.
    objects = _daily_objects(20)
    plan = plan_object_retention(objects, RetentionPolicy(keep_weekly=2), now=NOW)
    kept_days = sorted(obj.timestamp.date().isoformat() for obj in plan.keep)
    assert kept_days == ["2026-01-07", "2026-01-12", "2026-01-19"]


def test_monthly_tier_spans_year_boundary() -> None:
    objects = _daily_objects(40)
    plan = plan_object_retention(objects, RetentionPolicy(keep_monthly=2), now=NOW)
    kept_days = sorted(obj.timestamp.date().isoformat() for obj in plan.keep)
    assert kept_days == ["2025-12-12", "2026-01-01"]


def _object_at(*args: int) -> BackupObject:
    stamp = datetime(*args, tzinfo=timezone.utc)
    return BackupObject(key=f"main/orders/{stamp.strftime('%Y%m%d-%H%M%S')}.sql.gz", timestamp=stamp)


def test_monthly_tier_looks_back_whole_months() -> None:
    # Four months back from 2026-01-20 is 2025-09-20.
    inside = _object_at(2025, 9, 25, 2)
    outside = _object_at(2025, 9, 15, 2)
    plan = plan_object_retention([inside, outside], RetentionPolicy(keep_monthly=4), now=NOW)
    assert [obj.key for obj in plan.keep] == [inside.key]
    assert [obj.key for obj in plan.delete] == [outside.key]


def test_monthly_cutoff_clamps_to_short_months() -> None:
    month_end = _object_at(2026, 2, 28, 13)
    plan = plan_object_retention([month_end], RetentionPolicy(keep_monthly=1), now=datetime(2026, 3, 31, 12, tzinfo=timezone.utc))
    assert [obj.key for obj in plan.keep] == [month_end.key]


def test_weekly_tier_keeps_backup_from_previous_week_inside_window() -> None:
    # Saturday 2026-01-17 sits inside the seven days before Tuesday 2026-01-20 12:00.
    saturday = _object_at(2026, 1, 17, 2)
    stale = _object_at(2026, 1, 13, 2)
    plan = plan_object_retention([saturday, stale], RetentionPolicy(keep_weekly=1), now=datetime(2026, 1, 20, 12, tzinfo=timezone.utc))
    assert [obj.key for obj in plan.keep] == [saturday.key]
    assert [obj.key for obj in plan.delete] == [stale.key]


def test_tiers_union() -> None:
    objects = _daily_objects(40)
    plan = plan_object_retention(objects, RetentionPolicy(keep_daily=7, keep_monthly=2), now=NOW)
    assert len(plan.keep) == 9


def test_key_timestamp_falls_back_to_listing_time() -> None:
    listed = datetime(2026, 1, 1, tzinfo=timezone.utc)
    collected = collect_backup_objects(
        [
            StoredObject(key="main/orders/20260115-020000-x.sql.gz", size=1),
            StoredObject(key="main/orders/manual.sql.gz", size=1, created_at=listed),
            StoredObject(key="main/orders/unknown.sql.gz", size=1),
        ]
    )
    assert [obj.timestamp for obj in collected] == [datetime(2026, 1, 15, 2, tzinfo=timezone.utc), listed]
    assert parse_key_timestamp("x/20261399-250000.sql.gz") is None


def _backup(name: str, phase: str, created: datetime) -> Backup:
    return Backup(
        metadata=ObjectMeta(name=name, namespace="default", creation_timestamp=created),
        spec=BackupSpec(database_ref="orders", storage_ref="s3-primary"),
        status=BackupStatus(phase=phase),
    )


def test_record_pruning_never_touches_in_flight_backups() -> None:
    backups = [_backup("b0", "Running", NOW - timedelta(days=6))]
    for index, phase in enumerate(("Completed", "Failed", "Completed", "Failed", "Completed"), start=1):
        backups.append(_backup(f"b{index}", phase, NOW - timedelta(days=6 - index)))

    pruned = plan_record_pruning(backups, 2)

    assert [backup.name for backup in pruned] == ["b3", "b2", "b1"]
    assert "b0" not in {backup.name for backup in pruned}
    assert plan_record_pruning(backups, None) == []


async def _seed_schedule(store, retention: RetentionPolicy | None, path_template: str | None = None) -> BackupSchedule:
    await seed_dependencies(store, path_template=path_template)
    return await store.create(
        BackupSchedule(
            metadata=ObjectMeta(name="nightly", namespace="default"),
            spec=BackupScheduleSpec(
                schedule="0 2 * * *",
                database_ref="orders",
                storage_ref="s3-primary",
                retention=retention,
            ),
        )
    )


def _engine(harness, storage: FakeObjectStorage) -> RetentionEngine:
    return RetentionEngine(
        harness.store,
        storage_factory=lambda _storage: storage,
        debounce_s=60,
        time_provider=harness.clock,
    )


@pytest.mark.asyncio
async def test_engine_deletes_expired_objects_and_marks_schedule() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_last=3, keep_daily=7))
    storage = FakeObjectStorage(_stored(_daily_objects(40)))

    report = await _engine(harness, storage).run(schedule)

    assert storage.list_calls == ["main/orders/"]
    assert report.scanned == 40
    assert report.kept == 7
    assert len(report.deleted_objects) == 33
    assert len(storage.objects) == 7
    stored = await harness.store.get(BackupSchedule, "default", "nightly")
    assert stored.metadata.annotations[RETENTION_ANNOTATION] == "2026-01-20T14:45:00Z"


@pytest.mark.asyncio
async def test_engine_is_debounced_sequentially() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_daily=7))
    storage = FakeObjectStorage(_stored(_daily_objects(10)))
    engine = _engine(harness, storage)

    first = await engine.run(schedule)
    second = await engine.run(schedule)

    assert first.skipped is None
    assert second.skipped == "debounced"
    assert len(storage.list_calls) == 1

    harness.clock.advance(61)
    third = await engine.run(schedule)
    assert third.skipped is None
    assert len(storage.list_calls) == 2


@pytest.mark.asyncio
async def test_engine_is_debounced_across_concurrent_runs() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_daily=7))
    storage = FakeObjectStorage(_stored(_daily_objects(10)))
    engine = _engine(harness, storage)

    reports = await asyncio.gather(engine.run(schedule), engine.run(schedule), engine.run(schedule))

    assert len(storage.list_calls) == 1
    assert sorted(report.skipped or "" for report in reports) == ["", "debounced", "debounced"]


@pytest.mark.asyncio
async def test_engine_reports_partial_delete_failures() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_last=1))
    objects = _daily_objects(3)
    storage = FakeObjectStorage(_stored(objects), failing_keys={objects[2].key})

    report = await _engine(harness, storage).run(schedule)

    assert report.deleted_objects == [objects[1].key]
    assert report.failed_objects == {objects[2].key: "AccessDenied"}
    assert objects[2].key in storage.objects


@pytest.mark.asyncio
async def test_engine_skips_without_policy() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, None)
    storage = FakeObjectStorage(_stored(_daily_objects(3)))

    report = await _engine(harness, storage).run(schedule)

    assert report.skipped == "no retention policy"
    assert storage.list_calls == []


@pytest.mark.asyncio
async def test_engine_survives_listing_failure() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_last=1))
    storage = FakeObjectStorage()
    storage.list_error = "SlowDown"

    report = await _engine(harness, storage).run(schedule)

    assert report.scanned == 0
    assert storage.delete_calls == []


@pytest.mark.asyncio
async def test_engine_prunes_schedule_owned_records() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_last=1))
    labels = {SCHEDULE_LABEL: "nightly", SCHEDULE_NAMESPACE_LABEL: "default"}
    for name, phase in (("nightly-1", "Completed"), ("nightly-2", "Running"), ("nightly-3", "Completed")):
        harness.clock.advance(3600)
        await harness.store.create(
            Backup(
                metadata=ObjectMeta(name=name, namespace="default", labels=labels),
                spec=BackupSpec(database_ref="orders", storage_ref="s3-primary"),
                status=BackupStatus(phase=phase),
            )
        )
    await harness.store.create(
        Backup(
            metadata=ObjectMeta(name="manual", namespace="default"),
            spec=BackupSpec(database_ref="orders", storage_ref="s3-primary"),
            status=BackupStatus(phase="Completed"),
        )
    )

    report = await _engine(harness, FakeObjectStorage()).run(schedule)

    assert report.deleted_records == ["nightly-1"]
    remaining = {backup.name for backup in await harness.store.list(Backup, "default")}
    assert remaining == {"nightly-2", "nightly-3", "manual"}


@pytest.mark.asyncio
@pytest.mark.parametrize("template", ["{year}/{cluster}/{database}", "{cluster}/{year}/{database}", "{cluster}/backups"])
async def test_engine_skips_objects_when_template_does_not_isolate_database(template: str) -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_last=1), path_template=template)
    keys = [
        "2026/main/orders/20260120-020000-a.sql.gz",
        "2026/main/orders/20260118-020000-a.sql.gz",
        "2026/main/billing/20260119-020000-b.sql.gz",
    ]
    storage = FakeObjectStorage([StoredObject(key=key, size=1024) for key in keys])

    report = await _engine(harness, storage).run(schedule)

    assert report.skipped is None
    assert report.scanned == 0
    assert storage.list_calls == []
    assert storage.delete_calls == []
    assert set(storage.objects) == set(keys)
    stored = await harness.store.get(BackupSchedule, "default", "nightly")
    assert stored.metadata.annotations[RETENTION_ANNOTATION] == "2026-01-20T14:45:00Z"


@pytest.mark.asyncio
async def test_engine_lists_scoped_prefix_before_date_segments() -> None:
    harness = make_harness()
    schedule = await _seed_schedule(harness.store, RetentionPolicy(keep_last=1), path_template="{cluster}/{database}/{year}")
    storage = FakeObjectStorage(_stored(_daily_objects(2)))

    report = await _engine(harness, storage).run(schedule)

    assert storage.list_calls == ["main/orders/"]
    assert len(report.deleted_objects) == 1
