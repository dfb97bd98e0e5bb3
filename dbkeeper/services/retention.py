from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Callable, Hashable, Iterable

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import (
    DbKeeperError,
    ObjectStorageError,
    RecordConflictError,
    RecordNotFoundError,
    UnscopedPrefixError,
)
from dbkeeper.domain.records import (
    TERMINAL_PHASES,
    Backup,
    BackupSchedule,
    BackupStorage,
    Database,
    DatabaseCluster,
    RetentionPolicy,
    label,
)
from dbkeeper.persistence.store import RecordStore
from dbkeeper.services.object_storage import ObjectStorage, StoredObject, build_object_storage
from dbkeeper.services.templates import prefix_is_scoped, storage_prefix


logger = logging.getLogger(__name__)

RETENTION_ANNOTATION = label("last-retention-cleanup")
SCHEDULE_LABEL = label("schedule")
SCHEDULE_NAMESPACE_LABEL = label("schedule-namespace")
# Re-fetch attempts when the debounce marker write races another writer.
CLAIM_ATTEMPTS = 3

_KEY_TIMESTAMP = re.compile(r"(\d{8}-\d{6})")
_KEY_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass(frozen=True)
class BackupObject:
    key: str
    timestamp: datetime
    size: int = 0


@dataclass(frozen=True)
class RetentionPlan:
    keep: list[BackupObject]
    delete: list[BackupObject]


@dataclass
class RetentionReport:
    scanned: int = 0
    kept: int = 0
    deleted_objects: list[str] = field(default_factory=list)
    failed_objects: dict[str, str] = field(default_factory=dict)
    deleted_records: list[str] = field(default_factory=list)
    skipped: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_marker(value: datetime) -> str:
    # RFC 3339 in UTC, second precision.
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_marker(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_key_timestamp(key: str) -> datetime | None:
    match = _KEY_TIMESTAMP.search(key)
    if match is None:
        return None
    try:
        return datetime.strptime(match.group(1), _KEY_TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def collect_backup_objects(objects: Iterable[StoredObject]) -> list[BackupObject]:
    collected = []
    for obj in objects:
        timestamp = parse_key_timestamp(obj.key) or obj.created_at
        if timestamp is None:
            # Without an age the object can be neither kept nor expired.
            logger.debug("retention_object_skipped key=%s reason=no_timestamp", obj.key)
            continue
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        collected.append(BackupObject(key=obj.key, timestamp=timestamp, size=obj.size))
    return collected


def _day_bucket(value: datetime) -> Hashable:
    return value.astimezone(timezone.utc).date()


def _week_bucket(value: datetime) -> Hashable:
    iso = value.astimezone(timezone.utc).isocalendar()
    return (iso[0], iso[1])


def _month_bucket(value: datetime) -> Hashable:
    utc = value.astimezone(timezone.utc)
    return (utc.year, utc.month)


def _months_before(now: datetime, count: int) -> datetime:
    # Calendar month subtraction; the day is clamped to the target month's length.
    utc = now.astimezone(timezone.utc)
    index = utc.year * 12 + utc.month - 1 - count
    year, month = divmod(index, 12)
    day = min(utc.day, calendar.monthrange(year, month + 1)[1])
    return utc.replace(year=year, month=month + 1, day=day)


def _first_per_bucket(
    oldest_first: list[BackupObject],
    bucket_of: Callable[[datetime], Hashable],
    cutoff: datetime,
) -> set[str]:
    kept: dict[Hashable, str] = {}
    for obj in oldest_first:
        if obj.timestamp < cutoff:
            continue
        bucket = bucket_of(obj.timestamp)
        if bucket not in kept:
            kept[bucket] = obj.key
    return set(kept.values())


def plan_object_retention(
    objects: Iterable[BackupObject],
    policy: RetentionPolicy,
    *,
    now: datetime,
) -> RetentionPlan:
    """Split backup objects into keep and delete sets for a tiered policy.

    ``keep_last`` keeps the N newest objects. Each calendar tier looks back from
    ``now`` by N days, N weeks or N months and keeps the earliest object of every
    UTC day, ISO week or month inside that window. An object kept by any tier is
    kept.
    """
    newest_first = sorted(objects, key=lambda obj: obj.timestamp, reverse=True)
    oldest_first = list(reversed(newest_first))
    keep: set[str] = set()
    if policy.keep_last:
        keep.update(obj.key for obj in newest_first[: policy.keep_last])
    if policy.keep_daily:
        keep |= _first_per_bucket(oldest_first, _day_bucket, now - timedelta(days=policy.keep_daily))
    if policy.keep_weekly:
        keep |= _first_per_bucket(oldest_first, _week_bucket, now - timedelta(weeks=policy.keep_weekly))
    if policy.keep_monthly:
        keep |= _first_per_bucket(oldest_first, _month_bucket, _months_before(now, policy.keep_monthly))
    return RetentionPlan(
        keep=[obj for obj in newest_first if obj.key in keep],
        delete=[obj for obj in newest_first if obj.key not in keep],
    )


def plan_record_pruning(backups: Iterable[Backup], keep_last: int | None) -> list[Backup]:
    # Records are bounded by keep_last only; in-flight records are never pruned.
    if not keep_last:
        return []
    oldest = datetime.min.replace(tzinfo=timezone.utc)
    newest_first = sorted(
        backups,
        key=lambda backup: backup.metadata.creation_timestamp or oldest,
        reverse=True,
    )
    return [backup for backup in newest_first[keep_last:] if backup.status.phase in TERMINAL_PHASES]


def retention_due(schedule: BackupSchedule, now: datetime, debounce_s: float) -> bool:
    last_run = parse_marker(schedule.metadata.annotations.get(RETENTION_ANNOTATION))
    return last_run is None or (now - last_run).total_seconds() >= debounce_s


class RetentionEngine:
    def __init__(
        self,
        store: RecordStore,
        *,
        storage_factory: Callable[[BackupStorage], ObjectStorage] = build_object_storage,
        debounce_s: float | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        settings = get_settings()
        self._store = store
        self._storage_factory = storage_factory
        self._debounce_s = debounce_s if debounce_s is not None else settings.retention_debounce_s
        self._default_path_template = settings.default_path_template
        self._time_provider = time_provider or _utc_now

    async def _claim(self, schedule: BackupSchedule, now: datetime) -> bool:
        # Read-recompute-write the debounce marker; a fresh marker means another run won.
        for _ in range(CLAIM_ATTEMPTS):
            try:
                fresh = await self._store.get(BackupSchedule, schedule.namespace, schedule.name)
            except RecordNotFoundError:
                return False
            if fresh.is_deleting or not retention_due(fresh, now, self._debounce_s):
                return False
            fresh.metadata.annotations[RETENTION_ANNOTATION] = format_marker(now)
            try:
                await self._store.update(fresh)
                return True
            except RecordConflictError:
                continue
        return False

    async def run(self, schedule: BackupSchedule) -> RetentionReport:
        policy = schedule.spec.retention
        if policy is None or policy.is_empty():
            return RetentionReport(skipped="no retention policy")
        now = self._time_provider()
        if not await self._claim(schedule, now):
            logger.debug("retention_debounced schedule=%s/%s", schedule.namespace, schedule.name)
            return RetentionReport(skipped="debounced")

        report = RetentionReport()
        await self._prune_objects(schedule, policy, now, report)
        await self._prune_records(schedule, policy, report)
        logger.info(
            "retention_applied schedule=%s/%s scanned=%s kept=%s deleted_objects=%s failed_objects=%s deleted_records=%s",
            schedule.namespace,
            schedule.name,
            report.scanned,
            report.kept,
            len(report.deleted_objects),
            len(report.failed_objects),
            len(report.deleted_records),
        )
        return report

    async def resolve_prefix(self, schedule: BackupSchedule) -> tuple[BackupStorage, str]:
        database = await self._store.get(Database, schedule.namespace, schedule.spec.database_ref)
        cluster = await self._store.get(DatabaseCluster, "", database.spec.cluster_ref)
        storage = await self._store.get(BackupStorage, "", schedule.spec.storage_ref)
        template = storage.spec.path_template or self._default_path_template
        if not prefix_is_scoped(template):
            raise UnscopedPrefixError(
                f"path template {template!r} of storage {storage.name!r} does not place "
                "{cluster} and {database} before run-dependent placeholders"
            )
        return storage, storage_prefix(template, cluster.metadata.name, database.effective_name)

    async def _prune_objects(
        self,
        schedule: BackupSchedule,
        policy: RetentionPolicy,
        now: datetime,
        report: RetentionReport,
    ) -> None:
        try:
            storage, prefix = await self.resolve_prefix(schedule)
        except UnscopedPrefixError as exc:
            # Listing would cover other databases' backups.
            logger.warning("retention_prefix_unscoped schedule=%s/%s error=%s", schedule.namespace, schedule.name, exc)
            return
        except DbKeeperError as exc:
            logger.warning("retention_prefix_unresolved schedule=%s/%s error=%s", schedule.namespace, schedule.name, exc)
            return
        try:
            client = self._storage_factory(storage)
            objects = collect_backup_objects(await client.list(prefix))
        except ObjectStorageError as exc:
            logger.warning("retention_listing_failed storage=%s prefix=%s error=%s", storage.name, prefix, exc)
            return
        plan = plan_object_retention(objects, policy, now=now)
        report.scanned = len(objects)
        report.kept = len(plan.keep)
        if not plan.delete:
            return
        results = await client.delete([obj.key for obj in plan.delete])
        for key, error in results.items():
            if error is None:
                report.deleted_objects.append(key)
                logger.info("retention_object_deleted key=%s", key)
            else:
                report.failed_objects[key] = error
                logger.warning("retention_object_delete_failed key=%s error=%s", key, error)

    async def _prune_records(self, schedule: BackupSchedule, policy: RetentionPolicy, report: RetentionReport) -> None:
        if not policy.keep_last:
            return
        backups = await self._store.list(
            Backup,
            schedule.namespace,
            labels={SCHEDULE_LABEL: schedule.name, SCHEDULE_NAMESPACE_LABEL: schedule.namespace},
        )
        for backup in plan_record_pruning(backups, policy.keep_last):
            try:
                await self._store.delete(Backup, backup.namespace, backup.name)
            except RecordNotFoundError:
                continue
            except Exception:  # noqa: BLE001 - record pruning is best effort per item.
                logger.warning("retention_record_delete_failed backup=%s/%s", backup.namespace, backup.name, exc_info=True)
                continue
            report.deleted_records.append(backup.name)
            logger.info("retention_record_deleted backup=%s/%s", backup.namespace, backup.name)
