from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Callable

from dbkeeper.controller.base import ReconcileResult, write_status
from dbkeeper.core.config import Settings, get_settings
from dbkeeper.core.errors import InvalidCronError, RecordAlreadyExistsError, RecordNotFoundError
from dbkeeper.domain.records import (
    SCHEDULE_ACTIVE,
    SCHEDULE_FAILED,
    SCHEDULE_SUSPENDED,
    Backup,
    BackupSchedule,
    BackupSpec,
    ObjectMeta,
    OwnerReference,
    label,
)
from dbkeeper.persistence.store import RecordStore
from dbkeeper.services.cron import generate_backup_name, next_run
from dbkeeper.services.retention import SCHEDULE_LABEL, SCHEDULE_NAMESPACE_LABEL, RetentionEngine


logger = logging.getLogger(__name__)

SCHEDULE_FINALIZER = label("schedule-cleanup")
# Never requeue sooner than this, even when the next fire time is imminent.
MIN_REQUEUE_S = 1.0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def schedule_labels(schedule: BackupSchedule) -> dict[str, str]:
    return {SCHEDULE_LABEL: schedule.name, SCHEDULE_NAMESPACE_LABEL: schedule.namespace}


class ScheduleReconciler:
    """Create deterministic Backup records on a cron cadence and trigger retention."""

    record_type = BackupSchedule

    def __init__(
        self,
        store: RecordStore,
        retention: RetentionEngine | None = None,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._retention = retention
        self._settings = settings or get_settings()
        self._time_provider = time_provider or _utc_now
        self._background: set[asyncio.Task] = set()

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            schedule = await self._store.get(BackupSchedule, namespace, name)
        except RecordNotFoundError:
            return ReconcileResult()
        if schedule.is_deleting:
            return await self._finalize(schedule)
        if not schedule.has_finalizer(SCHEDULE_FINALIZER):
            schedule.add_finalizer(SCHEDULE_FINALIZER)
            await self._store.update(schedule)
            return ReconcileResult(requeue=True)

        if schedule.spec.suspend:
            return await write_status(
                self._store,
                schedule,
                phase=SCHEDULE_SUSPENDED,
                message="Schedule is suspended",
            )

        now = self._time_provider()
        last_run = schedule.status.last_backup_time or schedule.metadata.creation_timestamp or now
        try:
            due_at = next_run(schedule.spec.schedule, last_run, self._settings.schedule_timezone)
        except InvalidCronError as exc:
            logger.warning("schedule_invalid_cron name=%s/%s error=%s", namespace, name, exc)
            return await write_status(
                self._store,
                schedule,
                phase=SCHEDULE_FAILED,
                message=f"Invalid cron schedule: {exc}",
            )

        managed = await self._count_managed(schedule)
        if now >= due_at:
            return await self._trigger(schedule, due_at, now, managed)

        result = await write_status(
            self._store,
            schedule,
            requeue_after=max(MIN_REQUEUE_S, (due_at - now).total_seconds()),
            phase=SCHEDULE_ACTIVE,
            message=f"Next backup scheduled at {due_at.isoformat()}",
            next_scheduled_time=due_at,
            managed_backups=managed,
        )
        self._start_retention(schedule)
        return result

    async def _count_managed(self, schedule: BackupSchedule) -> int:
        return len(await self._store.list(Backup, schedule.namespace, labels=schedule_labels(schedule)))

    async def _trigger(self, schedule: BackupSchedule, due_at: datetime, now: datetime, managed: int) -> ReconcileResult:
        # The name derives from the scheduled instant, so racing evaluations collide on one record.
        backup_name = generate_backup_name(schedule.name, due_at)
        backup = Backup(
            metadata=ObjectMeta(
                name=backup_name,
                namespace=schedule.namespace,
                labels=schedule_labels(schedule),
                owner_references=[OwnerReference(kind=BackupSchedule.kind, name=schedule.name)],
            ),
            spec=BackupSpec(
                database_ref=schedule.spec.database_ref,
                storage_ref=schedule.spec.storage_ref,
                filename_template=schedule.spec.filename_template,
            ),
        )
        try:
            await self._store.create(backup)
            managed += 1
            logger.info("scheduled_backup_created schedule=%s/%s backup=%s", schedule.namespace, schedule.name, backup_name)
        except RecordAlreadyExistsError:
            logger.info("scheduled_backup_exists schedule=%s/%s backup=%s", schedule.namespace, schedule.name, backup_name)
        except Exception as exc:  # noqa: BLE001 - surface create failures on the schedule and retry.
            logger.exception("scheduled_backup_create_failed schedule=%s/%s backup=%s", schedule.namespace, schedule.name, backup_name)
            return await write_status(
                self._store,
                schedule,
                requeue_after=self._settings.dependency_retry_s,
                phase=SCHEDULE_FAILED,
                message=f"Failed to create backup {backup_name}: {exc}",
                next_scheduled_time=due_at,
            )

        next_due = next_run(schedule.spec.schedule, now, self._settings.schedule_timezone)
        return await write_status(
            self._store,
            schedule,
            requeue_after=max(MIN_REQUEUE_S, (next_due - now).total_seconds()),
            phase=SCHEDULE_ACTIVE,
            message=f"Created backup {backup_name}",
            last_backup_time=now,
            last_backup_name=backup_name,
            next_scheduled_time=next_due,
            managed_backups=managed,
        )

    def _start_retention(self, schedule: BackupSchedule) -> None:
        policy = schedule.spec.retention
        if self._retention is None or policy is None or policy.is_empty():
            return
        task = asyncio.create_task(self._run_retention(schedule))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_retention(self, schedule: BackupSchedule) -> None:
        try:
            await self._retention.run(schedule)
        except Exception:  # noqa: BLE001 - retention is opportunistic; the next pass retries.
            logger.exception("retention_failed schedule=%s/%s", schedule.namespace, schedule.name)

    async def drain(self) -> None:
        # Wait for background retention runs started by earlier reconciles.
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.drain()

    async def _finalize(self, schedule: BackupSchedule) -> ReconcileResult:
        if not schedule.has_finalizer(SCHEDULE_FINALIZER):
            return ReconcileResult()
        backups = await self._store.list(Backup, schedule.namespace, labels=schedule_labels(schedule))
        for backup in backups:
            try:
                await self._store.delete(Backup, backup.namespace, backup.name)
                logger.info("scheduled_backup_deleted schedule=%s/%s backup=%s", schedule.namespace, schedule.name, backup.name)
            except RecordNotFoundError:
                continue
            except Exception:  # noqa: BLE001 - one stuck backup must not block schedule removal.
                logger.warning("scheduled_backup_delete_failed backup=%s/%s", backup.namespace, backup.name, exc_info=True)
        schedule.remove_finalizer(SCHEDULE_FINALIZER)
        await self._store.update(schedule)
        logger.info("schedule_finalized name=%s/%s deleted_backups=%s", schedule.namespace, schedule.name, len(backups))
        return ReconcileResult()
