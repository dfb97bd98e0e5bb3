from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Literal

from dbkeeper.controller.base import OperationReconciler, Prepared, resolve_targets
from dbkeeper.domain.records import Backup, label
from dbkeeper.services.dispatcher import UnitParams, UnitSucceeded, backup_unit_env
from dbkeeper.services.templates import format_duration


BACKUP_FINALIZER = label("backup-unit")

# Result annotations written by the backup runner.
RESULT_PATH = "backup-path"
RESULT_SIZE = "backup-size-human"
RESULT_DURATION = "backup-duration"


class BackupReconciler(OperationReconciler[Backup]):
    """Drive a Backup through Pending -> Running -> Completed/Failed."""

    record_type: ClassVar[type[Backup]] = Backup
    finalizer: ClassVar[str] = BACKUP_FINALIZER
    unit_kind: ClassVar[Literal["backup", "restore"]] = "backup"

    async def _prepare(self, record: Backup) -> Prepared:
        targets = await resolve_targets(
            self._store,
            record.namespace,
            record.spec.database_ref,
            record.spec.storage_ref,
        )
        return Prepared(targets=targets)

    def _unit_params(self, record: Backup, prepared: Prepared, run_id: str, unit_name: str) -> UnitParams:
        targets = prepared.targets
        ttl = record.spec.ttl_after_completion_s
        return UnitParams(
            cluster=targets.cluster.metadata.name,
            database=targets.database.metadata.name,
            env=backup_unit_env(
                backup=record,
                database=targets.database,
                cluster=targets.cluster,
                storage=targets.storage,
                run_id=run_id,
                unit_name=unit_name,
            ),
            backoff_limit=self._settings.backup_unit_backoff_limit,
            ttl_seconds_after_finished=ttl if ttl is not None else self._settings.unit_ttl_after_finished_s,
        )

    def _completion_fields(self, record: Backup, outcome: UnitSucceeded, now: datetime) -> dict[str, Any]:
        annotations = outcome.annotations
        duration = annotations.get(RESULT_DURATION)
        if not duration and record.status.started_at is not None:
            duration = format_duration((now - record.status.started_at).total_seconds())
        return {
            "path": annotations.get(RESULT_PATH),
            "size": annotations.get(RESULT_SIZE) or annotations.get("backup-size"),
            "duration": duration,
        }
