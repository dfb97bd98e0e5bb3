from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Literal

from dbkeeper.controller.base import OperationReconciler, Prepared, resolve_targets
from dbkeeper.core.errors import RecordNotFoundError, SourceResolutionError
from dbkeeper.domain.records import PHASE_COMPLETED, Backup, Restore, label
from dbkeeper.persistence.store import RecordStore
from dbkeeper.services.dispatcher import UnitParams, UnitSucceeded, restore_unit_env
from dbkeeper.services.templates import format_duration


RESTORE_FINALIZER = label("restore-unit")


@dataclass(frozen=True)
class ResolvedSource:
    path: str
    storage_ref: str
    backup_name: str | None = None


async def resolve_source(store: RecordStore, restore: Restore) -> ResolvedSource:
    """Turn the restore's source selector into a concrete object path and storage.

    Exactly one of ``backup_ref``, ``latest_from`` and ``path`` must be set. Every
    failure here is a caller input error and is reported without retry.
    """
    source = restore.spec.source
    selected = [
        name
        for name, value in (
            ("backup_ref", source.backup_ref),
            ("latest_from", source.latest_from),
            ("path", source.path),
        )
        if value
    ]
    if not selected:
        raise SourceResolutionError("either backup_ref, latest_from, or path must be specified")
    if len(selected) > 1:
        raise SourceResolutionError(f"only one of backup_ref, latest_from, or path may be specified (got {', '.join(selected)})")

    if source.backup_ref is not None:
        namespace = source.backup_ref.namespace or restore.namespace
        try:
            backup = await store.get(Backup, namespace, source.backup_ref.name)
        except RecordNotFoundError as exc:
            raise SourceResolutionError(f"backup {namespace}/{source.backup_ref.name} not found") from exc
        if backup.status.phase != PHASE_COMPLETED:
            raise SourceResolutionError(
                f"backup {backup.name} is not completed (phase: {backup.status.phase or 'unknown'})"
            )
        if not backup.status.path:
            raise SourceResolutionError(f"backup {backup.name} has no path in status")
        return ResolvedSource(path=backup.status.path, storage_ref=backup.spec.storage_ref, backup_name=backup.name)

    if source.latest_from is not None:
        namespace = source.latest_from.namespace or restore.namespace
        database_ref = source.latest_from.database_ref
        candidates = [
            backup
            for backup in await store.list(Backup, namespace)
            if backup.spec.database_ref == database_ref
            and backup.status.phase == PHASE_COMPLETED
            and backup.status.path
            and backup.status.completed_at is not None
        ]
        if not candidates:
            raise SourceResolutionError(f"no completed backup found for database {database_ref}")
        latest = max(candidates, key=lambda backup: backup.status.completed_at)
        return ResolvedSource(path=latest.status.path, storage_ref=latest.spec.storage_ref, backup_name=latest.name)

    if not source.storage_ref:
        raise SourceResolutionError("storage_ref is required when path is specified")
    return ResolvedSource(path=source.path, storage_ref=source.storage_ref)


class RestoreReconciler(OperationReconciler[Restore]):
    record_type: ClassVar[type[Restore]] = Restore
    finalizer: ClassVar[str] = RESTORE_FINALIZER
    unit_kind: ClassVar[Literal["backup", "restore"]] = "restore"

    async def _prepare(self, record: Restore) -> Prepared:
        source = await resolve_source(self._store, record)
        targets = await resolve_targets(self._store, record.namespace, record.spec.database_ref, source.storage_ref)
        return Prepared(targets=targets, status_fields={"source_path": source.path})

    def _unit_params(self, record: Restore, prepared: Prepared, run_id: str, unit_name: str) -> UnitParams:
        targets = prepared.targets
        ttl = record.spec.ttl_after_completion_s
        return UnitParams(
            cluster=targets.cluster.metadata.name,
            database=targets.database.metadata.name,
            env=restore_unit_env(
                restore=record,
                database=targets.database,
                cluster=targets.cluster,
                storage=targets.storage,
                source_path=prepared.status_fields["source_path"],
                run_id=run_id,
                unit_name=unit_name,
            ),
            backoff_limit=self._settings.restore_unit_backoff_limit,
            ttl_seconds_after_finished=ttl if ttl is not None else self._settings.unit_ttl_after_finished_s,
        )

    def _completion_fields(self, record: Restore, outcome: UnitSucceeded, now: datetime) -> dict[str, Any]:
        started = record.status.started_at or now
        return {"duration": format_duration((now - started).total_seconds())}
