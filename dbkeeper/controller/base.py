from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Callable, ClassVar, Generic, Literal, Protocol, TypeVar

from dbkeeper.core.config import Settings, get_settings
from dbkeeper.core.errors import (
    DependencyNotReadyError,
    InvalidSpecError,
    RecordNotFoundError,
    SourceResolutionError,
)
from dbkeeper.domain.records import (
    CLUSTER_CONNECTED,
    DEPENDENCY_READY,
    PHASE_COMPLETED,
    PHASE_FAILED,
    PHASE_PENDING,
    PHASE_RUNNING,
    TERMINAL_PHASES,
    BackupStorage,
    Database,
    DatabaseCluster,
    Resource,
    label,
)
from dbkeeper.persistence.store import RecordStore
from dbkeeper.services.dispatcher import (
    Dispatcher,
    UnitFailed,
    UnitOwner,
    UnitParams,
    UnitRunning,
    UnitSucceeded,
    generate_run_id,
)
from dbkeeper.services.guard import ConcurrencyGuard, Defer, fingerprint, is_already_terminal


logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

RUN_ID_LABEL = label("run-id")


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: float | None = None
    requeue: bool = False


class Reconciler(Protocol):
    record_type: type[Resource]

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def write_status(
    store: RecordStore,
    record: R,
    *,
    requeue_after: float | None = None,
    **fields: Any,
) -> ReconcileResult:
    # Skip no-op writes so repeated passes do not churn resource versions.
    before = record.status_payload()
    for key, value in fields.items():
        setattr(record.status, key, value)
    if record.status_payload() != before:
        await store.update_status(record)
    return ReconcileResult(requeue_after=requeue_after)


@dataclass(frozen=True)
class Targets:
    database: Database
    cluster: DatabaseCluster
    storage: BackupStorage


async def resolve_targets(store: RecordStore, namespace: str, database_ref: str, storage_ref: str | None) -> Targets:
    """Resolve database, cluster and storage; each must exist and be ready."""
    if not database_ref:
        raise InvalidSpecError("database reference is required")
    if not storage_ref:
        raise InvalidSpecError("storage reference is required")
    try:
        database = await store.get(Database, namespace, database_ref)
    except RecordNotFoundError as exc:
        raise DependencyNotReadyError(f"database {database_ref} not found") from exc
    if database.status.phase != DEPENDENCY_READY:
        raise DependencyNotReadyError(f"database {database_ref} is not ready (phase: {database.status.phase or 'unknown'})")
    cluster_ref = database.spec.cluster_ref
    try:
        cluster = await store.get(DatabaseCluster, "", cluster_ref)
    except RecordNotFoundError as exc:
        raise DependencyNotReadyError(f"cluster {cluster_ref} not found") from exc
    if cluster.status.phase != CLUSTER_CONNECTED:
        raise DependencyNotReadyError(f"cluster {cluster_ref} is not connected (phase: {cluster.status.phase or 'unknown'})")
    try:
        storage = await store.get(BackupStorage, "", storage_ref)
    except RecordNotFoundError as exc:
        raise DependencyNotReadyError(f"storage {storage_ref} not found") from exc
    if storage.status.phase != DEPENDENCY_READY:
        raise DependencyNotReadyError(f"storage {storage_ref} is not ready (phase: {storage.status.phase or 'unknown'})")
    return Targets(database=database, cluster=cluster, storage=storage)


@dataclass(frozen=True)
class Prepared:
    targets: Targets
    status_fields: dict[str, Any] = field(default_factory=dict)


class OperationReconciler(Generic[R]):
    """Finalizer, fingerprint, guard, dispatch and poll loop shared by backups and restores.

    Subclasses resolve their inputs in ``_prepare`` and describe the unit in
    ``_unit_params``; everything else (status transitions, pending timeout,
    deletion) lives here.
    """

    record_type: ClassVar[type[Resource]]
    finalizer: ClassVar[str]
    unit_kind: ClassVar[Literal["backup", "restore"]]

    def __init__(
        self,
        store: RecordStore,
        dispatcher: Dispatcher,
        guard: ConcurrencyGuard,
        *,
        settings: Settings | None = None,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._guard = guard
        self._settings = settings or get_settings()
        self._time_provider = time_provider or _utc_now

    def _owner(self, record: R) -> UnitOwner:
        return UnitOwner(kind=self.unit_kind, name=record.name, namespace=record.namespace)

    async def _prepare(self, record: R) -> Prepared:
        raise NotImplementedError

    def _unit_params(self, record: R, prepared: Prepared, run_id: str, unit_name: str) -> UnitParams:
        raise NotImplementedError

    def _completion_fields(self, record: R, outcome: UnitSucceeded, now: datetime) -> dict[str, Any]:
        raise NotImplementedError

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        try:
            record = await self._store.get(self.record_type, namespace, name)
        except RecordNotFoundError:
            return ReconcileResult()
        if record.is_deleting:
            return await self._finalize(record)
        if not record.has_finalizer(self.finalizer):
            record.add_finalizer(self.finalizer)
            await self._store.update(record)
            return ReconcileResult(requeue=True)

        token = fingerprint(record.spec)
        if is_already_terminal(record.status, token):
            return ReconcileResult()
        if record.status.unit_name and record.status.phase == PHASE_RUNNING:
            return await self._poll(record)
        return await self._start(record, token)

    async def _start(self, record: R, token: str) -> ReconcileResult:
        if record.status.phase in TERMINAL_PHASES:
            # Edited after a finished run; start over with a clean status.
            record.status = type(record.status)()
        try:
            prepared = await self._prepare(record)
        except (InvalidSpecError, SourceResolutionError) as exc:
            return await self._fail(record, token, str(exc))
        except DependencyNotReadyError as exc:
            return await self._wait_for_dependency(record, token, str(exc))

        cluster = prepared.targets.cluster.metadata.name
        decision = await self._guard.admit_or_defer(cluster)
        if isinstance(decision, Defer):
            return await write_status(
                self._store,
                record,
                requeue_after=decision.backoff_s,
                phase=PHASE_PENDING,
                message=decision.reason,
                spec_hash=token,
                pending_since=None,
            )

        owner = self._owner(record)
        run_id = generate_run_id()
        params = self._unit_params(record, prepared, run_id, owner.unit_name(run_id))
        unit = await self._dispatcher.dispatch(owner, run_id, params)
        logger.info(
            "%s_started name=%s/%s unit=%s cluster=%s",
            self.unit_kind,
            record.namespace,
            record.name,
            unit.metadata.name,
            cluster,
        )
        return await write_status(
            self._store,
            record,
            requeue_after=self._settings.unit_poll_interval_s,
            phase=PHASE_RUNNING,
            message=f"{self.unit_kind} unit {unit.metadata.name} started",
            spec_hash=token,
            unit_name=unit.metadata.name,
            run_id=unit.metadata.labels.get(RUN_ID_LABEL, run_id),
            started_at=self._time_provider(),
            completed_at=None,
            pending_since=None,
            **prepared.status_fields,
        )

    async def _poll(self, record: R) -> ReconcileResult:
        outcome = await self._dispatcher.poll(self._owner(record), record.status.unit_name)
        if isinstance(outcome, UnitRunning):
            return ReconcileResult(requeue_after=self._settings.unit_poll_interval_s)
        now = self._time_provider()
        if isinstance(outcome, UnitSucceeded):
            logger.info("%s_completed name=%s/%s unit=%s", self.unit_kind, record.namespace, record.name, outcome.unit_name)
            return await write_status(
                self._store,
                record,
                phase=PHASE_COMPLETED,
                message=f"{self.unit_kind.capitalize()} completed successfully",
                completed_at=now,
                **self._completion_fields(record, outcome, now),
            )
        if isinstance(outcome, UnitFailed):
            logger.warning("%s_failed name=%s/%s reason=%s", self.unit_kind, record.namespace, record.name, outcome.reason)
            return await write_status(
                self._store,
                record,
                phase=PHASE_FAILED,
                message=outcome.reason,
                completed_at=now,
            )
        raise TypeError(f"unexpected unit outcome {outcome!r}")

    async def _fail(self, record: R, token: str, reason: str) -> ReconcileResult:
        logger.warning("%s_rejected name=%s/%s reason=%s", self.unit_kind, record.namespace, record.name, reason)
        return await write_status(
            self._store,
            record,
            phase=PHASE_FAILED,
            message=reason,
            spec_hash=token,
            completed_at=self._time_provider(),
            pending_since=None,
        )

    async def _wait_for_dependency(self, record: R, token: str, reason: str) -> ReconcileResult:
        now = self._time_provider()
        since = record.status.pending_since or now
        timeout = self._settings.pending_timeout_s
        if (now - since).total_seconds() >= timeout:
            return await self._fail(record, token, f"{reason} (pending for more than {timeout}s)")
        return await write_status(
            self._store,
            record,
            requeue_after=self._settings.dependency_retry_s,
            phase=PHASE_PENDING,
            message=reason,
            spec_hash=token,
            pending_since=since,
        )

    async def _finalize(self, record: R) -> ReconcileResult:
        if not record.has_finalizer(self.finalizer):
            return ReconcileResult()
        # Cancellation is best effort; the finalizer is removed regardless.
        await self._dispatcher.cancel(self._owner(record), record.status.unit_name)
        record.remove_finalizer(self.finalizer)
        await self._store.update(record)
        logger.info("%s_finalized name=%s/%s", self.unit_kind, record.namespace, record.name)
        return ReconcileResult()
