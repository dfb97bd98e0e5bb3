from __future__ import annotations

from dataclasses import dataclass, field
import logging
import secrets
import string
from typing import Literal, Mapping, Protocol, Union

from dbkeeper.core.config import get_settings
from dbkeeper.core.errors import (
    RecordAlreadyExistsError,
    RecordNotFoundError,
    UnitAlreadyExistsError,
    UnitNotFoundError,
)
from dbkeeper.domain.records import (
    UNIT_FAILED,
    UNIT_SUCCEEDED,
    Backup,
    BackupStorage,
    Database,
    DatabaseCluster,
    ExecutionUnit,
    ExecutionUnitSpec,
    ObjectMeta,
    Restore,
    label,
)
from dbkeeper.persistence.store import RecordStore


logger = logging.getLogger(__name__)

RUN_ID_ALPHABET = string.ascii_lowercase + string.digits
RUN_ID_LENGTH = 8


def generate_run_id() -> str:
    return "".join(secrets.choice(RUN_ID_ALPHABET) for _ in range(RUN_ID_LENGTH))


class UnitLauncher(Protocol):
    async def launch(self, unit: ExecutionUnit) -> None:
        ...

    async def abort(self, unit_name: str) -> None:
        ...


class ExecutionSubstrate:
    """Execution units persisted in the record store and handed to a launcher."""

    def __init__(self, store: RecordStore, launcher: UnitLauncher, *, namespace: str | None = None) -> None:
        self._store = store
        self._launcher = launcher
        self.namespace = namespace or get_settings().operator_namespace

    async def create_unit(self, unit: ExecutionUnit) -> ExecutionUnit:
        unit.metadata.namespace = self.namespace
        try:
            created = await self._store.create(unit)
        except RecordAlreadyExistsError as exc:
            raise UnitAlreadyExistsError(unit.metadata.name) from exc
        try:
            await self._launcher.launch(created)
        except Exception:
            # A unit nobody will run must not stay Active and hold a concurrency slot.
            logger.exception("execution_unit_launch_failed unit=%s", created.metadata.name)
            await self._store.delete(ExecutionUnit, self.namespace, created.metadata.name)
            raise
        return created

    async def get_unit(self, name: str) -> ExecutionUnit:
        try:
            return await self._store.get(ExecutionUnit, self.namespace, name)
        except RecordNotFoundError as exc:
            raise UnitNotFoundError(name) from exc

    async def delete_unit(self, name: str) -> None:
        try:
            await self._store.delete(ExecutionUnit, self.namespace, name)
        except RecordNotFoundError as exc:
            raise UnitNotFoundError(name) from exc
        await self._launcher.abort(name)

    async def list_units(self, labels: Mapping[str, str]) -> list[ExecutionUnit]:
        return await self._store.list(ExecutionUnit, self.namespace, labels=labels)


@dataclass(frozen=True)
class UnitOwner:
    kind: Literal["backup", "restore"]
    name: str
    namespace: str

    def labels(self) -> dict[str, str]:
        return {label(self.kind): self.name, label(f"{self.kind}-namespace"): self.namespace}

    def unit_name(self, run_id: str) -> str:
        return f"{self.kind}-{self.name}-{run_id}"


@dataclass(frozen=True)
class UnitParams:
    cluster: str
    env: dict[str, str]
    backoff_limit: int
    ttl_seconds_after_finished: int
    database: str | None = None


@dataclass(frozen=True)
class UnitRunning:
    unit_name: str


@dataclass(frozen=True)
class UnitSucceeded:
    unit_name: str
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UnitFailed:
    unit_name: str | None
    reason: str


UnitOutcome = Union[UnitRunning, UnitSucceeded, UnitFailed]


class Dispatcher:
    def __init__(self, substrate: ExecutionSubstrate) -> None:
        self._substrate = substrate

    @property
    def substrate(self) -> ExecutionSubstrate:
        return self._substrate

    async def dispatch(self, owner: UnitOwner, run_id: str, params: UnitParams) -> ExecutionUnit:
        name = owner.unit_name(run_id)
        labels = {**owner.labels(), label("cluster"): params.cluster, label("run-id"): run_id}
        if params.database:
            labels[label("database")] = params.database
        unit = ExecutionUnit(
            metadata=ObjectMeta(name=name, namespace=self._substrate.namespace, labels=labels),
            spec=ExecutionUnitSpec(
                operation=owner.kind,
                env=dict(params.env),
                backoff_limit=params.backoff_limit,
                ttl_seconds_after_finished=params.ttl_seconds_after_finished,
            ),
        )
        try:
            created = await self._substrate.create_unit(unit)
        except UnitAlreadyExistsError:
            # Another reconcile created it first; adopt the existing unit.
            existing = await self.find_units(owner)
            if not existing:
                raise
            logger.info("execution_unit_adopted owner=%s/%s unit=%s", owner.namespace, owner.name, existing[0].metadata.name)
            return existing[0]
        logger.info(
            "execution_unit_created owner=%s/%s unit=%s cluster=%s",
            owner.namespace,
            owner.name,
            name,
            params.cluster,
        )
        return created

    async def find_units(self, owner: UnitOwner) -> list[ExecutionUnit]:
        units = await self._substrate.list_units(owner.labels())
        # Newest first so callers adopt the latest run.
        return sorted(
            units,
            key=lambda unit: (unit.metadata.creation_timestamp is not None, unit.metadata.creation_timestamp),
            reverse=True,
        )

    async def poll(self, owner: UnitOwner, unit_name: str) -> UnitOutcome:
        try:
            unit = await self._substrate.get_unit(unit_name)
        except UnitNotFoundError:
            # The unit may have been cleaned up by its TTL; fall back to the owner labels.
            units = await self.find_units(owner)
            if not units:
                return UnitFailed(unit_name=None, reason=f"{owner.kind} execution unit not found")
            unit = units[0]
        phase = unit.status.phase
        if phase == UNIT_SUCCEEDED:
            return UnitSucceeded(unit_name=unit.metadata.name, annotations=dict(unit.status.annotations))
        if phase == UNIT_FAILED:
            reason = unit.status.failure_reason or f"{owner.kind} execution unit failed"
            return UnitFailed(unit_name=unit.metadata.name, reason=reason)
        return UnitRunning(unit_name=unit.metadata.name)

    async def cancel(self, owner: UnitOwner, unit_name: str | None = None) -> None:
        names: list[str] = []
        if unit_name:
            names.append(unit_name)
        try:
            names.extend(unit.metadata.name for unit in await self.find_units(owner) if unit.metadata.name not in names)
        except Exception:  # noqa: BLE001 - cancellation is best effort; unit TTL is the backstop.
            logger.exception("execution_unit_lookup_failed owner=%s/%s", owner.namespace, owner.name)
        for name in names:
            try:
                await self._substrate.delete_unit(name)
                logger.info("execution_unit_cancelled owner=%s/%s unit=%s", owner.namespace, owner.name, name)
            except UnitNotFoundError:
                continue
            except Exception:  # noqa: BLE001 - cancellation is best effort; unit TTL is the backstop.
                logger.warning("execution_unit_cancel_failed unit=%s", name, exc_info=True)


def _storage_env(storage: BackupStorage) -> dict[str, str]:
    spec = storage.spec
    env = {"STORAGE_TYPE": spec.provider, "STORAGE_NAME": storage.metadata.name}
    if spec.s3 is not None:
        env["S3_BUCKET"] = spec.s3.bucket
        if spec.s3.region:
            env["S3_REGION"] = spec.s3.region
        if spec.s3.endpoint:
            env["S3_ENDPOINT"] = spec.s3.endpoint
    elif spec.gcs is not None:
        env["GCS_BUCKET"] = spec.gcs.bucket
        if spec.gcs.project:
            env["GCS_PROJECT"] = spec.gcs.project
    elif spec.azure is not None:
        env["AZURE_CONTAINER"] = spec.azure.container
        env["AZURE_ACCOUNT"] = spec.azure.storage_account
    elif spec.local is not None:
        env["LOCAL_ROOT"] = spec.local.root or get_settings().local_storage_dir
    if spec.credentials_secret_ref:
        env["STORAGE_CREDENTIALS_SECRET"] = spec.credentials_secret_ref
    return env


def _database_env(database: Database, cluster: DatabaseCluster) -> dict[str, str]:
    env = {
        "DB_HOST": cluster.spec.endpoint,
        "DB_PORT": str(cluster.spec.port),
        "DB_NAME": database.effective_name,
        "CLUSTER_NAME": cluster.metadata.name,
    }
    if cluster.spec.credentials_secret_ref:
        env["DB_CREDENTIALS_SECRET"] = cluster.spec.credentials_secret_ref
    return env


def backup_unit_env(
    *,
    backup: Backup,
    database: Database,
    cluster: DatabaseCluster,
    storage: BackupStorage,
    run_id: str,
    unit_name: str,
) -> dict[str, str]:
    settings = get_settings()
    env = _database_env(database, cluster)
    env.update(_storage_env(storage))
    env.update(
        {
            "DATABASE_NAME": database.effective_name,
            "PATH_TEMPLATE": storage.spec.path_template or settings.default_path_template,
            "FILENAME_TEMPLATE": backup.spec.filename_template or settings.default_filename_template,
            "BACKUP_NAME": backup.metadata.name,
            "BACKUP_NAMESPACE": backup.metadata.namespace,
            "RUN_ID": run_id,
            "UNIT_NAME": unit_name,
        }
    )
    return env


def restore_unit_env(
    *,
    restore: Restore,
    database: Database,
    cluster: DatabaseCluster,
    storage: BackupStorage,
    source_path: str,
    run_id: str,
    unit_name: str,
) -> dict[str, str]:
    env = _database_env(database, cluster)
    env.update(_storage_env(storage))
    env.update(
        {
            "SOURCE_PATH": source_path,
            "ON_CONFLICT": restore.spec.on_conflict,
            "RESTORE_NAME": restore.metadata.name,
            "RESTORE_NAMESPACE": restore.metadata.namespace,
            "RUN_ID": run_id,
            "UNIT_NAME": unit_name,
        }
    )
    return env
