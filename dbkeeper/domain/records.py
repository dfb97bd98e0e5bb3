from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, Field


LABEL_PREFIX = "dbkeeper.io"

PHASE_PENDING = "Pending"
PHASE_RUNNING = "Running"
PHASE_COMPLETED = "Completed"
PHASE_FAILED = "Failed"
TERMINAL_PHASES = frozenset({PHASE_COMPLETED, PHASE_FAILED})

SCHEDULE_ACTIVE = "Active"
SCHEDULE_SUSPENDED = "Suspended"
SCHEDULE_FAILED = "Failed"

CLUSTER_CONNECTED = "Connected"
DEPENDENCY_READY = "Ready"

UNIT_ACTIVE = "Active"
UNIT_SUCCEEDED = "Succeeded"
UNIT_FAILED = "Failed"


def label(name: str) -> str:
    return f"{LABEL_PREFIX}/{name}"


class OwnerReference(BaseModel):
    kind: str
    name: str


class ObjectMeta(BaseModel):
    # Cluster-scoped kinds use the empty namespace.
    name: str
    namespace: str = ""
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None
    resource_version: int = 0


class Resource(BaseModel):
    """Base for every persisted record: metadata plus kind-specific spec/status."""

    kind: ClassVar[str] = ""
    namespaced: ClassVar[bool] = True

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.metadata.finalizers

    def add_finalizer(self, finalizer: str) -> None:
        if finalizer not in self.metadata.finalizers:
            self.metadata.finalizers = [*self.metadata.finalizers, finalizer]

    def remove_finalizer(self, finalizer: str) -> None:
        self.metadata.finalizers = [f for f in self.metadata.finalizers if f != finalizer]

    def spec_payload(self) -> dict[str, Any]:
        spec = getattr(self, "spec", None)
        return spec.model_dump(mode="json") if spec is not None else {}

    def status_payload(self) -> dict[str, Any]:
        status = getattr(self, "status", None)
        return status.model_dump(mode="json") if status is not None else {}


class DatabaseClusterSpec(BaseModel):
    endpoint: str
    port: int = 5432
    credentials_secret_ref: str | None = None


class DatabaseClusterStatus(BaseModel):
    phase: str = ""
    message: str = ""


class DatabaseCluster(Resource):
    kind: ClassVar[str] = "DatabaseCluster"
    namespaced: ClassVar[bool] = False

    spec: DatabaseClusterSpec
    status: DatabaseClusterStatus = Field(default_factory=DatabaseClusterStatus)


class DatabaseSpec(BaseModel):
    cluster_ref: str
    database_name: str | None = None


class DatabaseStatus(BaseModel):
    phase: str = ""
    message: str = ""
    database_name: str | None = None


class Database(Resource):
    kind: ClassVar[str] = "Database"

    spec: DatabaseSpec
    status: DatabaseStatus = Field(default_factory=DatabaseStatus)

    @property
    def effective_name(self) -> str:
        # Prefer the name observed on the server over the requested one.
        return self.status.database_name or self.spec.database_name or self.metadata.name


class S3StorageConfig(BaseModel):
    bucket: str
    region: str | None = None
    endpoint: str | None = None


class GCSStorageConfig(BaseModel):
    bucket: str
    project: str | None = None


class AzureStorageConfig(BaseModel):
    container: str
    storage_account: str


class LocalStorageConfig(BaseModel):
    root: str | None = None


class BackupStorageSpec(BaseModel):
    s3: S3StorageConfig | None = None
    gcs: GCSStorageConfig | None = None
    azure: AzureStorageConfig | None = None
    local: LocalStorageConfig | None = None
    path_template: str | None = None
    credentials_secret_ref: str | None = None

    @property
    def provider(self) -> str:
        for provider in ("s3", "gcs", "azure", "local"):
            if getattr(self, provider) is not None:
                return provider
        return ""


class BackupStorageStatus(BaseModel):
    phase: str = ""
    message: str = ""


class BackupStorage(Resource):
    kind: ClassVar[str] = "BackupStorage"
    namespaced: ClassVar[bool] = False

    spec: BackupStorageSpec
    status: BackupStorageStatus = Field(default_factory=BackupStorageStatus)


class RetentionPolicy(BaseModel):
    # Unset (or zero) tiers keep nothing.
    keep_last: int | None = Field(default=None, ge=0)
    keep_daily: int | None = Field(default=None, ge=0)
    keep_weekly: int | None = Field(default=None, ge=0)
    keep_monthly: int | None = Field(default=None, ge=0)

    def is_empty(self) -> bool:
        return not any((self.keep_last, self.keep_daily, self.keep_weekly, self.keep_monthly))


class BackupSpec(BaseModel):
    database_ref: str
    storage_ref: str
    filename_template: str | None = None
    ttl_after_completion_s: int | None = Field(default=None, ge=0)


class BackupStatus(BaseModel):
    phase: str = ""
    message: str = ""
    spec_hash: str | None = None
    unit_name: str | None = None
    run_id: str | None = None
    path: str | None = None
    size: str | None = None
    duration: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    pending_since: datetime | None = None


class Backup(Resource):
    kind: ClassVar[str] = "Backup"

    spec: BackupSpec
    status: BackupStatus = Field(default_factory=BackupStatus)


class BackupScheduleSpec(BaseModel):
    schedule: str
    database_ref: str
    storage_ref: str
    filename_template: str | None = None
    retention: RetentionPolicy | None = None
    suspend: bool = False


class BackupScheduleStatus(BaseModel):
    phase: str = ""
    message: str = ""
    last_backup_time: datetime | None = None
    last_backup_name: str | None = None
    next_scheduled_time: datetime | None = None
    managed_backups: int = 0


class BackupSchedule(Resource):
    kind: ClassVar[str] = "BackupSchedule"

    spec: BackupScheduleSpec
    status: BackupScheduleStatus = Field(default_factory=BackupScheduleStatus)


class BackupReference(BaseModel):
    name: str
    namespace: str | None = None


class LatestFromSource(BaseModel):
    database_ref: str
    namespace: str | None = None


class RestoreSource(BaseModel):
    backup_ref: BackupReference | None = None
    latest_from: LatestFromSource | None = None
    path: str | None = None
    storage_ref: str | None = None


class RestoreSpec(BaseModel):
    source: RestoreSource
    database_ref: str
    on_conflict: Literal["fail", "drop", "overwrite"] = "fail"
    ttl_after_completion_s: int | None = Field(default=None, ge=0)


class RestoreStatus(BaseModel):
    phase: str = ""
    message: str = ""
    spec_hash: str | None = None
    unit_name: str | None = None
    run_id: str | None = None
    source_path: str | None = None
    duration: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    pending_since: datetime | None = None


class Restore(Resource):
    kind: ClassVar[str] = "Restore"

    spec: RestoreSpec
    status: RestoreStatus = Field(default_factory=RestoreStatus)


class ExecutionUnitSpec(BaseModel):
    operation: Literal["backup", "restore"]
    env: dict[str, str] = Field(default_factory=dict)
    backoff_limit: int = Field(default=0, ge=0)
    ttl_seconds_after_finished: int = Field(default=3600, ge=0)


class ExecutionUnitStatus(BaseModel):
    phase: str = UNIT_ACTIVE
    failed_attempts: int = 0
    failure_reason: str | None = None
    annotations: dict[str, str] = Field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ExecutionUnit(Resource):
    kind: ClassVar[str] = "ExecutionUnit"

    spec: ExecutionUnitSpec
    status: ExecutionUnitStatus = Field(default_factory=ExecutionUnitStatus)


RESOURCE_TYPES: dict[str, type[Resource]] = {
    model.kind: model
    for model in (
        DatabaseCluster,
        Database,
        BackupStorage,
        Backup,
        BackupSchedule,
        Restore,
        ExecutionUnit,
    )
}
