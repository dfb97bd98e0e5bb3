from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol, TypeVar

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from dbkeeper.core.errors import RecordAlreadyExistsError, RecordConflictError, RecordNotFoundError
from dbkeeper.domain.models import ResourceRecord
from dbkeeper.domain.records import Resource


logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

# Postgres NOTIFY channel used to fan out writes from other processes.
CHANGE_CHANNEL = "dbkeeper_changes"


@dataclass(frozen=True)
class ChangeEvent:
    kind: str
    namespace: str
    name: str
    type: str
    labels: Mapping[str, str] = field(default_factory=dict)


def _utc_now() -> datetime:
    # Use UTC timestamps for creation/deletion markers.
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # sqlite drops tzinfo; treat naive values as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _namespace_for(model: type[Resource], namespace: str | None) -> str:
    return (namespace or "") if model.namespaced else ""


def matches_labels(labels: Mapping[str, str], selector: Mapping[str, str] | None) -> bool:
    if not selector:
        return True
    return all(labels.get(key) == value for key, value in selector.items())


class RecordStore(Protocol):
    async def get(self, model: type[R], namespace: str, name: str) -> R:
        ...

    async def list(
        self,
        model: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[R]:
        ...

    async def create(self, record: R) -> R:
        ...

    async def update(self, record: R) -> R:
        ...

    async def update_status(self, record: R) -> R:
        ...

    async def delete(self, model: type[Resource], namespace: str, name: str) -> None:
        ...

    def subscribe(self) -> asyncio.Queue[ChangeEvent]:
        ...


class _ChangeBroadcaster:
    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[ChangeEvent]] = []

    def subscribe(self) -> asyncio.Queue[ChangeEvent]:
        queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[ChangeEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _publish(self, event: ChangeEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)


class InMemoryRecordStore(_ChangeBroadcaster):
    """Process-local record store with the same version and deletion semantics as SQL.

    Records are kept as JSON payloads so every read hands out an independent copy.
    """

    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        super().__init__()
        self._records: dict[tuple[str, str, str], dict[str, Any]] = {}
        self._time_provider = time_provider or _utc_now

    def _key(self, model: type[Resource], namespace: str | None, name: str) -> tuple[str, str, str]:
        return (model.kind, _namespace_for(model, namespace), name)

    def _require(self, key: tuple[str, str, str]) -> dict[str, Any]:
        payload = self._records.get(key)
        if payload is None:
            raise RecordNotFoundError(f"{key[0]} {key[1]}/{key[2]} not found")
        return payload

    @staticmethod
    def _check_version(current: dict[str, Any], record: Resource) -> None:
        expected = current["metadata"]["resource_version"]
        if record.metadata.resource_version != expected:
            raise RecordConflictError(
                f"{record.kind} {record.namespace}/{record.name} changed "
                f"(have {record.metadata.resource_version}, stored {expected})"
            )

    def _emit(self, key: tuple[str, str, str], event_type: str, payload: dict[str, Any]) -> None:
        labels = dict(payload["metadata"].get("labels") or {})
        self._publish(ChangeEvent(kind=key[0], namespace=key[1], name=key[2], type=event_type, labels=labels))

    async def get(self, model: type[R], namespace: str, name: str) -> R:
        return model.model_validate(self._require(self._key(model, namespace, name)))

    async def list(
        self,
        model: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[R]:
        results = []
        for (kind, record_namespace, _), payload in sorted(self._records.items()):
            if kind != model.kind:
                continue
            if namespace is not None and model.namespaced and record_namespace != namespace:
                continue
            if not matches_labels(payload["metadata"].get("labels") or {}, labels):
                continue
            results.append(model.model_validate(payload))
        return results

    async def create(self, record: R) -> R:
        key = self._key(type(record), record.namespace, record.name)
        if key in self._records:
            raise RecordAlreadyExistsError(f"{key[0]} {key[1]}/{key[2]} already exists")
        payload = record.model_dump(mode="json")
        meta = payload["metadata"]
        meta["namespace"] = key[1]
        if not meta.get("creation_timestamp"):
            meta["creation_timestamp"] = self._time_provider().isoformat()
        meta["deletion_timestamp"] = None
        meta["resource_version"] = 1
        self._records[key] = payload
        self._emit(key, EVENT_ADDED, payload)
        return type(record).model_validate(payload)

    async def update(self, record: R) -> R:
        key = self._key(type(record), record.namespace, record.name)
        current = self._require(key)
        self._check_version(current, record)
        payload = record.model_dump(mode="json")
        meta = payload["metadata"]
        meta["namespace"] = key[1]
        # Timestamps and status are owned by the store and update_status respectively.
        meta["creation_timestamp"] = current["metadata"]["creation_timestamp"]
        meta["deletion_timestamp"] = current["metadata"]["deletion_timestamp"]
        meta["resource_version"] = current["metadata"]["resource_version"] + 1
        if "status" in current:
            payload["status"] = copy.deepcopy(current["status"])
        if meta["deletion_timestamp"] and not meta["finalizers"]:
            del self._records[key]
            self._emit(key, EVENT_DELETED, payload)
            return type(record).model_validate(payload)
        self._records[key] = payload
        self._emit(key, EVENT_MODIFIED, payload)
        return type(record).model_validate(payload)

    async def update_status(self, record: R) -> R:
        key = self._key(type(record), record.namespace, record.name)
        current = self._require(key)
        self._check_version(current, record)
        payload = copy.deepcopy(current)
        payload["status"] = record.status_payload()
        payload["metadata"]["resource_version"] += 1
        self._records[key] = payload
        self._emit(key, EVENT_MODIFIED, payload)
        return type(record).model_validate(payload)

    async def delete(self, model: type[Resource], namespace: str, name: str) -> None:
        key = self._key(model, namespace, name)
        current = self._require(key)
        meta = current["metadata"]
        if meta.get("finalizers"):
            # Two-phase deletion: finalizer owners observe the timestamp and clean up.
            if not meta.get("deletion_timestamp"):
                meta["deletion_timestamp"] = self._time_provider().isoformat()
                meta["resource_version"] += 1
                self._emit(key, EVENT_MODIFIED, current)
            return
        del self._records[key]
        self._emit(key, EVENT_DELETED, current)


class SqlRecordStore(_ChangeBroadcaster):
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__()
        if session_factory is None:
            # Import lazily so tests using the in-memory store never build an engine.
            from dbkeeper.persistence.db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._time_provider = time_provider or _utc_now

    @staticmethod
    def _to_record(model: type[R], row: ResourceRecord) -> R:
        return model.model_validate(
            {
                "metadata": {
                    "name": row.name,
                    "namespace": row.namespace,
                    "labels": row.labels_json or {},
                    "annotations": row.annotations_json or {},
                    "finalizers": row.finalizers_json or [],
                    "owner_references": row.owner_references_json or [],
                    "creation_timestamp": _aware(row.created_at),
                    "deletion_timestamp": _aware(row.deletion_requested_at),
                    "resource_version": row.resource_version,
                },
                "spec": row.spec_json or {},
                "status": row.status_json or {},
            }
        )

    @staticmethod
    def _apply_metadata(row: ResourceRecord, record: Resource) -> None:
        meta = record.metadata
        row.labels_json = dict(meta.labels)
        row.annotations_json = dict(meta.annotations)
        row.finalizers_json = list(meta.finalizers)
        row.owner_references_json = [ref.model_dump(mode="json") for ref in meta.owner_references]
        row.spec_json = record.spec_payload()

    async def _notify(self, session: AsyncSession, event: ChangeEvent) -> None:
        # NOTIFY is transactional: listeners only see committed writes.
        if session.bind is None or session.bind.dialect.name != "postgresql":
            return
        payload = json.dumps(
            {
                "kind": event.kind,
                "namespace": event.namespace,
                "name": event.name,
                "type": event.type,
                "labels": dict(event.labels),
            }
        )
        await session.execute(text("SELECT pg_notify(:channel, :payload)"), {"channel": CHANGE_CHANNEL, "payload": payload})

    async def _load(self, session: AsyncSession, model: type[Resource], namespace: str | None, name: str) -> ResourceRecord:
        row = await session.get(ResourceRecord, (model.kind, _namespace_for(model, namespace), name))
        if row is None:
            raise RecordNotFoundError(f"{model.kind} {namespace}/{name} not found")
        return row

    async def get(self, model: type[R], namespace: str, name: str) -> R:
        async with self._session_factory() as session:
            row = await self._load(session, model, namespace, name)
            return self._to_record(model, row)

    async def list(
        self,
        model: type[R],
        namespace: str | None = None,
        labels: Mapping[str, str] | None = None,
    ) -> list[R]:
        stmt = select(ResourceRecord).where(ResourceRecord.kind == model.kind)
        if namespace is not None and model.namespaced:
            stmt = stmt.where(ResourceRecord.namespace == namespace)
        stmt = stmt.order_by(ResourceRecord.namespace, ResourceRecord.name)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
        # Label matching stays in Python so sqlite and Postgres behave the same.
        return [self._to_record(model, row) for row in rows if matches_labels(row.labels_json or {}, labels)]

    async def create(self, record: R) -> R:
        model = type(record)
        namespace = _namespace_for(model, record.namespace)
        row = ResourceRecord(
            kind=model.kind,
            namespace=namespace,
            name=record.name,
            created_at=record.metadata.creation_timestamp or self._time_provider(),
            deletion_requested_at=None,
            status_json=record.status_payload(),
        )
        self._apply_metadata(row, record)
        event = ChangeEvent(model.kind, namespace, record.name, EVENT_ADDED, dict(record.metadata.labels))
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.flush()
                await self._notify(session, event)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise RecordAlreadyExistsError(f"{model.kind} {namespace}/{record.name} already exists") from exc
            created = self._to_record(model, row)
        self._publish(event)
        return created

    async def update(self, record: R) -> R:
        model = type(record)
        async with self._session_factory() as session:
            row = await self._load(session, model, record.namespace, record.name)
            if row.resource_version != record.metadata.resource_version:
                raise RecordConflictError(
                    f"{model.kind} {record.namespace}/{record.name} changed "
                    f"(have {record.metadata.resource_version}, stored {row.resource_version})"
                )
            self._apply_metadata(row, record)
            removing = row.deletion_requested_at is not None and not row.finalizers_json
            event = ChangeEvent(
                model.kind,
                row.namespace,
                row.name,
                EVENT_DELETED if removing else EVENT_MODIFIED,
                dict(record.metadata.labels),
            )
            try:
                if removing:
                    await session.delete(row)
                await session.flush()
                await self._notify(session, event)
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise RecordConflictError(f"{model.kind} {record.namespace}/{record.name} changed") from exc
            updated = self._to_record(model, row)
        self._publish(event)
        return updated

    async def update_status(self, record: R) -> R:
        model = type(record)
        async with self._session_factory() as session:
            row = await self._load(session, model, record.namespace, record.name)
            if row.resource_version != record.metadata.resource_version:
                raise RecordConflictError(
                    f"{model.kind} {record.namespace}/{record.name} changed "
                    f"(have {record.metadata.resource_version}, stored {row.resource_version})"
                )
            row.status_json = record.status_payload()
            event = ChangeEvent(model.kind, row.namespace, row.name, EVENT_MODIFIED, dict(row.labels_json or {}))
            try:
                await session.flush()
                await self._notify(session, event)
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise RecordConflictError(f"{model.kind} {record.namespace}/{record.name} changed") from exc
            updated = self._to_record(model, row)
        self._publish(event)
        return updated

    async def delete(self, model: type[Resource], namespace: str, name: str) -> None:
        async with self._session_factory() as session:
            row = await self._load(session, model, namespace, name)
            labels = dict(row.labels_json or {})
            if row.finalizers_json:
                if row.deletion_requested_at is not None:
                    return
                row.deletion_requested_at = self._time_provider()
                event = ChangeEvent(model.kind, row.namespace, row.name, EVENT_MODIFIED, labels)
            else:
                await session.delete(row)
                event = ChangeEvent(model.kind, row.namespace, row.name, EVENT_DELETED, labels)
            try:
                await session.flush()
                await self._notify(session, event)
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise RecordConflictError(f"{model.kind} {namespace}/{name} changed") from exc
        self._publish(event)

    async def listen(self, engine: AsyncEngine) -> None:
        """Relay NOTIFY events written by other processes until cancelled."""
        if engine.dialect.name != "postgresql":
            logger.info("change_listener_disabled dialect=%s", engine.dialect.name)
            return
        async with engine.connect() as conn:
            raw = await conn.get_raw_connection()
            driver = raw.driver_connection
            await driver.add_listener(CHANGE_CHANNEL, self._on_notify)
            logger.info("change_listener_started channel=%s", CHANGE_CHANNEL)
            try:
                await asyncio.Event().wait()
            finally:
                await driver.remove_listener(CHANGE_CHANNEL, self._on_notify)

    def _on_notify(self, _connection: Any, _pid: int, _channel: str, payload: str) -> None:
        try:
            data = json.loads(payload)
            event = ChangeEvent(
                kind=data["kind"],
                namespace=data.get("namespace", ""),
                name=data["name"],
                type=data.get("type", EVENT_MODIFIED),
                labels=data.get("labels") or {},
            )
        except (ValueError, KeyError):
            logger.warning("change_notification_invalid payload=%s", payload[:200])
            return
        self._publish(event)
