from __future__ import annotations

import asyncio
import logging
from typing import Iterable, NamedTuple

from dbkeeper.controller.base import ReconcileResult, Reconciler
from dbkeeper.controller.queue import WorkQueue
from dbkeeper.core.config import Settings, get_settings
from dbkeeper.domain.records import Backup, BackupSchedule, ExecutionUnit, Restore, label
from dbkeeper.persistence.store import ChangeEvent, RecordStore
from dbkeeper.services.retention import SCHEDULE_LABEL, SCHEDULE_NAMESPACE_LABEL


logger = logging.getLogger(__name__)

# Units point back at their owner through these label pairs.
_UNIT_OWNER_LABELS = (
    (Backup.kind, label("backup"), label("backup-namespace")),
    (Restore.kind, label("restore"), label("restore-namespace")),
)


class RecordKey(NamedTuple):
    kind: str
    namespace: str
    name: str


def owner_keys(event: ChangeEvent) -> list[RecordKey]:
    """Map a change event to the records whose reconciliation it affects."""
    keys = [RecordKey(event.kind, event.namespace, event.name)]
    labels = event.labels or {}
    if event.kind == ExecutionUnit.kind:
        keys = []
        for kind, name_label, namespace_label in _UNIT_OWNER_LABELS:
            owner = labels.get(name_label)
            if owner:
                keys.append(RecordKey(kind, labels.get(namespace_label, ""), owner))
    elif event.kind == Backup.kind and labels.get(SCHEDULE_LABEL):
        keys.append(RecordKey(BackupSchedule.kind, labels.get(SCHEDULE_NAMESPACE_LABEL, event.namespace), labels[SCHEDULE_LABEL]))
    return keys


class ControllerManager:
    def __init__(
        self,
        store: RecordStore,
        reconcilers: Iterable[Reconciler],
        *,
        workers: int | None = None,
        resync_interval_s: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._reconcilers = {reconciler.record_type.kind: reconciler for reconciler in reconcilers}
        self._workers = max(1, int(workers if workers is not None else self._settings.controller_workers))
        self._resync_interval_s = (
            resync_interval_s if resync_interval_s is not None else self._settings.controller_resync_interval_s
        )
        self.queue = WorkQueue()
        self._failures: dict[RecordKey, int] = {}
        self._tasks: list[asyncio.Task] = []
        self._stopped = asyncio.Event()

    def enqueue(self, kind: str, namespace: str, name: str) -> None:
        if kind in self._reconcilers:
            self.queue.add(RecordKey(kind, namespace, name))

    def handle_event(self, event: ChangeEvent) -> None:
        for key in owner_keys(event):
            self.enqueue(*key)

    async def resync(self) -> None:
        for kind, reconciler in self._reconcilers.items():
            for record in await self._store.list(reconciler.record_type):
                self.enqueue(kind, record.namespace, record.name)

    def _backoff_s(self, key: RecordKey) -> float:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self._settings.error_backoff_base_s * (2 ** (failures - 1))
        return min(delay, self._settings.error_backoff_max_s)

    async def process(self, key: RecordKey) -> ReconcileResult | None:
        """Reconcile one key and schedule its follow-up; errors are retried with backoff."""
        reconciler = self._reconcilers.get(key.kind)
        if reconciler is None:
            return None
        try:
            result = await reconciler.reconcile(key.namespace, key.name)
        except Exception:  # noqa: BLE001 - every reconcile error is retried with backoff.
            delay = self._backoff_s(key)
            logger.exception("reconcile_failed kind=%s name=%s/%s retry_in_s=%.1f", key.kind, key.namespace, key.name, delay)
            self.queue.add_after(key, delay)
            return None
        self._failures.pop(key, None)
        if result.requeue_after is not None:
            self.queue.add_after(key, result.requeue_after)
        elif result.requeue:
            self.queue.add(key)
        return result

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def _watch(self) -> None:
        events = self._store.subscribe()
        while True:
            self.handle_event(await events.get())

    async def _resync_loop(self) -> None:
        # Periodic full resync recovers from missed events and writes by other replicas.
        while True:
            try:
                await self.resync()
            except Exception:  # noqa: BLE001 - keep resync alive while surfacing failures in logs.
                logger.exception("controller resync failed")
            await asyncio.sleep(max(1.0, float(self._resync_interval_s)))

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self._watch()))
        self._tasks.append(asyncio.create_task(self._resync_loop()))
        for index in range(self._workers):
            self._tasks.append(asyncio.create_task(self._worker(index)))
        logger.info("controller_started workers=%s kinds=%s", self._workers, ",".join(sorted(self._reconcilers)))

    async def run(self) -> None:
        self.start()
        try:
            await self._stopped.wait()
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self._stopped.set()

    async def shutdown(self) -> None:
        self.queue.shutdown()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for reconciler in self._reconcilers.values():
            close = getattr(reconciler, "aclose", None)
            if close is not None:
                await close()
        logger.info("controller_stopped")
