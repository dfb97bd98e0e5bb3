from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from dbkeeper.controller.backup import BackupReconciler
from dbkeeper.controller.manager import ControllerManager
from dbkeeper.controller.restore import RestoreReconciler
from dbkeeper.controller.schedule import ScheduleReconciler
from dbkeeper.core.config import get_settings
from dbkeeper.core.logging import configure_logging
from dbkeeper.persistence.store import RecordStore, SqlRecordStore
from dbkeeper.services.dispatcher import Dispatcher, ExecutionSubstrate, UnitLauncher
from dbkeeper.services.execution_queue import ArqUnitLauncher
from dbkeeper.services.guard import ConcurrencyGuard
from dbkeeper.services.retention import RetentionEngine


logger = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the dbkeeper backup/restore controllers.")
    parser.add_argument("--workers", type=int, default=None, help="Reconcile worker pool size.")
    parser.add_argument("--resync-interval", type=float, default=None, help="Seconds between full resyncs.")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL.")
    return parser.parse_args()


def build_manager(
    store: RecordStore,
    launcher: UnitLauncher,
    *,
    workers: int | None = None,
    resync_interval_s: float | None = None,
) -> ControllerManager:
    # Wire the reconcilers around one substrate so the concurrency guard sees every unit.
    substrate = ExecutionSubstrate(store, launcher)
    dispatcher = Dispatcher(substrate)
    guard = ConcurrencyGuard(substrate)
    reconcilers = [
        BackupReconciler(store, dispatcher, guard),
        RestoreReconciler(store, dispatcher, guard),
        ScheduleReconciler(store, RetentionEngine(store)),
    ]
    return ControllerManager(store, reconcilers, workers=workers, resync_interval_s=resync_interval_s)


async def _run(args: argparse.Namespace) -> None:
    from dbkeeper.persistence.db import engine

    store = SqlRecordStore()
    manager = build_manager(
        store,
        ArqUnitLauncher(),
        workers=args.workers,
        resync_interval_s=args.resync_interval,
    )
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, manager.stop)
    listener = asyncio.create_task(store.listen(engine))
    try:
        await manager.run()
    finally:
        listener.cancel()
        await asyncio.gather(listener, return_exceptions=True)
        await engine.dispose()


def main() -> None:
    args = _parse_args()
    configure_logging(args.log_level)
    settings = get_settings()
    logger.info("starting %s controller namespace=%s", settings.app_name, settings.operator_namespace)
    asyncio.run(_run(args))


if __name__ == "__main__":
    main()
