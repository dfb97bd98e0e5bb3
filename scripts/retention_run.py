from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone

from dbkeeper.core.logging import configure_logging
from dbkeeper.domain.records import BackupSchedule
from dbkeeper.persistence.store import SqlRecordStore
from dbkeeper.services.object_storage import build_object_storage
from dbkeeper.services.retention import RetentionEngine, collect_backup_objects, plan_object_retention


async def _preview(store: SqlRecordStore, schedule: BackupSchedule) -> None:
    # Show the keep/delete split without touching storage or the debounce marker.
    engine = RetentionEngine(store)
    storage, prefix = await engine.resolve_prefix(schedule)
    objects = collect_backup_objects(await build_object_storage(storage).list(prefix))
    plan = plan_object_retention(objects, schedule.spec.retention, now=datetime.now(timezone.utc))
    print(f"prefix={prefix} scanned={len(objects)} keep={len(plan.keep)} delete={len(plan.delete)}")
    for obj in plan.delete:
        print(f"delete key={obj.key} timestamp={obj.timestamp.isoformat()}")


async def _run(namespace: str, name: str, dry_run: bool) -> None:
    store = SqlRecordStore()
    schedule = await store.get(BackupSchedule, namespace, name)
    if schedule.spec.retention is None or schedule.spec.retention.is_empty():
        print("retention=unset")
        return
    if dry_run:
        await _preview(store, schedule)
        return
    report = await RetentionEngine(store).run(schedule)
    if report.skipped:
        print(f"skipped={report.skipped}")
        return
    print(
        f"scanned={report.scanned} kept={report.kept} deleted_objects={len(report.deleted_objects)} "
        f"failed_objects={len(report.failed_objects)} deleted_records={len(report.deleted_records)}"
    )


def main() -> None:
    # Run retention for one schedule outside the controller loop.
    parser = argparse.ArgumentParser(description="Apply a backup schedule's retention policy now")
    parser.add_argument("--namespace", required=True)
    parser.add_argument("--schedule", required=True)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_run(args.namespace, args.schedule, args.dry_run))


if __name__ == "__main__":
    main()
