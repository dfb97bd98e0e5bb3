from __future__ import annotations

import asyncio
import logging

from arq import Retry
from arq.connections import RedisSettings

from dbkeeper.core.config import get_settings
from dbkeeper.core.logging import configure_logging
from dbkeeper.persistence.store import SqlRecordStore
from dbkeeper.services.executor import cleanup_finished_units, execute_unit


logger = logging.getLogger(__name__)

# Sweep cadence for finished units past their TTL.
CLEANUP_INTERVAL_S = 60


async def run_execution_unit(ctx, unit_name: str) -> str:
    # Attempts are counted on the unit record, so retries survive worker restarts.
    settings = get_settings()
    outcome = await execute_unit(
        ctx["store"],
        unit_name,
        namespace=settings.operator_namespace,
        command=settings.executor_command,
        timeout_s=settings.executor_timeout_s,
    )
    if outcome.state == "retry":
        raise Retry(defer=outcome.retry_in_s)
    return outcome.state


async def _cleanup_loop(store: SqlRecordStore) -> None:
    settings = get_settings()
    while True:
        try:
            await cleanup_finished_units(store, settings.operator_namespace)
        except Exception:  # noqa: BLE001 - keep the sweeper alive while surfacing failures in worker logs.
            logger.exception("execution unit cleanup failed")
        await asyncio.sleep(CLEANUP_INTERVAL_S)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["store"] = SqlRecordStore()
    ctx["cleanup_task"] = asyncio.create_task(_cleanup_loop(ctx["store"]))


async def _shutdown(ctx) -> None:
    # Cancel the sweeper to avoid dangling coroutines on exit.
    task = ctx.get("cleanup_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.execution_queue_name
    # Unit backoff limits are enforced on the record; leave arq headroom above them.
    max_tries = max(settings.backup_unit_backoff_limit, settings.restore_unit_backoff_limit) + 2
    job_timeout = settings.executor_timeout_s + 60
    allow_abort_jobs = True
    functions = [run_execution_unit]
    on_startup = _startup
    on_shutdown = _shutdown
