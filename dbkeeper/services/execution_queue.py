from __future__ import annotations

import asyncio
import logging

from arq import create_pool
from arq.connections import RedisSettings
from arq.jobs import Job

from dbkeeper.core.config import get_settings
from dbkeeper.domain.records import ExecutionUnit


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()

RUN_UNIT_FUNCTION = "run_execution_unit"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every launch.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.execution_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class ArqUnitLauncher:
    """Hand execution units to the arq worker pool, one job per unit name."""

    def __init__(self, queue_name: str | None = None) -> None:
        self._queue_name = queue_name or get_settings().execution_queue_name

    async def launch(self, unit: ExecutionUnit) -> None:
        redis = await get_redis_pool()
        # The job id is the unit name, so a repeated launch never runs a unit twice.
        job = await redis.enqueue_job(
            RUN_UNIT_FUNCTION,
            unit.metadata.name,
            _job_id=unit.metadata.name,
            _queue_name=self._queue_name,
        )
        if job is None:
            logger.info("execution_unit_already_queued unit=%s", unit.metadata.name)
        else:
            logger.info("execution_unit_queued unit=%s queue=%s", unit.metadata.name, self._queue_name)

    async def abort(self, unit_name: str) -> None:
        redis = await get_redis_pool()
        job = Job(unit_name, redis, _queue_name=self._queue_name)
        try:
            await job.abort(timeout=0.5)
        except asyncio.TimeoutError:
            # Abort is asynchronous; the worker observes the request on its next poll.
            logger.debug("execution_unit_abort_pending unit=%s", unit_name)
