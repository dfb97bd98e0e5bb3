from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
import os
import shlex
from typing import Awaitable, Callable, Literal

from dbkeeper.core.errors import RecordNotFoundError
from dbkeeper.domain.records import UNIT_ACTIVE, UNIT_FAILED, UNIT_SUCCEEDED, ExecutionUnit
from dbkeeper.persistence.store import RecordStore


logger = logging.getLogger(__name__)

# Keep failure reasons short enough for a status message.
MAX_REASON_CHARS = 500
RETRY_BASE_S = 10.0
RETRY_MAX_S = 360.0


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False


CommandRunner = Callable[[list[str], dict[str, str], float], Awaitable[CommandResult]]


@dataclass(frozen=True)
class AttemptOutcome:
    state: Literal["succeeded", "retry", "failed", "skipped"]
    retry_in_s: float | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def run_command(argv: list[str], env: dict[str, str], timeout_s: float) -> CommandResult:
    process = await asyncio.create_subprocess_exec(
        *argv,
        env={**os.environ, **env},
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return CommandResult(returncode=-1, stdout="", stderr="", timed_out=True)
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


def parse_result_annotations(stdout: str) -> dict[str, str]:
    # The runner reports its result as a JSON object on the last non-empty stdout line.
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return {}
    try:
        payload = json.loads(lines[-1])
    except ValueError:
        return {}
    if not isinstance(payload, dict):
        return {}
    return {str(key): str(value) for key, value in payload.items() if value is not None}


def failure_reason(result: CommandResult, timeout_s: float) -> str:
    if result.timed_out:
        return f"execution timed out after {int(timeout_s)}s"
    lines = [line.strip() for line in result.stderr.splitlines() if line.strip()]
    if lines:
        return lines[-1][:MAX_REASON_CHARS]
    return f"runner exited with code {result.returncode}"


def retry_delay_s(failed_attempts: int) -> float:
    return min(RETRY_BASE_S * (2 ** max(0, failed_attempts - 1)), RETRY_MAX_S)


async def execute_unit(
    store: RecordStore,
    unit_name: str,
    *,
    namespace: str,
    command: str,
    timeout_s: float,
    runner: CommandRunner = run_command,
    time_provider: Callable[[], datetime] | None = None,
) -> AttemptOutcome:
    """Run one attempt of an execution unit and record the outcome on its status."""
    now_fn = time_provider or _utc_now
    try:
        unit = await store.get(ExecutionUnit, namespace, unit_name)
    except RecordNotFoundError:
        logger.info("execution_unit_missing unit=%s", unit_name)
        return AttemptOutcome(state="skipped")
    if unit.status.phase != UNIT_ACTIVE or unit.is_deleting:
        return AttemptOutcome(state="skipped")

    argv = [*shlex.split(command), unit.spec.operation]
    attempt = unit.status.failed_attempts + 1
    logger.info("execution_unit_attempt unit=%s attempt=%s", unit_name, attempt)
    result = await runner(argv, dict(unit.spec.env), timeout_s)
    now = now_fn()
    status = unit.status
    if status.started_at is None:
        status.started_at = now

    if result.returncode == 0 and not result.timed_out:
        status.phase = UNIT_SUCCEEDED
        status.annotations = parse_result_annotations(result.stdout)
        status.failure_reason = None
        status.finished_at = now
        outcome = AttemptOutcome(state="succeeded")
    else:
        reason = failure_reason(result, timeout_s)
        status.failed_attempts = attempt
        status.failure_reason = reason
        if attempt > unit.spec.backoff_limit:
            status.phase = UNIT_FAILED
            status.finished_at = now
            outcome = AttemptOutcome(state="failed")
        else:
            outcome = AttemptOutcome(state="retry", retry_in_s=retry_delay_s(attempt))
        logger.warning("execution_unit_attempt_failed unit=%s attempt=%s reason=%s", unit_name, attempt, reason)

    try:
        await store.update_status(unit)
    except RecordNotFoundError:
        # Cancelled while running; nothing left to record.
        logger.info("execution_unit_gone unit=%s", unit_name)
        return AttemptOutcome(state="skipped")
    return outcome


async def cleanup_finished_units(
    store: RecordStore,
    namespace: str,
    *,
    now: datetime | None = None,
) -> list[str]:
    # Finished units self-clean after their TTL, independent of the controller.
    current = now or _utc_now()
    removed = []
    for unit in await store.list(ExecutionUnit, namespace):
        finished_at = unit.status.finished_at
        if unit.status.phase == UNIT_ACTIVE or finished_at is None:
            continue
        if finished_at + timedelta(seconds=unit.spec.ttl_seconds_after_finished) > current:
            continue
        try:
            await store.delete(ExecutionUnit, namespace, unit.metadata.name)
        except RecordNotFoundError:
            continue
        removed.append(unit.metadata.name)
        logger.info("execution_unit_expired unit=%s", unit.metadata.name)
    return removed
