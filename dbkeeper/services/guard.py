from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import logging
from typing import Any

from pydantic import BaseModel

from dbkeeper.core.config import get_settings
from dbkeeper.domain.records import TERMINAL_PHASES, UNIT_ACTIVE, label
from dbkeeper.services.dispatcher import ExecutionSubstrate


logger = logging.getLogger(__name__)

# Fields that change how long a record lives, not what the operation does.
_NON_SEMANTIC_FIELDS = frozenset({"ttl_after_completion_s"})
FINGERPRINT_LENGTH = 16


def _canonical(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def fingerprint(spec: BaseModel | dict[str, Any]) -> str:
    # Hash the operation parameters deterministically; status and run ids never enter the digest.
    payload = spec.model_dump(mode="json") if isinstance(spec, BaseModel) else dict(spec)
    meaningful = {key: value for key, value in payload.items() if key not in _NON_SEMANTIC_FIELDS}
    digest = hashlib.sha256(_canonical(meaningful).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def is_already_terminal(status: Any, token: str) -> bool:
    return getattr(status, "phase", None) in TERMINAL_PHASES and getattr(status, "spec_hash", None) == token


@dataclass(frozen=True)
class Admit:
    active: int
    ceiling: int


@dataclass(frozen=True)
class Defer:
    backoff_s: float
    active: int | None
    ceiling: int

    @property
    def reason(self) -> str:
        if self.active is None:
            return "waiting for other operations to complete (active: unknown)"
        return f"waiting for other operations to complete (active: {self.active}/{self.ceiling})"


class ConcurrencyGuard:
    """Advisory per-cluster ceiling computed from the in-flight units at check time."""

    def __init__(
        self,
        substrate: ExecutionSubstrate,
        *,
        ceiling: int | None = None,
        backoff_s: float | None = None,
    ) -> None:
        settings = get_settings()
        self._substrate = substrate
        self._ceiling = ceiling if ceiling is not None else settings.max_concurrent_units_per_cluster
        self._backoff_s = backoff_s if backoff_s is not None else settings.throttle_requeue_s

    async def count_active(self, cluster: str) -> int:
        units = await self._substrate.list_units({label("cluster"): cluster})
        return sum(1 for unit in units if unit.status.phase == UNIT_ACTIVE)

    async def admit_or_defer(self, cluster: str, ceiling: int | None = None) -> Admit | Defer:
        limit = ceiling if ceiling is not None else self._ceiling
        try:
            active = await self.count_active(cluster)
        except Exception:  # noqa: BLE001 - an unknown count must throttle rather than over-admit.
            logger.exception("concurrency_check_failed cluster=%s", cluster)
            return Defer(backoff_s=self._backoff_s, active=None, ceiling=limit)
        if active >= limit:
            logger.info("concurrency_deferred cluster=%s active=%s ceiling=%s", cluster, active, limit)
            return Defer(backoff_s=self._backoff_s, active=active, ceiling=limit)
        return Admit(active=active, ceiling=limit)
