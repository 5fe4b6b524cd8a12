"""
Store health reporting.

A check is a pool probe plus `SELECT 1`, bounded by a timeout. It borrows
one connection the same way a request would and never resizes the pool.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass

from .db import PoolError, PoolManager

logger = logging.getLogger(__name__)


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    # Store answered, but slower than `degraded_after`.
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    latency_ms: float
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not HealthStatus.UNHEALTHY

    def to_dict(self) -> dict:
        body: dict = {"status": self.status.value, "latency_ms": round(self.latency_ms, 2)}
        if self.error:
            body["error"] = self.error
        return body


class HealthReporter:
    def __init__(
        self,
        pool: PoolManager,
        *,
        timeout: float = 2.0,
        degraded_after: float | None = 0.5,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be > 0.")
        self.pool = pool
        self.timeout = timeout
        self.degraded_after = degraded_after

    async def _round_trip(self) -> None:
        await self.pool.probe(self.timeout)
        await self.pool.ping(self.timeout)

    async def check(self) -> HealthReport:
        started = time.monotonic()
        error: str | None = None
        try:
            await asyncio.wait_for(self._round_trip(), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = "timeout"
        except PoolError as exc:
            error = exc.code

        latency_ms = (time.monotonic() - started) * 1000.0
        if error is not None:
            logger.warning("health_check_failed error=%s latency_ms=%.1f", error, latency_ms)
            return HealthReport(HealthStatus.UNHEALTHY, latency_ms, error)

        if self.degraded_after is not None and latency_ms > self.degraded_after * 1000.0:
            return HealthReport(HealthStatus.DEGRADED, latency_ms)
        return HealthReport(HealthStatus.HEALTHY, latency_ms)
