"""Periodic dependency health checks."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[Any]]
Observer = Callable[[str, "ServiceStatus"], Union[None, Awaitable[None]]]

DEFAULT_TIMEOUTS = {
    "discord": 5.0,
    "database": 5.0,
    "redis": 5.0,
    "platform_api": 10.0,
}

SCORE_LABELS = {4: "Excellent", 3: "Good", 2: "Fair"}


def score_label(score: int) -> str:
    return SCORE_LABELS.get(score, "Poor")


@dataclass
class ServiceStatus:
    status: str = "unknown"
    failure_streak: int = 0
    last_check: Optional[datetime] = None
    response_time_ms: Optional[float] = None
    error: Optional[str] = None

    @property
    def is_healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "failure_streak": self.failure_streak,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "response_time_ms": round(self.response_time_ms, 1) if self.response_time_ms is not None else None,
            "error": self.error,
        }


class HealthMonitor:
    """Runs dependency checks and aggregates them into a 0-4 score.

    A check is a zero-argument coroutine; it fails by raising, by returning
    ``False`` or by exceeding its timeout. After ``failure_threshold``
    consecutive failures a service is marked ``degraded`` and observers are
    notified; they are notified again when it recovers.

    Args:
        checks: Check coroutine per service name
        timeouts: Per-service timeout overrides in seconds
        failure_threshold: Consecutive failures before a service is degraded
        interval: Seconds between background runs
        slow_threshold_ms: Response time above which a warning is logged
    """

    def __init__(
        self,
        checks: dict[str, HealthCheck],
        timeouts: Optional[dict[str, float]] = None,
        failure_threshold: int = 3,
        interval: float = 30.0,
        slow_threshold_ms: float = 5000.0,
    ):
        self.checks = dict(checks)
        self.timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self.failure_threshold = failure_threshold
        self.interval = interval
        self.slow_threshold_ms = slow_threshold_ms
        self.services: dict[str, ServiceStatus] = {name: ServiceStatus() for name in self.checks}
        self.last_check: Optional[datetime] = None
        self._observers: list[Observer] = []
        self._task: Optional[asyncio.Task] = None

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    async def _notify(self, name: str, status: ServiceStatus) -> None:
        for observer in self._observers:
            try:
                result = observer(name, status)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Health observer failed for {name}: {e}")

    async def _run_one(self, name: str) -> None:
        check = self.checks[name]
        status = self.services[name]
        was_degraded = status.status == "degraded"
        started = time.perf_counter()
        error: Optional[str] = None
        try:
            result = await asyncio.wait_for(check(), timeout=self.timeouts.get(name, 5.0))
            if result is False:
                error = "check reported unhealthy"
        except asyncio.TimeoutError:
            error = f"{name} health check timeout"
        except Exception as e:
            error = str(e) or type(e).__name__

        status.response_time_ms = (time.perf_counter() - started) * 1000
        status.last_check = datetime.now(timezone.utc)
        status.error = error

        if error is None:
            status.failure_streak = 0
            status.status = "healthy"
            if status.response_time_ms > self.slow_threshold_ms:
                logger.warning(f"{name} response time is slow: {status.response_time_ms:.0f}ms")
            if was_degraded:
                logger.info(f"✅ {name} recovered")
                await self._notify(name, status)
            return

        status.failure_streak += 1
        if status.failure_streak >= self.failure_threshold:
            status.status = "degraded"
            if not was_degraded:
                logger.error(f"❌ {name} has failed {status.failure_streak} consecutive health checks: {error}")
                await self._notify(name, status)
        else:
            status.status = "unhealthy"
            logger.warning(f"{name} health check failed: {error}")

    async def run_checks(self) -> dict[str, Any]:
        """Run every check concurrently and return the aggregate status."""
        await asyncio.gather(*(self._run_one(name) for name in self.checks))
        self.last_check = datetime.now(timezone.utc)
        return self.get_health_status()

    @property
    def score(self) -> int:
        return sum(1 for status in self.services.values() if status.is_healthy)

    @property
    def overall(self) -> str:
        statuses = [status.status for status in self.services.values()]
        if statuses and all(status == "healthy" for status in statuses):
            return "healthy"
        if any(status == "healthy" for status in statuses):
            return "degraded"
        return "unhealthy"

    def is_service_healthy(self, name: str) -> bool:
        status = self.services.get(name)
        return status is not None and status.status != "degraded"

    def get_health_status(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "score": self.score,
            "max_score": len(self.services),
            "label": score_label(self.score),
            "is_monitoring": self.is_running,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "services": {name: status.to_dict() for name, status in self.services.items()},
        }

    # Background loop

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            logger.warning("Health monitor is already running")
            return

        async def monitor_loop():
            while True:
                try:
                    await self.run_checks()
                except Exception as e:
                    logger.error(f"Error running health checks: {e}")
                await asyncio.sleep(self.interval)

        self._task = asyncio.create_task(monitor_loop())
        logger.info(f"Started health monitor ({self.interval:.0f}s intervals)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Health monitor stopped")
