"""Hourly retention and lifecycle maintenance for persisted records."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from naffles_bot.shared.logging_utils import log_performance
from naffles_bot.web.crud import (
    AllowlistOperations,
    InteractionLogOperations,
    MaintenanceOperations,
    TaskPostOperations,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


@dataclass
class CleanupResult:
    processed: int = 0
    deleted: int = 0
    reported: Optional[dict[str, int]] = None


class DataCleanupService:
    """Runs the retention jobs on a fixed interval.

    Each job gets its own session so a failing job rolls back alone and the
    remaining jobs still run. A run that starts while another is in
    progress is skipped. Jobs only expire, archive or delete records past
    retention; orphans are reported, never deactivated.

    Args:
        session_factory: Async context manager factory yielding sessions
        interval_minutes: Minutes between runs
        log_retention_days: Interaction logs older than this are deleted
        log_archive_days: Interaction logs older than this are archived
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        interval_minutes: int = 60,
        log_retention_days: int = 90,
        log_archive_days: int = 30,
    ):
        self._session_factory = session_factory
        self.interval_minutes = interval_minutes
        self.log_retention_days = log_retention_days
        self.log_archive_days = log_archive_days

        self.task_ops = TaskPostOperations()
        self.allowlist_ops = AllowlistOperations()
        self.log_ops = InteractionLogOperations()
        self.maintenance_ops = MaintenanceOperations()

        self.is_running = False
        self.last_run: Optional[datetime] = None
        self.stats: dict[str, Any] = {
            "total_runs": 0,
            "total_items_processed": 0,
            "total_items_deleted": 0,
            "total_errors": 0,
            "average_run_time": 0.0,
        }
        self._task: Optional[asyncio.Task] = None

    # Jobs

    async def cleanup_interaction_logs(self, session: AsyncSession) -> CleanupResult:
        deleted = await self.log_ops.cleanup_old_logs(session, self.log_retention_days)
        archived = await self.log_ops.archive_old_logs(session, self.log_archive_days, self.log_retention_days)
        logger.debug(f"Interaction logs: {deleted} deleted, {archived} archived")
        return CleanupResult(processed=deleted + archived, deleted=deleted)

    async def cleanup_expired_tokens(self, session: AsyncSession) -> CleanupResult:
        cleared = await self.maintenance_ops.clear_expired_verification_tokens(session)
        return CleanupResult(processed=cleared)

    async def cleanup_expired_tasks(self, session: AsyncSession) -> CleanupResult:
        expired = await self.task_ops.expire_old_task_posts(session)
        archived = await self.task_ops.archive_terminal_posts(session, 30)
        return CleanupResult(processed=expired + archived)

    async def cleanup_expired_allowlists(self, session: AsyncSession) -> CleanupResult:
        expired = await self.allowlist_ops.expire_old_allowlists(session)
        archived = await self.allowlist_ops.archive_terminal_connections(session, 60)
        return CleanupResult(processed=expired + archived)

    async def check_integrity(self, session: AsyncSession) -> CleanupResult:
        return CleanupResult(reported=await self.maintenance_ops.validate_integrity(session))

    def jobs(self) -> list[tuple[str, Callable[[AsyncSession], Awaitable[CleanupResult]]]]:
        return [
            ("interaction_logs", self.cleanup_interaction_logs),
            ("expired_tokens", self.cleanup_expired_tokens),
            ("expired_tasks", self.cleanup_expired_tasks),
            ("expired_allowlists", self.cleanup_expired_allowlists),
            ("integrity", self.check_integrity),
        ]

    # Runs

    async def run_cleanup(self) -> Optional[dict[str, Any]]:
        """Run every job once.

        Returns:
            Optional[dict]: Per-run summary, or None when a run was already in progress
        """
        if self.is_running:
            logger.warning("Cleanup already in progress, skipping this run")
            return None

        self.is_running = True
        started = time.perf_counter()
        processed = deleted = errors = 0
        per_job: dict[str, Any] = {}
        try:
            logger.info("Starting data cleanup process...")
            for name, job in self.jobs():
                try:
                    async with self._session_factory() as session:
                        result = await job(session)
                    processed += result.processed
                    deleted += result.deleted
                    per_job[name] = {"processed": result.processed, "deleted": result.deleted}
                    if result.reported is not None:
                        per_job[name]["reported"] = result.reported
                except Exception as e:
                    errors += 1
                    per_job[name] = {"error": str(e)}
                    logger.error(f"❌ Cleanup task {name} failed: {e}")

            run_time_ms = (time.perf_counter() - started) * 1000
            self._update_stats(processed, deleted, errors, run_time_ms)
            self.last_run = datetime.now(timezone.utc)
            log_performance("data_cleanup", run_time_ms, processed=processed, deleted=deleted, errors=errors)
            logger.info(
                f"Data cleanup completed in {run_time_ms:.0f}ms: "
                f"{processed} processed, {deleted} deleted, {errors} errors"
            )
            return {
                "processed": processed,
                "deleted": deleted,
                "errors": errors,
                "run_time_ms": run_time_ms,
                "jobs": per_job,
            }
        finally:
            self.is_running = False

    def _update_stats(self, processed: int, deleted: int, errors: int, run_time_ms: float) -> None:
        self.stats["total_runs"] += 1
        self.stats["total_items_processed"] += processed
        self.stats["total_items_deleted"] += deleted
        self.stats["total_errors"] += errors
        runs = self.stats["total_runs"]
        self.stats["average_run_time"] = (self.stats["average_run_time"] * (runs - 1) + run_time_ms) / runs

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.stats,
            "is_running": self.is_running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "interval_minutes": self.interval_minutes,
        }

    # Background loop

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Data cleanup service is already running")
            return

        async def cleanup_loop():
            while True:
                try:
                    await self.run_cleanup()
                except Exception as e:
                    logger.error(f"Data cleanup process failed: {e}")
                    self.stats["total_errors"] += 1
                await asyncio.sleep(self.interval_minutes * 60)

        self._task = asyncio.create_task(cleanup_loop())
        logger.info(f"Started data cleanup service ({self.interval_minutes} minute intervals)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Data cleanup service stopped")
