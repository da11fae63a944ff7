"""Background maintenance - periodic cleanup off the request path."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from sessionguard.core.logging import get_logger
from sessionguard.services.audit_log import AuditLog
from sessionguard.services.event_sink import SecurityEventSink
from sessionguard.services.rate_limiter import RateLimiter
from sessionguard.services.session_manager import SessionManager
from sessionguard.services.threat_monitor import ThreatMonitor
from sessionguard.services.token_guard import TokenGuard

logger = get_logger("maintenance")


@dataclass
class MaintenanceIntervals:
    """Seconds between runs of each job."""

    session_cleanup: int = 600
    blacklist_purge: int = 300
    retention: int = 3600
    rate_limit_cleanup: int = 300


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


class MaintenanceScheduler:
    """Runs each cleanup job in its own asyncio task.

    A failing run is logged and the loop keeps going; one job never
    delays another.
    """

    def __init__(
        self,
        session_manager: SessionManager,
        token_guard: TokenGuard,
        audit_log: AuditLog,
        event_sink: SecurityEventSink,
        rate_limiter: RateLimiter,
        intervals: MaintenanceIntervals | None = None,
        security_event_retention_days: int = 90,
        rate_limit_inactive_seconds: int = 3600,
        threat_monitor: ThreatMonitor | None = None,
    ):
        self._session_manager = session_manager
        self._token_guard = token_guard
        self._audit_log = audit_log
        self._event_sink = event_sink
        self._rate_limiter = rate_limiter
        self._threat_monitor = threat_monitor
        self._intervals = intervals or MaintenanceIntervals()
        self._event_retention_days = max(1, security_event_retention_days)
        self._rate_limit_inactive_seconds = rate_limit_inactive_seconds
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        """Start one background task per job."""
        if self._tasks:
            logger.warning("Maintenance scheduler is already running")
            return

        jobs: list[tuple[str, int, Callable[[], Awaitable[int]]]] = [
            ("session_cleanup", self._intervals.session_cleanup, self.run_session_cleanup_now),
            ("blacklist_purge", self._intervals.blacklist_purge, self.run_blacklist_purge_now),
            ("retention", self._intervals.retention, self.run_retention_now),
            (
                "rate_limit_cleanup",
                self._intervals.rate_limit_cleanup,
                self.run_rate_limit_cleanup_now,
            ),
        ]
        for name, interval, job in jobs:
            task = asyncio.create_task(self._loop(name, interval, job), name=f"maintenance:{name}")
            task.add_done_callback(task_done_callback)
            self._tasks.append(task)
        logger.info(f"Maintenance scheduler started ({len(self._tasks)} jobs)")

    async def stop(self) -> None:
        """Cancel every background task and wait for it to finish."""
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Maintenance scheduler stopped")

    async def _loop(self, name: str, interval: int, job: Callable[[], Awaitable[int]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await job()
                if removed > 0:
                    logger.debug(f"Maintenance job {name} removed {removed} records")
            except Exception:
                logger.exception(f"Error in maintenance job {name}")

    async def run_session_cleanup_now(self) -> int:
        return await self._session_manager.cleanup_expired_sessions()

    async def run_blacklist_purge_now(self) -> int:
        return await self._token_guard.purge_expired()

    async def run_retention_now(self) -> int:
        """Apply audit log and security event retention.

        Returns:
            Total number of records deleted
        """
        removed = await self._audit_log.enforce_retention_policy()
        removed += await self._event_sink.prune_events(self._event_retention_days)
        return removed

    async def run_rate_limit_cleanup_now(self) -> int:
        """Drop idle rate-limit entries and drained threat-monitor windows."""
        removed = await self._rate_limiter.cleanup_inactive_entries(
            inactive_seconds=self._rate_limit_inactive_seconds
        )
        if self._threat_monitor is not None:
            removed += await self._threat_monitor.cleanup()
        return removed
