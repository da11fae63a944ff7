"""Security event sink - durable recorder and explicit event channel.

Every component publishes SecurityEvents here. Events are persisted to the
store, logged and counted, then handed to subscribers registered through
``subscribe``. Operational failures (store down, collaborator errors) are
reported through ``report_infrastructure_error``; they are logged and only
become a security event when they recur.
"""

import asyncio
import inspect
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from sessionguard.core import metrics
from sessionguard.core.clock import Clock
from sessionguard.core.exceptions import StoreUnavailableError
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import SecurityEvent, SecurityEventType, Severity
from sessionguard.repositories.base import SecurityStore

logger = get_logger("event_sink")

EventSubscriber = Callable[[SecurityEvent], Awaitable[None] | None]

DEFAULT_INFRA_ERROR_THRESHOLD = 5
DEFAULT_INFRA_ERROR_WINDOW_SECONDS = 300

_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


class SecurityEventSink:
    """Append-only recorder of security events with explicit subscription."""

    def __init__(
        self,
        store: SecurityStore,
        clock: Clock,
        infra_error_threshold: int = DEFAULT_INFRA_ERROR_THRESHOLD,
        infra_error_window_seconds: int = DEFAULT_INFRA_ERROR_WINDOW_SECONDS,
    ):
        self._store = store
        self._clock = clock
        self._subscribers: list[EventSubscriber] = []
        self._infra_threshold = max(1, infra_error_threshold)
        self._infra_window = timedelta(seconds=infra_error_window_seconds)
        self._infra_failures: dict[str, deque[datetime]] = defaultdict(deque)
        self._infra_lock = asyncio.Lock()

    def subscribe(self, callback: EventSubscriber) -> None:
        """Register a callback (sync or async) for every recorded event."""
        if callback not in self._subscribers:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: EventSubscriber) -> None:
        """Remove a previously registered callback."""
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def record(
        self,
        event_type: SecurityEventType | str,
        severity: Severity,
        details: dict[str, Any] | None = None,
        user_id: str | None = None,
        ip: str | None = None,
    ) -> SecurityEvent:
        """Record a security event.

        Persistence failures are reported as infrastructure errors and never
        raised: the caller's allow/deny decision must not depend on whether
        the journal write succeeded.

        Returns:
            The recorded event (with its store id when persisted)
        """
        type_value = event_type.value if isinstance(event_type, SecurityEventType) else event_type
        event = SecurityEvent(
            type=type_value,
            severity=severity,
            timestamp=self._clock.now(),
            details=dict(details or {}),
            user_id=user_id,
            ip=ip,
        )

        try:
            event = await self._store.add_event(event)
        except StoreUnavailableError as e:
            # A failed write of the recurrence alert itself must not recurse
            if type_value != SecurityEventType.INFRASTRUCTURE_FAILURE_RECURRING.value:
                await self.report_infrastructure_error("event_sink", "record", e)
            else:
                logger.error(f"Failed to persist recurrence alert: {e}")

        logger.log(
            _LOG_LEVELS[severity],
            f"Security event: {type_value} ({severity.value})",
            extra={"security_event": event.to_dict()},
        )
        metrics.record_security_event(type_value, severity.value)

        await self._notify(event)
        return event

    async def _notify(self, event: SecurityEvent) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Security event subscriber failed for {event.type}")

    async def report_infrastructure_error(
        self,
        component: str,
        operation: str,
        error: BaseException,
    ) -> None:
        """Send an operational failure to the error sink.

        When one component fails ``infra_error_threshold`` times within the
        rolling window, an ``infrastructure_failure_recurring`` event is
        recorded and the counter for that component starts over.
        """
        logger.error(f"Infrastructure error in {component}.{operation}: {error}")
        metrics.record_infrastructure_error(component, operation)

        now = self._clock.now()
        async with self._infra_lock:
            failures = self._infra_failures[component]
            failures.append(now)
            while failures and now - failures[0] > self._infra_window:
                failures.popleft()
            recurring = len(failures) >= self._infra_threshold
            count = len(failures)
            if recurring:
                failures.clear()

        if recurring:
            await self.record(
                SecurityEventType.INFRASTRUCTURE_FAILURE_RECURRING,
                Severity.HIGH,
                {
                    "component": component,
                    "operation": operation,
                    "failures": count,
                    "window_seconds": int(self._infra_window.total_seconds()),
                    "error": str(error),
                },
            )

    async def list_events(
        self,
        event_type: SecurityEventType | str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SecurityEvent]:
        """Most recent events, optionally filtered by type and start time."""
        if isinstance(event_type, SecurityEventType):
            event_type = event_type.value
        return await self._store.list_events(event_type=event_type, since=since, limit=limit)

    async def prune_events(self, days: int) -> int:
        """Delete events older than ``days`` (minimum 1)."""
        days = max(1, days)
        cutoff = self._clock.now() - timedelta(days=days)
        removed = await self._store.delete_events_before(cutoff)
        if removed > 0:
            logger.info(f"Pruned {removed} security events older than {days} days")
        metrics.record_maintenance("security_event_retention", removed)
        return removed
