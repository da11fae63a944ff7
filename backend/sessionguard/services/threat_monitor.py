"""Rolling-window detectors for failed logins, repeat-offender IPs and bulk data access.

State is kept per process, like the rate limiter's bypass detectors. Each
detector fires once when its threshold is crossed and re-arms after the
window drains below the threshold.
"""

import asyncio
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sessionguard.core.clock import Clock
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import SecurityEvent, SecurityEventType, Severity
from sessionguard.services.event_sink import SecurityEventSink

logger = get_logger("threat_monitor")

SUSPICIOUS_IP_REASON = "suspicious_ip"
ANOMALOUS_DATA_ACCESS_REASON = "anomalous_data_access"

_INCIDENT_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


@dataclass(frozen=True)
class ThreatMonitorConfig:
    failed_auth_threshold: int = 5
    failed_auth_window: timedelta = timedelta(hours=24)
    suspicious_ip_threshold: int = 3
    suspicious_ip_window: timedelta = timedelta(hours=24)
    data_access_threshold: int = 100
    data_access_window: timedelta = timedelta(hours=1)


class _Window:
    """Timestamps (with an optional label) inside a sliding window."""

    def __init__(self) -> None:
        self.hits: deque[tuple[datetime, str]] = deque()
        self.flagged = False

    def add(self, now: datetime, window: timedelta, label: str = "") -> int:
        self.hits.append((now, label))
        return self.prune(now, window)

    def prune(self, now: datetime, window: timedelta) -> int:
        horizon = now - window
        while self.hits and self.hits[0][0] <= horizon:
            self.hits.popleft()
        return len(self.hits)


class ThreatMonitor:
    """Counts failed authentications per IP, incidents per IP and data access per user."""

    def __init__(
        self,
        event_sink: SecurityEventSink,
        clock: Clock,
        config: ThreatMonitorConfig | None = None,
    ):
        self._events = event_sink
        self._clock = clock
        self._config = config or ThreatMonitorConfig()
        self._failed_auth: dict[str, _Window] = defaultdict(_Window)
        self._incidents: dict[str, _Window] = defaultdict(_Window)
        self._data_access: dict[str, _Window] = defaultdict(_Window)
        self._lock = asyncio.Lock()

    async def _hit(
        self,
        windows: dict[str, _Window],
        key: str,
        window: timedelta,
        threshold: int,
        label: str = "",
    ) -> tuple[int, list[str] | None]:
        """Add a hit; returns (count, labels) with labels set only on the crossing hit."""
        now = self._clock.now()
        async with self._lock:
            tracked = windows[key]
            count = tracked.add(now, window, label)
            if count < threshold:
                tracked.flagged = False
                return count, None
            if tracked.flagged:
                return count, None
            tracked.flagged = True
            return count, [hit_label for _, hit_label in tracked.hits]

    async def record_failed_auth(
        self,
        ip: str,
        user_id: str | None = None,
        endpoint: str | None = None,
    ) -> int:
        """Count a failed authentication from ``ip``.

        Reaching ``failed_auth_threshold`` failures within the window records
        ``auth_failure``/high.

        Returns:
            Failures from ``ip`` within the window
        """
        count, crossed = await self._hit(
            self._failed_auth,
            ip,
            self._config.failed_auth_window,
            self._config.failed_auth_threshold,
            label=endpoint or "",
        )
        if crossed is not None:
            logger.warning(f"Repeated authentication failures from {ip}: {count}")
            await self._events.record(
                SecurityEventType.AUTH_FAILURE,
                Severity.HIGH,
                {
                    "attempts": count,
                    "window_seconds": int(self._config.failed_auth_window.total_seconds()),
                    "endpoints": sorted({label for label in crossed if label}),
                },
                user_id=user_id,
                ip=ip,
            )
        return count

    async def track_suspicious_ip(self, ip: str, reason: str) -> int:
        """Count an incident against ``ip``; repeat offenders escalate.

        Returns:
            Incidents from ``ip`` within the window
        """
        count, crossed = await self._hit(
            self._incidents,
            ip,
            self._config.suspicious_ip_window,
            self._config.suspicious_ip_threshold,
            label=reason,
        )
        if crossed is not None:
            await self._events.record(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                Severity.HIGH,
                {"reason": SUSPICIOUS_IP_REASON, "incidents": count, "incident_types": crossed},
                ip=ip,
            )
        return count

    async def monitor_data_access(self, user_id: str, entity_type: str, access_type: str) -> bool:
        """Count one data access by ``user_id``.

        Returns:
            True on the access that crosses ``data_access_threshold`` within the window
        """
        count, crossed = await self._hit(
            self._data_access,
            user_id,
            self._config.data_access_window,
            self._config.data_access_threshold + 1,
            label=f"{access_type}:{entity_type}",
        )
        if crossed is None:
            return False

        by_kind: dict[str, int] = defaultdict(int)
        for label in crossed:
            by_kind[label] += 1
        await self._events.record(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            Severity.HIGH,
            {
                "reason": ANOMALOUS_DATA_ACCESS_REASON,
                "access_count": count,
                "window_seconds": int(self._config.data_access_window.total_seconds()),
                "by_kind": dict(by_kind),
            },
            user_id=user_id,
        )
        return True

    async def handle_event(self, event: SecurityEvent) -> None:
        """Event sink subscriber: every high/critical event tied to an IP is an incident."""
        if event.ip is None or event.severity not in _INCIDENT_SEVERITIES:
            return
        if event.details.get("reason") == SUSPICIOUS_IP_REASON:
            return
        await self.track_suspicious_ip(event.ip, event.type)

    async def cleanup(self) -> int:
        """Drop windows that have fully drained."""
        now = self._clock.now()
        removed = 0
        async with self._lock:
            for windows, span in (
                (self._failed_auth, self._config.failed_auth_window),
                (self._incidents, self._config.suspicious_ip_window),
                (self._data_access, self._config.data_access_window),
            ):
                for key in [k for k, w in windows.items() if w.prune(now, span) == 0]:
                    del windows[key]
                    removed += 1
        return removed

    def get_stats(self) -> dict[str, Any]:
        return {
            "failed_auth_ips": len(self._failed_auth),
            "incident_ips": len(self._incidents),
            "data_access_users": len(self._data_access),
        }
