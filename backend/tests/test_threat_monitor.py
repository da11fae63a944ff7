"""Tests for failed-auth, repeat-offender and data-access detectors."""

import pytest

from sessionguard.domain.entities import SecurityEventType, Severity
from sessionguard.services.threat_monitor import (
    ANOMALOUS_DATA_ACCESS_REASON,
    SUSPICIOUS_IP_REASON,
    ThreatMonitor,
    ThreatMonitorConfig,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def monitor(event_sink, clock) -> ThreatMonitor:
    return ThreatMonitor(event_sink, clock)


async def suspicious(event_sink, reason: str) -> list:
    events = await event_sink.list_events(event_type=SecurityEventType.SUSPICIOUS_ACTIVITY)
    return [e for e in events if e.details.get("reason") == reason]


class TestFailedAuth:
    """Tests for per-IP authentication failure counting."""

    async def test_fifth_failure_reported(self, monitor, event_sink):
        counts = [
            await monitor.record_failed_auth("6.6.6.6", endpoint="/api/auth") for _ in range(4)
        ]

        assert counts == [1, 2, 3, 4]
        assert await event_sink.list_events(event_type=SecurityEventType.AUTH_FAILURE) == []

        await monitor.record_failed_auth("6.6.6.6", endpoint="/api/auth")

        events = await event_sink.list_events(event_type=SecurityEventType.AUTH_FAILURE)
        assert len(events) == 1
        assert events[0].severity == Severity.HIGH
        assert events[0].details["attempts"] == 5
        assert events[0].details["endpoints"] == ["/api/auth"]

    async def test_reported_once_per_crossing(self, monitor, event_sink, clock):
        """Failures past the threshold do not repeat the event until the window drains."""
        for _ in range(8):
            await monitor.record_failed_auth("6.6.6.6")
        clock.advance(hours=25)
        for _ in range(5):
            await monitor.record_failed_auth("6.6.6.6")

        events = await event_sink.list_events(event_type=SecurityEventType.AUTH_FAILURE)
        assert len(events) == 2

    async def test_ips_counted_separately(self, monitor, event_sink):
        for i in range(5):
            await monitor.record_failed_auth(f"6.6.6.{i}")

        assert await event_sink.list_events(event_type=SecurityEventType.AUTH_FAILURE) == []

    async def test_old_failures_expire(self, monitor, clock):
        for _ in range(4):
            await monitor.record_failed_auth("6.6.6.6")
        clock.advance(hours=24)

        assert await monitor.record_failed_auth("6.6.6.6") == 1


class TestSuspiciousIp:
    """Tests for escalation of repeat-offender IPs."""

    async def test_third_incident_escalates(self, monitor, event_sink):
        await monitor.track_suspicious_ip("7.7.7.7", "rate_limit_exceeded")
        await monitor.track_suspicious_ip("7.7.7.7", "invalid_token")
        assert await suspicious(event_sink, SUSPICIOUS_IP_REASON) == []

        await monitor.track_suspicious_ip("7.7.7.7", "permission_denied")

        events = await suspicious(event_sink, SUSPICIOUS_IP_REASON)
        assert len(events) == 1
        assert events[0].ip == "7.7.7.7"
        assert events[0].details["incident_types"] == [
            "rate_limit_exceeded",
            "invalid_token",
            "permission_denied",
        ]

    async def test_high_events_with_ip_are_incidents(self, monitor, event_sink):
        """Subscribed to the sink, high events tied to an IP count as incidents."""
        event_sink.subscribe(monitor.handle_event)

        for _ in range(3):
            await event_sink.record(SecurityEventType.PERMISSION_DENIED, Severity.HIGH, ip="7.7.7.8")

        events = await suspicious(event_sink, SUSPICIOUS_IP_REASON)
        assert len(events) == 1
        assert events[0].details["incidents"] == 3

    async def test_low_events_and_events_without_ip_ignored(self, monitor, event_sink):
        event_sink.subscribe(monitor.handle_event)

        for _ in range(3):
            await event_sink.record(SecurityEventType.SESSION_CREATED, Severity.LOW, ip="7.7.7.9")
            await event_sink.record(SecurityEventType.PERMISSION_DENIED, Severity.HIGH)

        assert await suspicious(event_sink, SUSPICIOUS_IP_REASON) == []


class TestDataAccess:
    """Tests for per-user data access anomaly detection."""

    async def test_more_than_threshold_is_anomalous(self, event_sink, clock):
        monitor = ThreatMonitor(event_sink, clock, ThreatMonitorConfig(data_access_threshold=3))

        results = [await monitor.monitor_data_access("u1", "invoice", "read") for _ in range(5)]

        assert results == [False, False, False, True, False]
        events = await suspicious(event_sink, ANOMALOUS_DATA_ACCESS_REASON)
        assert len(events) == 1
        assert events[0].user_id == "u1"
        assert events[0].details["access_count"] == 4
        assert events[0].details["by_kind"] == {"read:invoice": 4}

    async def test_default_threshold_is_one_hundred_per_hour(self, monitor, event_sink, clock):
        for _ in range(100):
            await monitor.monitor_data_access("u1", "invoice", "read")
        clock.advance(minutes=61)
        for _ in range(100):
            await monitor.monitor_data_access("u1", "invoice", "read")

        assert await suspicious(event_sink, ANOMALOUS_DATA_ACCESS_REASON) == []

        await monitor.monitor_data_access("u1", "invoice", "write")

        assert len(await suspicious(event_sink, ANOMALOUS_DATA_ACCESS_REASON)) == 1


class TestCleanup:
    """Tests for dropping drained windows."""

    async def test_cleanup_drops_drained_windows(self, monitor, clock):
        await monitor.record_failed_auth("6.6.6.6")
        await monitor.track_suspicious_ip("7.7.7.7", "invalid_token")
        await monitor.monitor_data_access("u1", "invoice", "read")
        clock.advance(hours=2)

        assert await monitor.cleanup() == 1
        assert monitor.get_stats() == {
            "failed_auth_ips": 1,
            "incident_ips": 1,
            "data_access_users": 0,
        }

        clock.advance(days=1)
        assert await monitor.cleanup() == 2
