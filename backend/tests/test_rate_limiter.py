"""Tests for the fixed-window rate limiter."""

import asyncio
from datetime import timedelta

import pytest

from sessionguard.core.exceptions import FailurePolicy
from sessionguard.domain.entities import RateLimitEntry, RuleClass, SecurityEventType, Severity
from sessionguard.services.rate_limiter import (
    RateLimiter,
    RateLimiterConfig,
    RateLimitRule,
    RateLimitScope,
    build_key,
)

SIGNING_KEY = "test-rate-limit-signing-key"


class TestRules:
    """Tests for rule resolution."""

    def test_default_rule(self, rate_limiter):
        rule = rate_limiter.get_rule("/api/unknown")
        assert rule.max_requests == 60
        assert rule.window_ms == 60_000

    def test_longest_prefix_wins(self, rate_limiter):
        """The most specific endpoint prefix decides the rule."""
        rate_limiter.set_rule("/api/auth/login", RateLimitRule(max_requests=2, window_ms=1000))

        assert rate_limiter.get_rule("/api/auth/login").max_requests == 2
        assert rate_limiter.get_rule("/api/auth/logout").max_requests == 5

    def test_invalid_rule_rejected(self):
        with pytest.raises(ValueError):
            RateLimitRule(max_requests=0, window_ms=1000)

    def test_build_key(self):
        assert build_key(RateLimitScope.IP, "1.2.3.4") == "ip:1.2.3.4"
        assert build_key(RateLimitScope.USER, "u1", "/api/x") == "user:u1:/api/x"


class TestFixedWindow:
    """Tests for window counting."""

    @pytest.mark.asyncio
    async def test_sixth_request_rejected(self, rate_limiter, event_sink):
        """Five requests per 60s: requests 1-5 pass, request 6 is rejected with an event."""
        rate_limiter.set_rule("/api/login", RateLimitRule(max_requests=5, window_ms=60_000))

        results = [
            await rate_limiter.check(RateLimitScope.IP, "203.0.113.7", "/api/login")
            for _ in range(6)
        ]

        assert results == [True, True, True, True, True, False]
        events = await event_sink.list_events(event_type=SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert len(events) == 1
        assert events[0].severity == Severity.HIGH
        assert events[0].details["scope"] == "ip"
        assert events[0].details["max_requests"] == 5

    @pytest.mark.asyncio
    async def test_user_scope_is_medium_severity(self, rate_limiter, event_sink):
        rate_limiter.set_rule("/api/x", RateLimitRule(max_requests=1, window_ms=60_000))

        await rate_limiter.check(RateLimitScope.USER, "u1", "/api/x")
        await rate_limiter.check(RateLimitScope.USER, "u1", "/api/x")

        events = await event_sink.list_events(event_type=SecurityEventType.RATE_LIMIT_EXCEEDED)
        assert events[0].severity == Severity.MEDIUM

    @pytest.mark.asyncio
    async def test_window_resets(self, rate_limiter, clock):
        """A new window starts once the previous one has elapsed."""
        rate_limiter.set_rule("/api/x", RateLimitRule(max_requests=2, window_ms=60_000))

        assert await rate_limiter.check(RateLimitScope.IP, "1.1.1.1", "/api/x")
        assert await rate_limiter.check(RateLimitScope.IP, "1.1.1.1", "/api/x")
        assert not await rate_limiter.check(RateLimitScope.IP, "1.1.1.1", "/api/x")

        clock.advance(seconds=61)

        assert await rate_limiter.check(RateLimitScope.IP, "1.1.1.1", "/api/x")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, rate_limiter):
        """Different identifiers and endpoints have separate counters."""
        rate_limiter.set_rule("/api/x", RateLimitRule(max_requests=1, window_ms=60_000))

        assert await rate_limiter.check(RateLimitScope.IP, "1.1.1.1", "/api/x")
        assert await rate_limiter.check(RateLimitScope.IP, "2.2.2.2", "/api/x")
        assert await rate_limiter.check(RateLimitScope.IP, "1.1.1.1", "/api/y")
        assert not await rate_limiter.check(RateLimitScope.IP, "1.1.1.1", "/api/x")

    @pytest.mark.asyncio
    async def test_accepts_never_exceed_limit_per_window(self, rate_limiter, clock):
        """Across many windows the accepted count per window stays within max_requests."""
        rate_limiter.set_rule("/api/x", RateLimitRule(max_requests=7, window_ms=10_000))
        accepted_per_window: dict[int, int] = {}
        window_start = clock.now()
        window = 0

        for i in range(200):
            if clock.now() - window_start > timedelta(milliseconds=10_000):
                window += 1
                window_start = clock.now()
            if await rate_limiter.check(RateLimitScope.USER, "u1", "/api/x"):
                accepted_per_window[window] = accepted_per_window.get(window, 0) + 1
            clock.advance(milliseconds=150 + (i % 5) * 100)

        assert accepted_per_window
        assert max(accepted_per_window.values()) <= 7

    @pytest.mark.asyncio
    async def test_concurrent_checks_respect_limit(self, rate_limiter):
        """Concurrent checks on one key never accept more than the limit."""
        rate_limiter.set_rule("/api/x", RateLimitRule(max_requests=10, window_ms=60_000))

        results = await asyncio.gather(
            *[rate_limiter.check(RateLimitScope.IP, "9.9.9.9", "/api/x") for _ in range(25)]
        )

        assert sum(results) == 10


class TestAdaptiveStrictness:
    """Tests for burst promotion to the strict rule class."""

    @pytest.mark.asyncio
    async def test_burst_tightens_limit(self, store, event_sink, clock):
        """A burst switches the key to strict mode, which only lowers the limit."""
        limiter = RateLimiter(
            store,
            event_sink,
            clock,
            signing_key=SIGNING_KEY,
            config=RateLimiterConfig(burst_threshold=4, burst_window_ms=1000, strict_divisor=4),
            endpoint_rules={"/api/x": RateLimitRule(max_requests=20, window_ms=60_000)},
        )

        results = [await limiter.check(RateLimitScope.IP, "5.5.5.5", "/api/x") for _ in range(6)]

        assert results == [True, True, True, True, True, False]
        entry = await store.get_rate_limit_entry("ip:5.5.5.5:/api/x")
        assert entry.rule_class == RuleClass.STRICT
        assert entry.max_requests == 5

    @pytest.mark.asyncio
    async def test_strict_mode_relaxes_in_next_window(self, store, event_sink, clock):
        """After the burst subsides the next window uses the normal limit again."""
        limiter = RateLimiter(
            store,
            event_sink,
            clock,
            signing_key=SIGNING_KEY,
            config=RateLimiterConfig(burst_threshold=4, burst_window_ms=1000, strict_divisor=4),
            endpoint_rules={"/api/x": RateLimitRule(max_requests=20, window_ms=60_000)},
        )
        for _ in range(6):
            await limiter.check(RateLimitScope.IP, "5.5.5.5", "/api/x")

        clock.advance(seconds=61)
        assert await limiter.check(RateLimitScope.IP, "5.5.5.5", "/api/x")

        entry = await store.get_rate_limit_entry("ip:5.5.5.5:/api/x")
        assert entry.rule_class == RuleClass.NORMAL
        assert entry.max_requests == 20


class TestTampering:
    """Tests for signed counter state."""

    @pytest.mark.asyncio
    async def test_forged_entry_triggers_strict_fallback(self, rate_limiter, store, event_sink, clock):
        """An entry not signed by the limiter is treated as tampering and locked."""
        key = "ip:6.6.6.6:/api/x"
        await store.put_rate_limit_entry(
            RateLimitEntry(
                key=key,
                count=0,
                window_start=clock.now(),
                window_ms=60_000,
                max_requests=1_000_000,
                signature="forged",
            )
        )

        assert not await rate_limiter.check(RateLimitScope.IP, "6.6.6.6", "/api/x")
        entry = await store.get_rate_limit_entry(key)
        assert entry.rule_class == RuleClass.STRICT
        assert entry.max_requests == 1

        # The lock holds for the rest of the window
        assert not await rate_limiter.check(RateLimitScope.IP, "6.6.6.6", "/api/x")

        events = await event_sink.list_events(
            event_type=SecurityEventType.RATE_LIMIT_KEY_TAMPERING
        )
        assert len(events) == 1
        assert events[0].severity == Severity.HIGH

    @pytest.mark.asyncio
    async def test_entry_edited_out_of_band_is_detected(self, rate_limiter, store):
        """Lowering a stored count without re-signing is detected."""
        await rate_limiter.check(RateLimitScope.USER, "u9", "/api/x")
        entry = await store.get_rate_limit_entry("user:u9:/api/x")
        entry.count = 0
        await store.put_rate_limit_entry(entry)

        assert not await rate_limiter.check(RateLimitScope.USER, "u9", "/api/x")

    @pytest.mark.asyncio
    async def test_lock_expires_with_window(self, rate_limiter, store, clock):
        """The tamper fallback lasts one window."""
        key = "ip:6.6.6.6:/api/x"
        await store.put_rate_limit_entry(
            RateLimitEntry(
                key=key, count=0, window_start=clock.now(), window_ms=60_000, max_requests=10
            )
        )
        await rate_limiter.check(RateLimitScope.IP, "6.6.6.6", "/api/x")

        clock.advance(seconds=61)

        assert await rate_limiter.check(RateLimitScope.IP, "6.6.6.6", "/api/x")


class TestFailurePolicy:
    """Tests for store outages."""

    @pytest.mark.asyncio
    async def test_fails_open_by_default(self, failing_store, clock):
        from sessionguard.services.event_sink import SecurityEventSink

        limiter = RateLimiter(
            failing_store, SecurityEventSink(failing_store, clock), clock, signing_key=SIGNING_KEY
        )
        failing_store.fail("update_rate_limit_entry")

        assert await limiter.check(RateLimitScope.IP, "1.2.3.4") is True

    @pytest.mark.asyncio
    async def test_fails_closed_when_configured(self, failing_store, clock):
        from sessionguard.services.event_sink import SecurityEventSink

        limiter = RateLimiter(
            failing_store,
            SecurityEventSink(failing_store, clock),
            clock,
            signing_key=SIGNING_KEY,
            failure_policy=FailurePolicy.CLOSED,
        )
        failing_store.fail("update_rate_limit_entry")

        assert await limiter.check(RateLimitScope.IP, "1.2.3.4") is False


class TestCombinedAndDetection:
    """Tests for combined checks and bypass detection."""

    @pytest.mark.asyncio
    async def test_combined_requires_every_scope(self, rate_limiter):
        """A user over the limit is rejected even from a fresh IP."""
        rate_limiter.set_rule("/api/x", RateLimitRule(max_requests=2, window_ms=60_000))

        assert await rate_limiter.check_combined("10.0.0.1", "u1", "/api/x")
        assert await rate_limiter.check_combined("10.0.0.2", "u1", "/api/x")
        assert not await rate_limiter.check_combined("10.0.0.3", "u1", "/api/x")

    @pytest.mark.asyncio
    async def test_ip_rotation_detected_once(self, rate_limiter, event_sink):
        """Five IPs for one user within the window emit a single rotation event."""
        for i in range(7):
            await rate_limiter.check_combined(f"10.0.1.{i}", "rotator", "/api/x")

        events = await event_sink.list_events(event_type=SecurityEventType.SUSPICIOUS_IP_ROTATION)
        assert len(events) == 1
        assert events[0].user_id == "rotator"
        assert events[0].details["ip_count"] == 5

    @pytest.mark.asyncio
    async def test_distributed_bypass_detected(self, rate_limiter, event_sink):
        """Many distinct IP/user pairs in a short interval emit a bypass event."""
        for i in range(10):
            await rate_limiter.check_combined(f"10.0.2.{i}", f"user-{i}", "/api/x")

        events = await event_sink.list_events(
            event_type=SecurityEventType.DISTRIBUTED_BYPASS_ATTEMPT
        )
        assert len(events) == 1
        assert events[0].details["pair_count"] == 10

    @pytest.mark.asyncio
    async def test_detectors_do_not_reject(self, rate_limiter):
        """Bypass detection is a signal only."""
        results = [
            await rate_limiter.check_combined(f"10.0.3.{i}", "rotator", "/api/x") for i in range(6)
        ]
        assert all(results)


class TestMaintenance:
    """Tests for reset, stats and cleanup."""

    @pytest.mark.asyncio
    async def test_reset_identifier(self, rate_limiter):
        """Reset clears an identifier's counters without touching similar ones."""
        rate_limiter.set_rule("/api/x", RateLimitRule(max_requests=1, window_ms=60_000))
        await rate_limiter.check(RateLimitScope.IP, "1.2.3.4", "/api/x")
        await rate_limiter.check(RateLimitScope.IP, "1.2.3.40", "/api/x")

        await rate_limiter.reset("1.2.3.4")

        assert await rate_limiter.check(RateLimitScope.IP, "1.2.3.4", "/api/x")
        assert not await rate_limiter.check(RateLimitScope.IP, "1.2.3.40", "/api/x")

    @pytest.mark.asyncio
    async def test_stats(self, rate_limiter):
        await rate_limiter.check(RateLimitScope.IP, "1.2.3.4", "/api/x")

        stats = await rate_limiter.get_stats()

        assert stats["ip:1.2.3.4:/api/x"]["count"] == 1
        assert stats["ip:1.2.3.4:/api/x"]["rule_class"] == "normal"

    @pytest.mark.asyncio
    async def test_cleanup_inactive_entries(self, rate_limiter, store, clock):
        await rate_limiter.check(RateLimitScope.IP, "1.2.3.4", "/api/x")
        clock.advance(hours=2)
        await rate_limiter.check(RateLimitScope.IP, "5.6.7.8", "/api/x")

        removed = await rate_limiter.cleanup_inactive_entries(inactive_seconds=3600)

        assert removed == 1
        assert await store.get_rate_limit_entry("ip:1.2.3.4:/api/x") is None
        assert await store.get_rate_limit_entry("ip:5.6.7.8:/api/x") is not None
        assert "ip:1.2.3.4:/api/x" not in await rate_limiter.get_stats()
