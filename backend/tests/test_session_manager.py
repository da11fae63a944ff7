"""Tests for device-bound sessions."""

import asyncio

import pytest

from sessionguard.core.exceptions import (
    MaxSessionsExceededError,
    SessionNotFoundError,
    TooManySessionAttemptsError,
)
from sessionguard.domain.entities import SecurityEventType, Severity
from sessionguard.services.event_sink import SecurityEventSink
from sessionguard.services.session_manager import (
    SessionCapPolicy,
    SessionManager,
    SessionManagerConfig,
)


@pytest.fixture
def session_manager(store, event_sink, clock) -> SessionManager:
    return SessionManager(store, event_sink, clock)


async def create_spaced(manager: SessionManager, clock, user_id: str, count: int, ip: str = "10.0.0.1"):
    """Create sessions far enough apart to stay under the rapid-creation limit."""
    sessions = []
    for i in range(count):
        sessions.append(await manager.create_session(user_id, f"device-{i}", ip))
        clock.advance(seconds=15)
    return sessions


class TestCreateSession:
    """Tests for session creation."""

    @pytest.mark.asyncio
    async def test_create_session(self, session_manager, store, event_sink, clock):
        session = await session_manager.create_session("u1", "device-a", "10.0.0.1")

        assert session.user_id == "u1"
        assert session.device_id == "device-a"
        assert len(session.anti_fixation_token) == 64
        assert session.last_activity == clock.now()
        assert await store.get_session(session.id) is not None

        events = await event_sink.list_events(event_type=SecurityEventType.SESSION_CREATED)
        assert events[0].details["session_id"] == session.id

    @pytest.mark.asyncio
    async def test_public_view_hides_anti_fixation_token(self, session_manager):
        session = await session_manager.create_session("u1", "device-a", "10.0.0.1")

        assert "anti_fixation_token" not in session.to_dict()

    @pytest.mark.asyncio
    async def test_rapid_creation_rejected(self, session_manager, event_sink):
        """A sixth session within a minute is refused."""
        for i in range(5):
            await session_manager.create_session("u1", f"device-{i}", "10.0.0.1")

        with pytest.raises(TooManySessionAttemptsError):
            await session_manager.create_session("u1", "device-5", "10.0.0.1")

        events = await event_sink.list_events(event_type=SecurityEventType.RAPID_SESSION_CREATION)
        assert len(events) == 1
        assert events[0].severity == Severity.HIGH

    @pytest.mark.asyncio
    async def test_session_cap_rejects(self, store, event_sink, clock):
        """At the cap the reject policy refuses new sessions."""
        manager = SessionManager(store, event_sink, clock, SessionManagerConfig(max_sessions_per_user=3))
        await create_spaced(manager, clock, "u1", 3)

        with pytest.raises(MaxSessionsExceededError):
            await manager.create_session("u1", "device-x", "10.0.0.1")

        events = await event_sink.list_events(event_type=SecurityEventType.MAX_SESSIONS_EXCEEDED)
        assert events[0].details["policy"] == "reject"

    @pytest.mark.asyncio
    async def test_session_cap_evicts_oldest(self, store, event_sink, clock):
        """The evict policy removes the oldest session to make room."""
        manager = SessionManager(
            store,
            event_sink,
            clock,
            SessionManagerConfig(max_sessions_per_user=3, cap_policy=SessionCapPolicy.EVICT_OLDEST),
        )
        first, *_ = await create_spaced(manager, clock, "u1", 3)

        newest = await manager.create_session("u1", "device-x", "10.0.0.1")

        active = await manager.get_active_sessions("u1")
        assert len(active) == 3
        assert first.id not in {s.id for s in active}
        assert newest.id in {s.id for s in active}

    @pytest.mark.asyncio
    async def test_idle_sessions_do_not_count_towards_cap(self, store, event_sink, clock):
        manager = SessionManager(store, event_sink, clock, SessionManagerConfig(max_sessions_per_user=2))
        await create_spaced(manager, clock, "u1", 2)

        clock.advance(hours=2)

        assert await manager.create_session("u1", "device-x", "10.0.0.1")

    @pytest.mark.asyncio
    async def test_concurrent_creation_respects_cap(self, store, event_sink, clock):
        """Parallel creations for one user never exceed the cap."""
        manager = SessionManager(
            store,
            event_sink,
            clock,
            SessionManagerConfig(max_sessions_per_user=2, rapid_creation_threshold=100),
        )

        results = await asyncio.gather(
            *[manager.create_session("u1", f"d-{i}", "10.0.0.1") for i in range(6)],
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(results) - len(errors) == 2
        assert all(isinstance(e, MaxSessionsExceededError) for e in errors)

    @pytest.mark.asyncio
    async def test_concurrent_sessions_from_many_ips(self, session_manager, clock, event_sink):
        """A new session while others span two IPs is reported."""
        await session_manager.create_session("u1", "d-1", "10.0.0.1")
        clock.advance(seconds=15)
        await session_manager.create_session("u1", "d-2", "10.0.0.2")
        clock.advance(seconds=15)

        assert await event_sink.list_events(
            event_type=SecurityEventType.CONCURRENT_SESSIONS_DETECTED
        ) == []

        await session_manager.create_session("u1", "d-3", "10.0.0.3")

        events = await event_sink.list_events(
            event_type=SecurityEventType.CONCURRENT_SESSIONS_DETECTED
        )
        assert events[0].details["ip_count"] == 3


class TestValidateSession:
    """Tests for session validation."""

    @pytest.mark.asyncio
    async def test_valid_session_refreshes_activity(self, session_manager, store, clock):
        session = await session_manager.create_session("u1", "device-a", "10.0.0.1")
        clock.advance(minutes=30)

        assert await session_manager.validate_session(session.id, session.anti_fixation_token, "device-a")

        stored = await store.get_session(session.id)
        assert stored.last_activity == clock.now()

    @pytest.mark.asyncio
    async def test_device_mismatch_is_fixation_attempt(self, session_manager, event_sink):
        """A session presented from another device is rejected."""
        session = await session_manager.create_session("u1", "A", "10.0.0.1")

        valid = await session_manager.validate_session(session.id, session.anti_fixation_token, "B")

        assert valid is False
        events = await event_sink.list_events(event_type=SecurityEventType.SESSION_FIXATION_ATTEMPT)
        assert len(events) == 1
        assert events[0].details["expected_device"] == "A"
        assert events[0].details["actual_device"] == "B"

    @pytest.mark.asyncio
    async def test_wrong_anti_fixation_token(self, session_manager, event_sink):
        session = await session_manager.create_session("u1", "A", "10.0.0.1")

        assert await session_manager.validate_session(session.id, "wrong", "A") is False

        events = await event_sink.list_events(
            event_type=SecurityEventType.INVALID_ANTI_FIXATION_TOKEN
        )
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_non_ascii_anti_fixation_token_rejected(self, session_manager, event_sink):
        """Tokens outside ASCII are compared as bytes and simply fail."""
        session = await session_manager.create_session("u1", "A", "10.0.0.1")

        assert await session_manager.validate_session(session.id, "tökén", "A") is False

        events = await event_sink.list_events(
            event_type=SecurityEventType.INVALID_ANTI_FIXATION_TOKEN
        )
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_token_checked_before_device(self, session_manager, event_sink):
        """A bad token and a bad device report only the token failure."""
        session = await session_manager.create_session("u1", "A", "10.0.0.1")

        await session_manager.validate_session(session.id, "wrong", "B")

        assert await event_sink.list_events(
            event_type=SecurityEventType.SESSION_FIXATION_ATTEMPT
        ) == []

    @pytest.mark.asyncio
    async def test_idle_session_expires(self, session_manager, store, clock, event_sink):
        session = await session_manager.create_session("u1", "A", "10.0.0.1")
        clock.advance(minutes=61)

        assert await session_manager.validate_session(session.id, session.anti_fixation_token, "A") is False

        assert await store.get_session(session.id) is None
        assert len(await event_sink.list_events(event_type=SecurityEventType.SESSION_EXPIRED)) == 1

    @pytest.mark.asyncio
    async def test_unknown_session(self, session_manager):
        assert await session_manager.validate_session("missing", "x", "A") is False

    @pytest.mark.asyncio
    async def test_store_failure_fails_closed(self, failing_store, clock):
        manager = SessionManager(failing_store, SecurityEventSink(failing_store, clock), clock)
        session = await manager.create_session("u1", "A", "10.0.0.1")
        failing_store.fail("get_session")

        assert await manager.validate_session(session.id, session.anti_fixation_token, "A") is False


class TestSessionLifecycle:
    """Tests for IP changes, termination and cleanup."""

    @pytest.mark.asyncio
    async def test_ip_hopping_flags_session(self, session_manager, event_sink):
        """More than three IP changes flags the session without ending it."""
        session = await session_manager.create_session("u1", "A", "10.0.0.1")

        for i in range(2, 5):
            updated = await session_manager.update_session_ip(session.id, f"10.0.0.{i}")
        assert updated.flagged is False
        assert await event_sink.list_events(
            event_type=SecurityEventType.SESSION_HOPPING_DETECTED
        ) == []

        updated = await session_manager.update_session_ip(session.id, "10.0.0.9")

        assert updated.ip_change_count == 4
        assert updated.flagged is True
        assert updated.ip_address == "10.0.0.9"
        assert await session_manager.get_session(session.id) is not None
        events = await event_sink.list_events(event_type=SecurityEventType.SESSION_HOPPING_DETECTED)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_hopping_reported_only_on_a_change(self, session_manager, event_sink):
        """Repeating the current IP on a flagged session does not report again."""
        session = await session_manager.create_session("u1", "A", "10.0.0.1")
        for i in range(2, 6):
            await session_manager.update_session_ip(session.id, f"10.0.0.{i}")

        updated = await session_manager.update_session_ip(session.id, "10.0.0.5")

        assert updated.flagged is True
        assert updated.ip_change_count == 4
        events = await event_sink.list_events(event_type=SecurityEventType.SESSION_HOPPING_DETECTED)
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_same_ip_is_not_a_change(self, session_manager):
        session = await session_manager.create_session("u1", "A", "10.0.0.1")

        updated = await session_manager.update_session_ip(session.id, "10.0.0.1")

        assert updated.ip_change_count == 0

    @pytest.mark.asyncio
    async def test_update_missing_session(self, session_manager):
        with pytest.raises(SessionNotFoundError):
            await session_manager.update_session_ip("missing", "10.0.0.1")
        with pytest.raises(SessionNotFoundError):
            await session_manager.extend_session("missing")

    @pytest.mark.asyncio
    async def test_extend_session(self, session_manager, clock):
        session = await session_manager.create_session("u1", "A", "10.0.0.1")
        clock.advance(minutes=50)

        extended = await session_manager.extend_session(session.id)
        assert extended.last_activity == clock.now()

        clock.advance(minutes=50)
        assert await session_manager.validate_session(session.id, session.anti_fixation_token, "A")

    @pytest.mark.asyncio
    async def test_terminate_session(self, session_manager, event_sink):
        session = await session_manager.create_session("u1", "A", "10.0.0.1")

        assert await session_manager.terminate_session(session.id) is True
        assert await session_manager.terminate_session(session.id) is False

        events = await event_sink.list_events(event_type=SecurityEventType.SESSION_TERMINATED)
        assert len(events) == 1
        assert events[0].details["reason"] == "user_logout"

    @pytest.mark.asyncio
    async def test_terminate_user_sessions(self, session_manager, clock):
        await create_spaced(session_manager, clock, "u1", 3)

        assert await session_manager.terminate_user_sessions("u1", reason="admin") == 3
        assert await session_manager.get_active_sessions("u1") == []

    @pytest.mark.asyncio
    async def test_cleanup_expired_sessions(self, session_manager, clock, event_sink):
        """Cleanup removes idle sessions without emitting security events."""
        old = await session_manager.create_session("u1", "A", "10.0.0.1")
        clock.advance(minutes=45)
        fresh = await session_manager.create_session("u2", "B", "10.0.0.2")
        clock.advance(minutes=30)

        removed = await session_manager.cleanup_expired_sessions()

        assert removed == 1
        assert await session_manager.get_session(old.id) is None
        assert await session_manager.get_session(fresh.id) is not None
        assert await event_sink.list_events(event_type=SecurityEventType.SESSION_EXPIRED) == []
