"""Device-bound sessions with anti-fixation tokens and concurrency limits."""

import asyncio
import hmac
import secrets
import uuid
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sessionguard.core import metrics
from sessionguard.core.clock import Clock
from sessionguard.core.exceptions import (
    FailurePolicy,
    MaxSessionsExceededError,
    SessionNotFoundError,
    StoreUnavailableError,
    TooManySessionAttemptsError,
)
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import SecurityEventType, Session, Severity
from sessionguard.repositories.base import SecurityStore
from sessionguard.services.event_sink import SecurityEventSink

logger = get_logger("session_manager")


class SessionCapPolicy(str, Enum):
    REJECT = "reject"
    EVICT_OLDEST = "evict_oldest"


@dataclass
class SessionManagerConfig:
    session_timeout: timedelta = timedelta(hours=1)
    max_sessions_per_user: int = 5
    cap_policy: SessionCapPolicy = SessionCapPolicy.REJECT
    rapid_creation_threshold: int = 5
    rapid_creation_window: timedelta = timedelta(minutes=1)
    ip_change_threshold: int = 3


class SessionManager:
    """Creates, validates and expires user sessions.

    Session mutations go through ``SecurityStore.update_session`` and
    creation is serialized per user, so cap checks and counters are never
    raced by concurrent requests for the same user.
    """

    def __init__(
        self,
        store: SecurityStore,
        event_sink: SecurityEventSink,
        clock: Clock,
        config: SessionManagerConfig | None = None,
        failure_policy: FailurePolicy = FailurePolicy.CLOSED,
    ):
        self._store = store
        self._events = event_sink
        self._clock = clock
        self._config = config or SessionManagerConfig()
        self._failure_policy = failure_policy
        self._creations: dict[str, deque[datetime]] = defaultdict(deque)
        self._user_locks: dict[str, asyncio.Lock] = {}

    @property
    def session_timeout(self) -> timedelta:
        return self._config.session_timeout

    async def create_session(self, user_id: str, device_id: str, ip_address: str) -> Session:
        """Create a session bound to ``device_id``.

        Raises:
            TooManySessionAttemptsError: too many sessions created in the last minute
            MaxSessionsExceededError: user is at the session cap (reject policy)
            StoreUnavailableError: the session could not be persisted
        """
        lock = self._user_locks.setdefault(user_id, asyncio.Lock())
        async with lock:
            now = self._clock.now()

            creations = self._creations[user_id]
            horizon = now - self._config.rapid_creation_window
            while creations and creations[0] < horizon:
                creations.popleft()
            if len(creations) >= self._config.rapid_creation_threshold:
                await self._events.record(
                    SecurityEventType.RAPID_SESSION_CREATION,
                    Severity.HIGH,
                    {"count": len(creations), "device_id": device_id},
                    user_id=user_id,
                    ip=ip_address,
                )
                raise TooManySessionAttemptsError("Too many session creation attempts")
            creations.append(now)

            active = await self.get_active_sessions(user_id)
            if len(active) >= self._config.max_sessions_per_user:
                await self._enforce_cap(user_id, ip_address, active)
                active = await self.get_active_sessions(user_id)

            existing_ips = {s.ip_address for s in active}
            if len(existing_ips) >= 2:
                await self._events.record(
                    SecurityEventType.CONCURRENT_SESSIONS_DETECTED,
                    Severity.MEDIUM,
                    {"ip_count": len(existing_ips | {ip_address})},
                    user_id=user_id,
                    ip=ip_address,
                )

            session = Session(
                id=str(uuid.uuid4()),
                user_id=user_id,
                device_id=device_id,
                ip_address=ip_address,
                anti_fixation_token=secrets.token_hex(32),
                last_activity=now,
                created_at=now,
            )
            await self._store.add_session(session)

        await self._events.record(
            SecurityEventType.SESSION_CREATED,
            Severity.LOW,
            {"session_id": session.id, "device_id": device_id},
            user_id=user_id,
            ip=ip_address,
        )
        return session

    async def _enforce_cap(self, user_id: str, ip_address: str, active: list[Session]) -> None:
        details = {
            "session_count": len(active),
            "max_sessions": self._config.max_sessions_per_user,
            "policy": self._config.cap_policy.value,
        }
        if self._config.cap_policy == SessionCapPolicy.REJECT:
            await self._events.record(
                SecurityEventType.MAX_SESSIONS_EXCEEDED,
                Severity.MEDIUM,
                details,
                user_id=user_id,
                ip=ip_address,
            )
            raise MaxSessionsExceededError("Maximum sessions limit reached")

        # active is oldest first
        overflow = len(active) - self._config.max_sessions_per_user + 1
        evicted = [s.id for s in active[:overflow]]
        for session_id in evicted:
            await self._store.delete_session(session_id)
        await self._events.record(
            SecurityEventType.MAX_SESSIONS_EXCEEDED,
            Severity.MEDIUM,
            {**details, "evicted_session_ids": evicted},
            user_id=user_id,
            ip=ip_address,
        )

    async def validate_session(self, session_id: str, anti_fixation_token: str, device_id: str) -> bool:
        """Check a session's anti-fixation token, device binding and idle timeout.

        Order: token, device, timeout. On success ``last_activity`` is bumped.
        """
        try:
            session = await self._store.get_session(session_id)
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("session_manager", "validate_session", e)
            return self._failure_policy == FailurePolicy.OPEN
        if session is None:
            return False

        if not hmac.compare_digest(
            session.anti_fixation_token.encode("utf-8"), anti_fixation_token.encode("utf-8")
        ):
            await self._events.record(
                SecurityEventType.INVALID_ANTI_FIXATION_TOKEN,
                Severity.HIGH,
                {"session_id": session_id},
                user_id=session.user_id,
            )
            return False

        if session.device_id != device_id:
            await self._events.record(
                SecurityEventType.SESSION_FIXATION_ATTEMPT,
                Severity.HIGH,
                {
                    "session_id": session_id,
                    "expected_device": session.device_id,
                    "actual_device": device_id,
                },
                user_id=session.user_id,
            )
            return False

        now = self._clock.now()
        if session.is_idle_expired(now, self._config.session_timeout):
            await self._events.record(
                SecurityEventType.SESSION_EXPIRED,
                Severity.LOW,
                {"session_id": session_id},
                user_id=session.user_id,
            )
            try:
                await self._store.delete_session(session_id)
            except StoreUnavailableError as e:
                await self._events.report_infrastructure_error("session_manager", "expire_session", e)
            return False

        def _touch(s: Session) -> None:
            s.last_activity = now

        try:
            updated = await self._store.update_session(session_id, _touch)
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("session_manager", "validate_session", e)
            return self._failure_policy == FailurePolicy.OPEN
        return updated is not None

    async def extend_session(self, session_id: str) -> Session:
        """Reset the idle timer of a session.

        Raises:
            SessionNotFoundError: session does not exist
        """
        now = self._clock.now()

        def _touch(s: Session) -> None:
            s.last_activity = now

        session = await self._store.update_session(session_id, _touch)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def update_session_ip(self, session_id: str, ip_address: str) -> Session:
        """Move a session to a new IP, counting the change.

        More than ``ip_change_threshold`` changes over the session's lifetime
        flags the session as hopping. The session is not terminated; what to
        do with a flagged session is the caller's decision.

        Raises:
            SessionNotFoundError: session does not exist
        """

        changed = False

        def _move(s: Session) -> None:
            nonlocal changed
            changed = s.ip_address != ip_address
            if changed:
                s.ip_change_count += 1
                s.ip_address = ip_address
                if s.ip_change_count > self._config.ip_change_threshold:
                    s.flagged = True

        session = await self._store.update_session(session_id, _move)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        if changed and session.ip_change_count > self._config.ip_change_threshold:
            await self._events.record(
                SecurityEventType.SESSION_HOPPING_DETECTED,
                Severity.HIGH,
                {"session_id": session_id, "ip_change_count": session.ip_change_count},
                user_id=session.user_id,
                ip=ip_address,
            )
        return session

    async def terminate_session(self, session_id: str, reason: str = "user_logout") -> bool:
        """Delete a session. Returns False if it did not exist."""
        session = await self._store.get_session(session_id)
        if session is None:
            return False
        removed = await self._store.delete_session(session_id)
        if removed:
            await self._events.record(
                SecurityEventType.SESSION_TERMINATED,
                Severity.LOW,
                {"session_id": session_id, "reason": reason},
                user_id=session.user_id,
            )
        return removed

    async def terminate_user_sessions(self, user_id: str, reason: str = "user_logout") -> int:
        """Delete every session of a user."""
        removed = await self._store.delete_user_sessions(user_id)
        if removed:
            await self._events.record(
                SecurityEventType.SESSION_TERMINATED,
                Severity.LOW,
                {"reason": reason, "sessions": removed},
                user_id=user_id,
            )
        return removed

    async def get_session(self, session_id: str) -> Session | None:
        return await self._store.get_session(session_id)

    async def get_active_sessions(self, user_id: str) -> list[Session]:
        """Sessions of a user that are within the idle timeout, oldest first."""
        now = self._clock.now()
        sessions = await self._store.list_user_sessions(user_id)
        return [s for s in sessions if not s.is_idle_expired(now, self._config.session_timeout)]

    async def cleanup_expired_sessions(self) -> int:
        """Remove sessions idle past the timeout.

        Routine maintenance: logged and counted, never a security event.

        Returns:
            Number of sessions removed
        """
        now = self._clock.now()
        cutoff = now - self._config.session_timeout
        removed = await self._store.delete_sessions_idle_before(cutoff)

        horizon = now - self._config.rapid_creation_window
        for user_id in list(self._creations):
            creations = self._creations[user_id]
            while creations and creations[0] < horizon:
                creations.popleft()
            if not creations:
                del self._creations[user_id]
                lock = self._user_locks.get(user_id)
                if lock is not None and not lock.locked():
                    del self._user_locks[user_id]

        if removed > 0:
            logger.info(f"Session cleanup: removed {removed} sessions idle since {cutoff.isoformat()}")
        metrics.record_maintenance("session_cleanup", removed)
        return removed
