"""In-memory SecurityStore for tests and single-process development."""

import asyncio
import copy
from dataclasses import replace
from datetime import datetime

from sessionguard.core.clock import ensure_utc
from sessionguard.domain.entities import (
    AuditLogEntry,
    BlacklistEntry,
    RateLimitEntry,
    SecurityEvent,
    Session,
    UserRole,
)
from sessionguard.repositories.base import RateLimitMutator, SessionMutator


class InMemorySecurityStore:
    """Dict-backed store.

    A single asyncio.Lock serializes all access. Entities are copied on the
    way in and out so callers can never mutate stored state behind the
    store's back.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._events: list[SecurityEvent] = []
        self._next_event_id = 1
        self._blacklist: dict[str, BlacklistEntry] = {}
        self._sessions: dict[str, Session] = {}
        self._audit: dict[str, AuditLogEntry] = {}
        self._rate_limits: dict[str, RateLimitEntry] = {}
        self._roles: dict[str, UserRole] = {}

    async def ping(self) -> bool:
        return True

    # Security events

    async def add_event(self, event: SecurityEvent) -> SecurityEvent:
        async with self._lock:
            stored = replace(event, id=self._next_event_id, details=copy.deepcopy(event.details))
            self._next_event_id += 1
            self._events.append(stored)
            return stored

    async def list_events(
        self,
        event_type: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SecurityEvent]:
        async with self._lock:
            events = [
                e
                for e in reversed(self._events)
                if (event_type is None or e.type == event_type)
                and (since is None or e.timestamp >= since)
            ]
            return events[:limit]

    async def delete_events_before(self, cutoff: datetime) -> int:
        async with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.timestamp >= cutoff]
            return before - len(self._events)

    # Token blacklist

    async def add_blacklist_entry(self, entry: BlacklistEntry) -> None:
        async with self._lock:
            self._blacklist[entry.token] = copy.copy(entry)

    async def get_blacklist_entry(self, token_digest: str) -> BlacklistEntry | None:
        async with self._lock:
            entry = self._blacklist.get(token_digest)
            return copy.copy(entry) if entry else None

    async def delete_expired_blacklist_entries(self, now: datetime) -> list[str]:
        async with self._lock:
            expired = [k for k, e in self._blacklist.items() if e.expires_at <= now]
            for key in expired:
                del self._blacklist[key]
            return expired

    # Sessions

    async def add_session(self, session: Session) -> None:
        async with self._lock:
            self._sessions[session.id] = copy.copy(session)

    async def get_session(self, session_id: str) -> Session | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return copy.copy(session) if session else None

    async def update_session(self, session_id: str, mutate: SessionMutator) -> Session | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            working = copy.copy(session)
            mutate(working)
            self._sessions[session_id] = working
            return copy.copy(working)

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def list_user_sessions(self, user_id: str) -> list[Session]:
        async with self._lock:
            sessions = [copy.copy(s) for s in self._sessions.values() if s.user_id == user_id]
            return sorted(sessions, key=lambda s: s.created_at)

    async def delete_user_sessions(self, user_id: str) -> int:
        async with self._lock:
            ids = [sid for sid, s in self._sessions.items() if s.user_id == user_id]
            for sid in ids:
                del self._sessions[sid]
            return len(ids)

    async def delete_sessions_idle_before(self, cutoff: datetime) -> int:
        async with self._lock:
            ids = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
            for sid in ids:
                del self._sessions[sid]
            return len(ids)

    # Audit log

    async def add_audit_entry(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._audit[entry.id] = copy.deepcopy(entry)

    async def get_audit_entry(self, log_id: str) -> AuditLogEntry | None:
        async with self._lock:
            entry = self._audit.get(log_id)
            return copy.deepcopy(entry) if entry else None

    async def list_audit_entries(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[AuditLogEntry]:
        start = ensure_utc(start) if start is not None else None
        end = ensure_utc(end) if end is not None else None
        async with self._lock:
            entries = [
                copy.deepcopy(e)
                for e in self._audit.values()
                if (user_id is None or e.user_id == user_id)
                and (start is None or e.timestamp >= start)
                and (end is None or e.timestamp <= end)
            ]
        entries.sort(key=lambda e: e.timestamp, reverse=newest_first)
        return entries[:limit] if limit is not None else entries

    async def delete_audit_entries_before(self, cutoff: datetime) -> int:
        async with self._lock:
            ids = [lid for lid, e in self._audit.items() if e.timestamp < cutoff]
            for lid in ids:
                del self._audit[lid]
            return len(ids)

    async def replace_audit_entry(self, entry: AuditLogEntry) -> None:
        """Overwrite a stored entry in place (simulates an out-of-band edit)."""
        async with self._lock:
            self._audit[entry.id] = copy.deepcopy(entry)

    # Rate limiting

    async def get_rate_limit_entry(self, key: str) -> RateLimitEntry | None:
        async with self._lock:
            entry = self._rate_limits.get(key)
            return copy.copy(entry) if entry else None

    async def put_rate_limit_entry(self, entry: RateLimitEntry) -> None:
        async with self._lock:
            self._rate_limits[entry.key] = copy.copy(entry)

    async def update_rate_limit_entry(self, key: str, mutate: RateLimitMutator) -> RateLimitEntry:
        async with self._lock:
            current = self._rate_limits.get(key)
            updated = mutate(copy.copy(current) if current else None)
            self._rate_limits[key] = copy.copy(updated)
            return updated

    async def delete_rate_limit_entries(self, key_prefix: str | None = None) -> int:
        async with self._lock:
            if key_prefix is None:
                removed = len(self._rate_limits)
                self._rate_limits.clear()
                return removed
            keys = [
                k for k in self._rate_limits if k == key_prefix or k.startswith(key_prefix + ":")
            ]
            for key in keys:
                del self._rate_limits[key]
            return len(keys)

    async def delete_rate_limit_entries_before(self, cutoff: datetime) -> int:
        async with self._lock:
            keys = [k for k, e in self._rate_limits.items() if e.window_start < cutoff]
            for key in keys:
                del self._rate_limits[key]
            return len(keys)

    # Roles

    async def get_user_role(self, user_id: str) -> UserRole | None:
        async with self._lock:
            return self._roles.get(user_id)

    async def set_user_role(self, role: UserRole) -> None:
        async with self._lock:
            self._roles[role.user_id] = role
