"""Persistence contract for the security engine.

The store is the system of record for every security entity. In-process
caches held by the services are accelerators that can be rebuilt from it.

Read-modify-write sequences go through ``update_rate_limit_entry`` and
``update_session`` so that implementations can make them atomic (a lock in
memory, ``SELECT ... FOR UPDATE`` in one transaction for SQL).

Implementations raise ``StoreUnavailableError`` for infrastructure failures;
services decide whether that fails open or closed.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Protocol

from sessionguard.domain.entities import (
    AuditLogEntry,
    BlacklistEntry,
    RateLimitEntry,
    SecurityEvent,
    Session,
    UserRole,
)

RateLimitMutator = Callable[[RateLimitEntry | None], RateLimitEntry]
SessionMutator = Callable[[Session], None]


class SecurityStore(Protocol):
    """Storage port used by every component."""

    async def ping(self) -> bool:
        """True if the store can serve requests."""
        ...

    # Security events
    async def add_event(self, event: SecurityEvent) -> SecurityEvent:
        """Append an event; returns it with its assigned id."""
        ...

    async def list_events(
        self,
        event_type: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SecurityEvent]:
        """Newest first."""
        ...

    async def delete_events_before(self, cutoff: datetime) -> int: ...

    # Token blacklist
    async def add_blacklist_entry(self, entry: BlacklistEntry) -> None: ...

    async def get_blacklist_entry(self, token_digest: str) -> BlacklistEntry | None: ...

    async def delete_expired_blacklist_entries(self, now: datetime) -> list[str]:
        """Remove entries with ``expires_at <= now``; returns the removed digests."""
        ...

    # Sessions
    async def add_session(self, session: Session) -> None: ...

    async def get_session(self, session_id: str) -> Session | None: ...

    async def update_session(self, session_id: str, mutate: SessionMutator) -> Session | None:
        """Atomically apply ``mutate`` to the stored session; None if it does not exist."""
        ...

    async def delete_session(self, session_id: str) -> bool: ...

    async def list_user_sessions(self, user_id: str) -> list[Session]:
        """Oldest first."""
        ...

    async def delete_user_sessions(self, user_id: str) -> int: ...

    async def delete_sessions_idle_before(self, cutoff: datetime) -> int: ...

    # Audit log
    async def add_audit_entry(self, entry: AuditLogEntry) -> None: ...

    async def get_audit_entry(self, log_id: str) -> AuditLogEntry | None: ...

    async def list_audit_entries(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[AuditLogEntry]: ...

    async def delete_audit_entries_before(self, cutoff: datetime) -> int: ...

    # Rate limiting
    async def get_rate_limit_entry(self, key: str) -> RateLimitEntry | None: ...

    async def put_rate_limit_entry(self, entry: RateLimitEntry) -> None: ...

    async def update_rate_limit_entry(self, key: str, mutate: RateLimitMutator) -> RateLimitEntry:
        """Atomically replace the entry for ``key`` with ``mutate(current)``."""
        ...

    async def delete_rate_limit_entries(self, key_prefix: str | None = None) -> int:
        """Remove the entry at ``key_prefix`` and every key below it (``prefix:...``), or all."""
        ...

    async def delete_rate_limit_entries_before(self, cutoff: datetime) -> int:
        """Remove entries whose window started before ``cutoff``."""
        ...

    # Roles
    async def get_user_role(self, user_id: str) -> UserRole | None: ...

    async def set_user_role(self, role: UserRole) -> None: ...
