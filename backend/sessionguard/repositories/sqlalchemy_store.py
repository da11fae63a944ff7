"""SQLAlchemy-backed SecurityStore (PostgreSQL in production, SQLite in tests)."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sessionguard.core.database import check_db_connection
from sessionguard.core.exceptions import StoreUnavailableError
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import (
    AuditLogEntry,
    BlacklistEntry,
    RateLimitEntry,
    RuleClass,
    SecurityEvent,
    Session,
    Severity,
    UserRole,
)
from sessionguard.models import (
    AuditLogRecord,
    BlacklistedToken,
    RateLimitRecord,
    SecurityEventRecord,
    UserRoleRecord,
    UserSession,
)
from sessionguard.repositories.base import RateLimitMutator, SessionMutator

logger = get_logger("store")

# Two concurrent first-writers for the same key: one loses the insert and retries
_INSERT_RACE_RETRIES = 2


def _to_event(row: SecurityEventRecord) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        type=row.type,
        severity=Severity(row.severity),
        details=dict(row.details or {}),
        timestamp=row.timestamp,
        user_id=row.user_id,
        ip=row.ip,
    )


def _to_blacklist(row: BlacklistedToken) -> BlacklistEntry:
    return BlacklistEntry(
        token=row.token,
        reason=row.reason,
        blacklisted_at=row.blacklisted_at,
        expires_at=row.expires_at,
        user_id=row.user_id,
    )


def _to_session(row: UserSession) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        device_id=row.device_id,
        ip_address=row.ip_address,
        anti_fixation_token=row.anti_fixation_token,
        last_activity=row.last_activity,
        created_at=row.created_at,
        ip_change_count=row.ip_change_count,
        flagged=row.flagged,
    )


def _apply_session(row: UserSession, session: Session) -> None:
    # id, user_id, anti_fixation_token and created_at are immutable
    row.device_id = session.device_id
    row.ip_address = session.ip_address
    row.last_activity = session.last_activity
    row.ip_change_count = session.ip_change_count
    row.flagged = session.flagged


def _to_audit(row: AuditLogRecord) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        ip_address=row.ip_address,
        data=dict(row.data or {}),
        metadata=dict(row.meta or {}),
        timestamp=row.timestamp,
        hash=row.hash,
    )


def _to_rate_limit(row: RateLimitRecord) -> RateLimitEntry:
    return RateLimitEntry(
        key=row.key,
        count=row.count,
        window_start=row.window_start,
        window_ms=row.window_ms,
        max_requests=row.max_requests,
        rule_class=RuleClass(row.rule_class),
        signature=row.signature,
    )


def _apply_rate_limit(row: RateLimitRecord, entry: RateLimitEntry) -> None:
    row.count = entry.count
    row.window_start = entry.window_start
    row.window_ms = entry.window_ms
    row.max_requests = entry.max_requests
    row.rule_class = entry.rule_class.value
    row.signature = entry.signature


class SqlAlchemySecurityStore:
    """SecurityStore over an async SQLAlchemy session factory.

    Every call runs in its own short transaction. Driver and connection
    failures are raised as StoreUnavailableError.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker

    @asynccontextmanager
    async def _transaction(
        self, operation: str, reraise_conflicts: bool = False
    ) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as db:
                async with db.begin():
                    yield db
        except IntegrityError:
            if reraise_conflicts:
                raise
            logger.warning(f"Store operation {operation} hit a constraint violation")
            raise StoreUnavailableError(operation) from None
        except (SQLAlchemyError, OSError, ConnectionError) as e:
            logger.warning(f"Store operation {operation} failed: {e}")
            raise StoreUnavailableError(operation, e) from e

    async def ping(self) -> bool:
        return await check_db_connection(self._session_maker)

    # Security events

    async def add_event(self, event: SecurityEvent) -> SecurityEvent:
        async with self._transaction("add_event") as db:
            row = SecurityEventRecord(
                type=event.type,
                severity=event.severity.value,
                details=event.details,
                timestamp=event.timestamp,
                user_id=event.user_id,
                ip=event.ip,
            )
            db.add(row)
            await db.flush()
            return _to_event(row)

    async def list_events(
        self,
        event_type: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[SecurityEvent]:
        query = select(SecurityEventRecord)
        if event_type is not None:
            query = query.where(SecurityEventRecord.type == event_type)
        if since is not None:
            query = query.where(SecurityEventRecord.timestamp >= since)
        query = query.order_by(
            SecurityEventRecord.timestamp.desc(), SecurityEventRecord.id.desc()
        ).limit(limit)
        async with self._transaction("list_events") as db:
            result = await db.execute(query)
            return [_to_event(row) for row in result.scalars()]

    async def delete_events_before(self, cutoff: datetime) -> int:
        async with self._transaction("delete_events_before") as db:
            result = await db.execute(
                delete(SecurityEventRecord).where(SecurityEventRecord.timestamp < cutoff)
            )
            return result.rowcount or 0

    # Token blacklist

    async def add_blacklist_entry(self, entry: BlacklistEntry) -> None:
        async with self._transaction("add_blacklist_entry") as db:
            await db.merge(
                BlacklistedToken(
                    token=entry.token,
                    reason=entry.reason,
                    blacklisted_at=entry.blacklisted_at,
                    expires_at=entry.expires_at,
                    user_id=entry.user_id,
                )
            )

    async def get_blacklist_entry(self, token_digest: str) -> BlacklistEntry | None:
        async with self._transaction("get_blacklist_entry") as db:
            row = await db.get(BlacklistedToken, token_digest)
            return _to_blacklist(row) if row else None

    async def delete_expired_blacklist_entries(self, now: datetime) -> list[str]:
        async with self._transaction("delete_expired_blacklist_entries") as db:
            result = await db.execute(
                select(BlacklistedToken.token).where(BlacklistedToken.expires_at <= now)
            )
            digests = list(result.scalars())
            if digests:
                await db.execute(delete(BlacklistedToken).where(BlacklistedToken.token.in_(digests)))
            return digests

    # Sessions

    async def add_session(self, session: Session) -> None:
        async with self._transaction("add_session") as db:
            db.add(
                UserSession(
                    id=session.id,
                    user_id=session.user_id,
                    device_id=session.device_id,
                    ip_address=session.ip_address,
                    anti_fixation_token=session.anti_fixation_token,
                    last_activity=session.last_activity,
                    created_at=session.created_at,
                    ip_change_count=session.ip_change_count,
                    flagged=session.flagged,
                )
            )

    async def get_session(self, session_id: str) -> Session | None:
        async with self._transaction("get_session") as db:
            row = await db.get(UserSession, session_id)
            return _to_session(row) if row else None

    async def update_session(self, session_id: str, mutate: SessionMutator) -> Session | None:
        async with self._transaction("update_session") as db:
            result = await db.execute(
                select(UserSession).where(UserSession.id == session_id).with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            session = _to_session(row)
            mutate(session)
            _apply_session(row, session)
            return session

    async def delete_session(self, session_id: str) -> bool:
        async with self._transaction("delete_session") as db:
            result = await db.execute(delete(UserSession).where(UserSession.id == session_id))
            return (result.rowcount or 0) > 0

    async def list_user_sessions(self, user_id: str) -> list[Session]:
        async with self._transaction("list_user_sessions") as db:
            result = await db.execute(
                select(UserSession)
                .where(UserSession.user_id == user_id)
                .order_by(UserSession.created_at)
            )
            return [_to_session(row) for row in result.scalars()]

    async def delete_user_sessions(self, user_id: str) -> int:
        async with self._transaction("delete_user_sessions") as db:
            result = await db.execute(delete(UserSession).where(UserSession.user_id == user_id))
            return result.rowcount or 0

    async def delete_sessions_idle_before(self, cutoff: datetime) -> int:
        async with self._transaction("delete_sessions_idle_before") as db:
            result = await db.execute(delete(UserSession).where(UserSession.last_activity < cutoff))
            return result.rowcount or 0

    # Audit log

    async def add_audit_entry(self, entry: AuditLogEntry) -> None:
        async with self._transaction("add_audit_entry") as db:
            db.add(
                AuditLogRecord(
                    id=entry.id,
                    user_id=entry.user_id,
                    action=entry.action,
                    ip_address=entry.ip_address,
                    data=entry.data,
                    meta=entry.metadata,
                    timestamp=entry.timestamp,
                    hash=entry.hash,
                )
            )

    async def get_audit_entry(self, log_id: str) -> AuditLogEntry | None:
        async with self._transaction("get_audit_entry") as db:
            row = await db.get(AuditLogRecord, log_id)
            return _to_audit(row) if row else None

    async def list_audit_entries(
        self,
        user_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
        newest_first: bool = True,
    ) -> list[AuditLogEntry]:
        query = select(AuditLogRecord)
        if user_id is not None:
            query = query.where(AuditLogRecord.user_id == user_id)
        if start is not None:
            query = query.where(AuditLogRecord.timestamp >= start)
        if end is not None:
            query = query.where(AuditLogRecord.timestamp <= end)
        order = AuditLogRecord.timestamp.desc() if newest_first else AuditLogRecord.timestamp.asc()
        query = query.order_by(order)
        if limit is not None:
            query = query.limit(limit)
        async with self._transaction("list_audit_entries") as db:
            result = await db.execute(query)
            return [_to_audit(row) for row in result.scalars()]

    async def delete_audit_entries_before(self, cutoff: datetime) -> int:
        async with self._transaction("delete_audit_entries_before") as db:
            result = await db.execute(
                delete(AuditLogRecord).where(AuditLogRecord.timestamp < cutoff)
            )
            return result.rowcount or 0

    # Rate limiting

    async def get_rate_limit_entry(self, key: str) -> RateLimitEntry | None:
        async with self._transaction("get_rate_limit_entry") as db:
            row = await db.get(RateLimitRecord, key)
            return _to_rate_limit(row) if row else None

    async def put_rate_limit_entry(self, entry: RateLimitEntry) -> None:
        async with self._transaction("put_rate_limit_entry") as db:
            row = await db.get(RateLimitRecord, entry.key)
            if row is None:
                row = RateLimitRecord(key=entry.key)
                db.add(row)
            _apply_rate_limit(row, entry)

    async def update_rate_limit_entry(self, key: str, mutate: RateLimitMutator) -> RateLimitEntry:
        for attempt in range(_INSERT_RACE_RETRIES):
            try:
                async with self._transaction("update_rate_limit_entry", reraise_conflicts=True) as db:
                    result = await db.execute(
                        select(RateLimitRecord).where(RateLimitRecord.key == key).with_for_update()
                    )
                    row = result.scalar_one_or_none()
                    updated = mutate(_to_rate_limit(row) if row else None)
                    if row is None:
                        row = RateLimitRecord(key=key)
                        db.add(row)
                    _apply_rate_limit(row, updated)
                return updated
            except IntegrityError as e:
                if attempt == _INSERT_RACE_RETRIES - 1:
                    raise StoreUnavailableError("update_rate_limit_entry", e) from e
                logger.debug(f"Concurrent insert for rate limit key, retrying: {key}")
        raise StoreUnavailableError("update_rate_limit_entry")

    async def delete_rate_limit_entries(self, key_prefix: str | None = None) -> int:
        statement = delete(RateLimitRecord)
        if key_prefix is not None:
            statement = statement.where(
                or_(
                    RateLimitRecord.key == key_prefix,
                    RateLimitRecord.key.startswith(key_prefix + ":", autoescape=True),
                )
            )
        async with self._transaction("delete_rate_limit_entries") as db:
            result = await db.execute(statement)
            return result.rowcount or 0

    async def delete_rate_limit_entries_before(self, cutoff: datetime) -> int:
        async with self._transaction("delete_rate_limit_entries_before") as db:
            result = await db.execute(
                delete(RateLimitRecord).where(RateLimitRecord.window_start < cutoff)
            )
            return result.rowcount or 0

    # Roles

    async def get_user_role(self, user_id: str) -> UserRole | None:
        async with self._transaction("get_user_role") as db:
            row = await db.get(UserRoleRecord, user_id)
            if row is None:
                return None
            return UserRole(user_id=row.user_id, role=row.role, parent_role=row.parent_role)

    async def set_user_role(self, role: UserRole) -> None:
        async with self._transaction("set_user_role") as db:
            await db.merge(
                UserRoleRecord(user_id=role.user_id, role=role.role, parent_role=role.parent_role)
            )
