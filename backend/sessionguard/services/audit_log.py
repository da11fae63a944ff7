"""Audit log with redaction, integrity hashes, retention and export."""

import hashlib
import hmac
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sessionguard.core import metrics
from sessionguard.core.clock import Clock, ensure_utc, isoformat_utc, truncate_to_ms
from sessionguard.core.exceptions import (
    AuditLogReadError,
    AuditLogWriteError,
    IntegrityCheckError,
    StoreUnavailableError,
)
from sessionguard.core.logging import get_logger
from sessionguard.domain.entities import AuditLogEntry, SecurityEventType, Severity
from sessionguard.repositories.base import SecurityStore
from sessionguard.services.event_sink import SecurityEventSink
from sessionguard.services.redaction import redact
from sessionguard.services.threat_monitor import ThreatMonitor

logger = get_logger("audit_log")

DEFAULT_RETENTION_DAYS = 365
MAX_EXPORT_ENTRIES = 100_000

HIGH_IMPACT_ACTIONS = frozenset(
    {
        "user_deletion",
        "data_export",
        "payment_processing",
        "role_change",
        "security_setting_change",
    }
)

# Dropped from request/response trails entirely
SENSITIVE_HEADERS = frozenset(
    {"authorization", "proxy-authorization", "cookie", "set-cookie", "x-api-key"}
)


def compute_entry_hash(user_id: str, action: str, timestamp: datetime) -> str:
    """SHA-256 over ``user_id:action:timestamp`` with a canonical UTC timestamp."""
    payload = f"{user_id}:{action}:{isoformat_utc(timestamp)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def is_high_impact(action: str) -> bool:
    return action in HIGH_IMPACT_ACTIONS


def sanitize_headers(
    headers: Mapping[str, str] | None,
    exclude_headers: Iterable[str] = (),
) -> dict[str, str]:
    """Copy of ``headers`` without credentials or any explicitly excluded header."""
    excluded = SENSITIVE_HEADERS | {h.lower() for h in exclude_headers}
    return {k: v for k, v in (headers or {}).items() if k.lower() not in excluded}


@dataclass(frozen=True)
class AuditExport:
    """Compliance export: redacted entries plus export metadata."""

    logs: list[AuditLogEntry]
    export_date: datetime
    start: datetime
    end: datetime
    total_logs: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "total_logs", len(self.logs))

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "export_date": isoformat_utc(self.export_date),
            "date_range": {"start": isoformat_utc(self.start), "end": isoformat_utc(self.end)},
            "total_logs": self.total_logs,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"logs": [entry.to_dict() for entry in self.logs], "metadata": self.metadata}


class AuditLog:
    """Append-only record of user and system actions.

    ``data`` and ``metadata`` are redacted before they reach the store and
    again whenever entries are read back, so a row edited behind the
    service's back is never returned unredacted.
    """

    def __init__(
        self,
        store: SecurityStore,
        event_sink: SecurityEventSink,
        clock: Clock,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        threat_monitor: ThreatMonitor | None = None,
    ):
        self._store = store
        self._events = event_sink
        self._clock = clock
        self._threat_monitor = threat_monitor
        self._retention_days = max(1, retention_days)

    async def log_action(
        self,
        user_id: str,
        action: str,
        ip_address: str | None = None,
        data: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Persist an audit entry.

        Raises:
            AuditLogWriteError: the entry could not be persisted
        """
        # Stored precision is milliseconds; the hash must match what is read back
        timestamp = truncate_to_ms(self._clock.now())
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=action,
            ip_address=ip_address,
            data=redact(data or {}),
            metadata=redact(metadata or {}),
            timestamp=timestamp,
            hash=compute_entry_hash(user_id, action, timestamp),
        )

        try:
            await self._store.add_audit_entry(entry)
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("audit_log", "log_action", e)
            raise AuditLogWriteError(f"Failed to persist audit entry for action {action}") from e

        if is_high_impact(action):
            logger.warning(f"High-impact action recorded: {action} by user {user_id}")

        await self._events.record(
            SecurityEventType.AUDIT_LOG_CREATED,
            Severity.LOW,
            {"log_id": entry.id, "action": action},
            user_id=user_id,
            ip=ip_address,
        )
        return entry

    async def log_data_access(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        access_type: str,
        ip_address: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> AuditLogEntry:
        """Record a read/write/delete of a domain entity as ``data_<access_type>``.

        The access also feeds the per-user anomaly detector when one is wired.
        """
        entry = await self.log_action(
            user_id,
            f"data_{access_type}",
            ip_address=ip_address,
            data={"entity_type": entity_type, "entity_id": entity_id, **(details or {})},
            metadata={"access_type": access_type},
        )
        if self._threat_monitor is not None:
            await self._threat_monitor.monitor_data_access(user_id, entity_type, access_type)
        return entry

    async def log_request(
        self,
        method: str,
        url: str,
        user_id: str,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        ip_address: str | None = None,
        exclude_headers: Iterable[str] = (),
        exclude_body: bool = False,
    ) -> str:
        """Record an inbound API request as ``api_request``.

        Returns:
            Correlation id to pass to ``log_response``

        Raises:
            AuditLogWriteError: the entry could not be persisted
        """
        correlation_id = uuid.uuid4().hex
        await self.log_action(
            user_id,
            "api_request",
            ip_address=ip_address,
            data={
                "method": method.upper(),
                "url": url,
                "headers": sanitize_headers(headers, exclude_headers),
                "body": None if exclude_body else body,
            },
            metadata={"correlation_id": correlation_id, "entity_type": "request"},
        )
        return correlation_id

    async def log_response(
        self,
        correlation_id: str,
        status_code: int,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        exclude_headers: Iterable[str] = (),
        exclude_body: bool = False,
    ) -> AuditLogEntry:
        """Record the response to a logged request as ``api_response`` by ``system``.

        Raises:
            AuditLogWriteError: the entry could not be persisted
        """
        return await self.log_action(
            "system",
            "api_response",
            data={
                "status_code": status_code,
                "headers": sanitize_headers(headers, exclude_headers),
                "body": None if exclude_body else body,
            },
            metadata={
                "correlation_id": correlation_id,
                "entity_type": "response",
                "status": "success" if status_code < 400 else "failure",
            },
        )

    def _redacted(self, entry: AuditLogEntry) -> AuditLogEntry:
        return AuditLogEntry(
            id=entry.id,
            user_id=entry.user_id,
            action=entry.action,
            ip_address=entry.ip_address,
            data=redact(entry.data),
            metadata=redact(entry.metadata),
            timestamp=entry.timestamp,
            hash=entry.hash,
        )

    async def get_user_logs(self, user_id: str, limit: int = 100) -> list[AuditLogEntry]:
        """Most recent entries of a user, newest first.

        Raises:
            AuditLogReadError: the store could not be read
        """
        try:
            entries = await self._store.list_audit_entries(user_id=user_id, limit=limit)
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("audit_log", "get_user_logs", e)
            raise AuditLogReadError(f"Failed to read audit logs for user {user_id}") from e
        return [self._redacted(entry) for entry in entries]

    async def get_audit_trail(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> list[AuditLogEntry]:
        """Entries of a user within ``[start, end]``, oldest first."""
        start, end = ensure_utc(start), ensure_utc(end)
        try:
            entries = await self._store.list_audit_entries(
                user_id=user_id,
                start=start,
                end=end,
                limit=MAX_EXPORT_ENTRIES,
                newest_first=False,
            )
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("audit_log", "get_audit_trail", e)
            raise AuditLogReadError(f"Failed to read audit trail for user {user_id}") from e
        return [self._redacted(entry) for entry in entries]

    async def verify_log_integrity(self, log_id: str) -> bool:
        """Recompute an entry's hash and compare it with the stored one.

        Returns False for a missing entry or a hash mismatch; a mismatch
        is also recorded as ``audit_log_integrity_failure``.

        Raises:
            IntegrityCheckError: the store could not be read
        """
        try:
            entry = await self._store.get_audit_entry(log_id)
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("audit_log", "verify_log_integrity", e)
            raise IntegrityCheckError(f"Could not verify audit entry {log_id}") from e

        if entry is None:
            return False

        expected = compute_entry_hash(entry.user_id, entry.action, entry.timestamp)
        if hmac.compare_digest(expected.encode("utf-8"), entry.hash.encode("utf-8")):
            return True

        await self._events.record(
            SecurityEventType.AUDIT_LOG_INTEGRITY_FAILURE,
            Severity.HIGH,
            {"log_id": log_id, "action": entry.action},
            user_id=entry.user_id,
        )
        return False

    async def enforce_retention_policy(self, days: int | None = None) -> int:
        """Delete entries older than ``days`` (default: configured retention, minimum 1)."""
        days = max(1, days if days is not None else self._retention_days)
        cutoff = self._clock.now() - timedelta(days=days)
        removed = await self._store.delete_audit_entries_before(cutoff)
        if removed > 0:
            logger.info(f"Audit retention: deleted {removed} entries older than {days} days")
        metrics.record_maintenance("audit_retention", removed)
        return removed

    async def export_logs(self, start: datetime, end: datetime) -> AuditExport:
        """Redacted entries of all users within ``[start, end]``, oldest first.

        Raises:
            AuditLogReadError: the store could not be read
        """
        start, end = ensure_utc(start), ensure_utc(end)
        try:
            entries = await self._store.list_audit_entries(
                start=start,
                end=end,
                limit=MAX_EXPORT_ENTRIES,
                newest_first=False,
            )
        except StoreUnavailableError as e:
            await self._events.report_infrastructure_error("audit_log", "export_logs", e)
            raise AuditLogReadError("Failed to export audit logs") from e

        export = AuditExport(
            logs=[self._redacted(entry) for entry in entries],
            export_date=self._clock.now(),
            start=start,
            end=end,
        )
        logger.info(f"Exported {export.total_logs} audit entries")
        return export
