"""Security engine records.

Plain dataclasses shared by the services and both store implementations.
All timestamps are timezone-aware UTC datetimes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


class Severity(str, Enum):
    """Security event severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventType(str, Enum):
    """Every security event type the engine emits."""

    # Request validation
    SUSPICIOUS_ACTIVITY = "suspicious_activity"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUSPICIOUS_IP_ROTATION = "suspicious_ip_rotation"
    DISTRIBUTED_BYPASS_ATTEMPT = "distributed_bypass_attempt"
    RATE_LIMIT_KEY_TAMPERING = "rate_limit_key_tampering"

    # Tokens
    TOKEN_BLACKLISTED = "token_blacklisted"
    FORCED_SESSION_INVALIDATION = "forced_session_invalidation"
    SUSPICIOUS_REFRESH_ATTEMPTS = "suspicious_refresh_attempts"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    REFRESH_TOKEN_COMPROMISED = "refresh_token_compromised"
    CONCURRENT_TOKEN_USAGE = "concurrent_token_usage"
    TOKEN_REUSE_ATTEMPT = "token_reuse_attempt"
    EXPIRED_TOKEN_USED = "expired_token_used"
    INVALID_TOKEN = "invalid_token"

    # Sessions
    RAPID_SESSION_CREATION = "rapid_session_creation"
    MAX_SESSIONS_EXCEEDED = "max_sessions_exceeded"
    CONCURRENT_SESSIONS_DETECTED = "concurrent_sessions_detected"
    SESSION_CREATED = "session_created"
    INVALID_ANTI_FIXATION_TOKEN = "invalid_anti_fixation_token"
    SESSION_FIXATION_ATTEMPT = "session_fixation_attempt"
    SESSION_EXPIRED = "session_expired"
    SESSION_HOPPING_DETECTED = "session_hopping_detected"
    SESSION_TERMINATED = "session_terminated"

    # Access
    PERMISSION_DENIED = "permission_denied"
    AUTH_FAILURE = "auth_failure"

    # Audit
    AUDIT_LOG_CREATED = "audit_log_created"
    AUDIT_LOG_INTEGRITY_FAILURE = "audit_log_integrity_failure"

    # Operational
    INFRASTRUCTURE_FAILURE_RECURRING = "infrastructure_failure_recurring"


class RuleClass(str, Enum):
    """Effective rate-limit rule class for a key."""

    NORMAL = "normal"
    STRICT = "strict"


@dataclass(frozen=True)
class SecurityEvent:
    """An immutable security-relevant event."""

    type: str
    severity: Severity
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    ip: str | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity.value,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "ip": self.ip,
        }


@dataclass
class RateLimitEntry:
    """Fixed-window counter for one canonical key."""

    key: str
    count: int
    window_start: datetime
    window_ms: int
    max_requests: int
    rule_class: RuleClass = RuleClass.NORMAL
    signature: str = ""

    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(milliseconds=self.window_ms)

    def is_window_elapsed(self, now: datetime) -> bool:
        return now > self.window_end


@dataclass
class BlacklistEntry:
    """A revoked token, stored by digest."""

    token: str  # SHA-256 hex digest of the raw token
    reason: str
    blacklisted_at: datetime
    expires_at: datetime
    user_id: str | None = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass
class Session:
    """A login session bound to one device."""

    id: str
    user_id: str
    device_id: str
    ip_address: str
    anti_fixation_token: str
    last_activity: datetime
    created_at: datetime
    ip_change_count: int = 0
    flagged: bool = False

    def is_idle_expired(self, now: datetime, timeout: timedelta) -> bool:
        return now - self.last_activity > timeout

    def to_dict(self) -> dict[str, Any]:
        """Public view; the anti-fixation token is never included."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "device_id": self.device_id,
            "ip_address": self.ip_address,
            "last_activity": self.last_activity.isoformat(),
            "created_at": self.created_at.isoformat(),
            "ip_change_count": self.ip_change_count,
            "flagged": self.flagged,
        }


@dataclass(frozen=True)
class AuditLogEntry:
    """A redacted, hash-verifiable audit record."""

    id: str
    user_id: str
    action: str
    ip_address: str | None
    data: dict[str, Any]
    metadata: dict[str, Any]
    timestamp: datetime
    hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "ip_address": self.ip_address,
            "data": self.data,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
            "hash": self.hash,
        }


@dataclass(frozen=True)
class UserRole:
    """Role assignment: a role and at most one parent role."""

    user_id: str
    role: str
    parent_role: str | None = None

    def grants(self, required_role: str) -> bool:
        return required_role in (self.role, self.parent_role)
