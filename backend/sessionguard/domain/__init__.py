from .entities import (
    AuditLogEntry,
    BlacklistEntry,
    RateLimitEntry,
    RuleClass,
    SecurityEvent,
    SecurityEventType,
    Session,
    Severity,
    UserRole,
)

__all__ = [
    "AuditLogEntry",
    "BlacklistEntry",
    "RateLimitEntry",
    "RuleClass",
    "SecurityEvent",
    "SecurityEventType",
    "Session",
    "Severity",
    "UserRole",
]
