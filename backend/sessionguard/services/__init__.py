# SessionGuard Services
from sessionguard.services.audit_log import AuditLog
from sessionguard.services.event_sink import SecurityEventSink
from sessionguard.services.identity import IdentityProvider, JWTIdentityProvider
from sessionguard.services.maintenance import MaintenanceScheduler
from sessionguard.services.rate_limiter import RateLimiter, RateLimitScope
from sessionguard.services.request_validator import RequestValidator
from sessionguard.services.security_facade import SecurityFacade
from sessionguard.services.session_manager import SessionManager
from sessionguard.services.token_guard import TokenGuard

__all__ = [
    "AuditLog",
    "IdentityProvider",
    "JWTIdentityProvider",
    "MaintenanceScheduler",
    "RateLimitScope",
    "RateLimiter",
    "RequestValidator",
    "SecurityEventSink",
    "SecurityFacade",
    "SessionManager",
    "TokenGuard",
]
