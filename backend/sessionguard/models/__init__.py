# SessionGuard Models
from sessionguard.models.audit_log import AuditLogRecord
from sessionguard.models.blacklisted_token import BlacklistedToken
from sessionguard.models.rate_limit_entry import RateLimitRecord
from sessionguard.models.security_event import SecurityEventRecord
from sessionguard.models.user_role import UserRoleRecord
from sessionguard.models.user_session import UserSession

__all__ = [
    "AuditLogRecord",
    "BlacklistedToken",
    "RateLimitRecord",
    "SecurityEventRecord",
    "UserRoleRecord",
    "UserSession",
]
