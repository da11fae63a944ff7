"""Error taxonomy for the security engine."""

from enum import Enum


class FailurePolicy(str, Enum):
    """What a component decides when its backing store is unavailable."""

    OPEN = "open"  # allow the request
    CLOSED = "closed"  # deny the request


class SessionGuardError(Exception):
    """Base exception for the security engine."""

    pass


class StoreUnavailableError(SessionGuardError):
    """The backing store failed (connection, timeout, driver error)."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        message = f"Security store unavailable during {operation}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class RequestRejectedError(SessionGuardError):
    """A business rule rejected the request."""

    pass


class TooManySessionAttemptsError(RequestRejectedError):
    """Too many sessions created by one user in a short interval."""

    pass


class MaxSessionsExceededError(RequestRejectedError):
    """The user already holds the maximum number of concurrent sessions."""

    pass


class SessionNotFoundError(SessionGuardError):
    """Session does not exist."""

    pass


class AuditLogError(SessionGuardError):
    """Base exception for audit log failures."""

    pass


class AuditLogWriteError(AuditLogError):
    """An audit entry could not be persisted."""

    pass


class AuditLogReadError(AuditLogError):
    """Audit entries could not be read."""

    pass


class IntegrityCheckError(AuditLogError):
    """Integrity verification could not be performed."""

    pass


class AuthError(SessionGuardError):
    """Base exception for identity errors."""

    pass


class TokenError(AuthError):
    """Token validation error."""

    pass


class TokenExpiredError(TokenError):
    """Token has expired."""

    pass


class InvalidTokenError(TokenError):
    """Token is invalid."""

    pass
