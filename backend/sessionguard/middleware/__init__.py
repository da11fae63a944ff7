"""Middleware module for SessionGuard."""

from sessionguard.middleware.security import SecurityMiddleware
from sessionguard.middleware.security_headers import SecurityHeadersMiddleware

__all__ = [
    "SecurityHeadersMiddleware",
    "SecurityMiddleware",
]
