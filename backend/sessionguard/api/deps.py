"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request, status

from sessionguard.container import SecurityComponents
from sessionguard.services.identity import Principal


def get_security(request: Request) -> SecurityComponents:
    """The engine instance attached to the application."""
    return request.app.state.security


def get_principal(request: Request) -> Principal:
    """Principal authenticated by SecurityMiddleware."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return principal


def get_request_ip(request: Request) -> str | None:
    return getattr(request.state, "client_ip", None)
