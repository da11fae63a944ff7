"""Access control for /api/* using the security facade.

Every /api request must carry ``Authorization: Bearer <token>``. The token,
the client IP and the endpoint group are handed to
``SecurityFacade.evaluate_access``; denials map to 401, 429 or 403.
"""

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from sessionguard.core.logging import get_logger
from sessionguard.core.request_utils import get_bearer_token, get_client_ip
from sessionguard.services.security_facade import AccessDenialReason

logger = get_logger("middleware.security")

PROTECTED_PREFIX = "/api"

# Path prefix -> role required to access it
DEFAULT_ROLE_REQUIREMENTS = {
    "/api/audit": "admin",
}

_DENIAL_RESPONSES = {
    AccessDenialReason.UNAUTHENTICATED: (401, "Invalid or revoked token"),
    AccessDenialReason.RATE_LIMITED: (429, "Rate limit exceeded"),
    AccessDenialReason.FORBIDDEN: (403, "Insufficient permissions"),
    AccessDenialReason.ERROR: (403, "Access check failed"),
}


def endpoint_group(path: str) -> str:
    """First two path segments, e.g. ``/api/sessions/abc/validate`` -> ``/api/sessions``.

    Rate-limit keys are per endpoint group so path parameters do not
    multiply keys.
    """
    segments = [s for s in path.split("/") if s][:2]
    return "/" + "/".join(segments)


class SecurityMiddleware(BaseHTTPMiddleware):
    """Authenticate, rate limit and authorize every /api request."""

    def __init__(self, app: ASGIApp, role_requirements: dict[str, str] | None = None):
        super().__init__(app)
        self._role_requirements = dict(
            DEFAULT_ROLE_REQUIREMENTS if role_requirements is None else role_requirements
        )

    def _required_role(self, path: str) -> str | None:
        for prefix, role in self._role_requirements.items():
            if path == prefix or path.startswith(prefix + "/"):
                return role
        return None

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if request.method == "OPTIONS":
            return await call_next(request)
        if not (path == PROTECTED_PREFIX or path.startswith(PROTECTED_PREFIX + "/")):
            return await call_next(request)

        token = get_bearer_token(request)
        if not token:
            logger.warning(f"API request without token: {request.method} {path}")
            return JSONResponse(
                status_code=401,
                content={"detail": "Authentication required"},
                headers={"WWW-Authenticate": "Bearer"},
            )

        facade = request.app.state.security.facade
        ip_address = get_client_ip(request)
        decision = await facade.evaluate_access(
            endpoint_group(path),
            token,
            required_role=self._required_role(path),
            ip_address=ip_address,
        )

        if not decision.allowed:
            reason = decision.reason or AccessDenialReason.ERROR
            status_code, detail = _DENIAL_RESPONSES[reason]
            logger.info(f"Access denied ({reason.value}) for {request.method} {path}")
            headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
            return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)

        request.state.principal = decision.principal
        request.state.client_ip = ip_address
        return await call_next(request)
