"""Session API endpoints.

Sessions belong to the authenticated principal; another user's session
is reported as not found.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from sessionguard.api.deps import get_principal, get_request_ip, get_security
from sessionguard.container import SecurityComponents
from sessionguard.core.exceptions import (
    AuditLogWriteError,
    MaxSessionsExceededError,
    StoreUnavailableError,
    TooManySessionAttemptsError,
)
from sessionguard.core.logging import get_logger
from sessionguard.schemas.session import (
    SessionCreate,
    SessionCreatedResponse,
    SessionValidateRequest,
    SessionValidateResponse,
)
from sessionguard.services.identity import Principal

logger = get_logger("api.sessions")

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.post(
    "",
    response_model=SessionCreatedResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_session(
    data: SessionCreate,
    principal: Principal = Depends(get_principal),
    ip_address: str | None = Depends(get_request_ip),
    security: SecurityComponents = Depends(get_security),
) -> SessionCreatedResponse:
    """Create a session for the caller's device."""
    try:
        session = await security.session_manager.create_session(
            principal.user_id, data.device_id, ip_address or "unknown"
        )
    except TooManySessionAttemptsError as e:
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e)) from e
    except MaxSessionsExceededError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except StoreUnavailableError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Session store unavailable"
        ) from e

    try:
        await security.audit_log.log_action(
            principal.user_id,
            "session_created",
            ip_address=ip_address,
            data={"session_id": session.id, "device_id": data.device_id},
        )
    except AuditLogWriteError as e:
        # An unaudited session must not stay usable
        logger.error(f"Audit write failed for session {session.id}: {e}")
        await security.session_manager.terminate_session(session.id, reason="audit_failure")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Audit log unavailable"
        ) from e

    return SessionCreatedResponse.model_validate(session)


@router.post("/{session_id}/validate", response_model=SessionValidateResponse)
async def validate_session(
    session_id: str,
    data: SessionValidateRequest,
    security: SecurityComponents = Depends(get_security),
) -> SessionValidateResponse:
    """Check a session's anti-fixation token, device and idle timeout."""
    valid = await security.session_manager.validate_session(
        session_id, data.anti_fixation_token, data.device_id
    )
    return SessionValidateResponse(valid=valid)


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def terminate_session(
    session_id: str,
    principal: Principal = Depends(get_principal),
    security: SecurityComponents = Depends(get_security),
) -> None:
    """Terminate one of the caller's sessions."""
    session = await security.session_manager.get_session(session_id)
    if session is None or session.user_id != principal.user_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    await security.session_manager.terminate_session(session_id, reason="user_logout")
