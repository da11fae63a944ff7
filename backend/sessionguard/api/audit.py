"""Audit log API endpoints (admin role required, see SecurityMiddleware)."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from sessionguard.api.deps import get_security
from sessionguard.container import SecurityComponents
from sessionguard.core.clock import ensure_utc
from sessionguard.core.exceptions import AuditLogReadError, IntegrityCheckError
from sessionguard.schemas.audit import (
    AuditExportResponse,
    AuditIntegrityResponse,
    AuditLogListResponse,
    AuditLogResponse,
)

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/logs", response_model=AuditLogListResponse)
async def list_user_logs(
    user_id: str = Query(..., min_length=1),
    limit: int = Query(100, ge=1, le=1000),
    security: SecurityComponents = Depends(get_security),
) -> AuditLogListResponse:
    """Most recent redacted entries of a user."""
    try:
        entries = await security.audit_log.get_user_logs(user_id, limit=limit)
    except AuditLogReadError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(entry) for entry in entries],
        total=len(entries),
    )


@router.get("/logs/{log_id}/verify", response_model=AuditIntegrityResponse)
async def verify_log(
    log_id: str,
    security: SecurityComponents = Depends(get_security),
) -> AuditIntegrityResponse:
    """Recompute and compare an entry's integrity hash."""
    try:
        valid = await security.audit_log.verify_log_integrity(log_id)
    except IntegrityCheckError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e
    return AuditIntegrityResponse(log_id=log_id, valid=valid)


@router.get("/export", response_model=AuditExportResponse)
async def export_logs(
    start: datetime,
    end: datetime,
    security: SecurityComponents = Depends(get_security),
) -> AuditExportResponse:
    """Redacted entries of every user between ``start`` and ``end``.

    Bounds without a timezone are taken as UTC.
    """
    start, end = ensure_utc(start), ensure_utc(end)
    if end < start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="end must not be before start",
        )
    try:
        export = await security.audit_log.export_logs(start, end)
    except AuditLogReadError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e

    return AuditExportResponse.model_validate(export.to_dict())
