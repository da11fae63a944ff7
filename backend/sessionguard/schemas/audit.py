"""Pydantic schemas for audit log access and export."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class AuditLogResponse(BaseModel):
    """Schema for a single (redacted) audit entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    action: str
    ip_address: str | None = None
    data: dict[str, Any]
    metadata: dict[str, Any]
    timestamp: datetime
    hash: str


class AuditLogListResponse(BaseModel):
    items: list[AuditLogResponse]
    total: int


class AuditIntegrityResponse(BaseModel):
    log_id: str
    valid: bool


class AuditDateRange(BaseModel):
    start: datetime
    end: datetime


class AuditExportMetadata(BaseModel):
    export_date: datetime
    date_range: AuditDateRange
    total_logs: int


class AuditExportResponse(BaseModel):
    """Compliance export of redacted entries."""

    logs: list[AuditLogResponse]
    metadata: AuditExportMetadata
