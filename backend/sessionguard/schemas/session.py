"""Pydantic schemas for user sessions."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class SessionCreate(BaseModel):
    """Schema for creating a session on the caller's device."""

    device_id: str = Field(..., min_length=1, max_length=255)


class SessionResponse(BaseModel):
    """Schema for a session, without its anti-fixation token."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    device_id: str
    ip_address: str
    last_activity: datetime
    created_at: datetime
    ip_change_count: int = 0
    flagged: bool = False


class SessionCreatedResponse(SessionResponse):
    """Returned once at creation; the only time the token leaves the server."""

    anti_fixation_token: str


class SessionValidateRequest(BaseModel):
    anti_fixation_token: str = Field(..., min_length=1)
    device_id: str = Field(..., min_length=1, max_length=255)


class SessionValidateResponse(BaseModel):
    valid: bool
