"""Blacklisted tokens - survives process restarts."""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.core.database import Base
from sessionguard.models.base import UTCDateTime


class BlacklistedToken(Base):
    """A revoked token identified by the SHA-256 digest of its value.

    Entries are created on logout, rotation or compromise and purged after expiry.
    """

    __tablename__ = "blacklisted_tokens"

    token: Mapped[str] = mapped_column(String(64), primary_key=True)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    blacklisted_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
