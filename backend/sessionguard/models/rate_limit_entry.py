"""RateLimitEntry model - shared fixed-window counters."""

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.core.database import Base
from sessionguard.models.base import UTCDateTime


class RateLimitRecord(Base):
    """Counter state for one canonical rate-limit key, signed with HMAC."""

    __tablename__ = "rate_limit_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    window_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    max_requests: Mapped[int] = mapped_column(Integer, nullable=False)
    rule_class: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    signature: Mapped[str] = mapped_column(String(64), nullable=False, default="")
