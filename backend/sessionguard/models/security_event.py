"""SecurityEvent model - append-only security event journal."""

from datetime import datetime
from typing import Any

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.core.database import Base
from sessionguard.models.base import JSONType, UTCDateTime


class SecurityEventRecord(Base):
    """A persisted security event. Rows are never updated, only pruned by retention."""

    __tablename__ = "security_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (Index("ix_security_events_severity_timestamp", "severity", "timestamp"),)

    def __repr__(self) -> str:
        return f"<SecurityEventRecord {self.type} {self.severity}>"
