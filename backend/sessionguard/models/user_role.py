"""UserRole model - two-level role lookup."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from sessionguard.core.database import Base


class UserRoleRecord(Base):
    """A user's role and optional parent role."""

    __tablename__ = "user_roles"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    role: Mapped[str] = mapped_column(String(64), nullable=False)
    parent_role: Mapped[str | None] = mapped_column(String(64), nullable=True)
