from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.kyudo.models import Base
from app.kyudo.utils import utcnow

if TYPE_CHECKING:
    from app.kyudo.models import User


class Profile(Base):
    """Member record; shares its primary key with the owning account."""

    __tablename__ = "profiles"
    __table_args__ = (
        Index("idx_profiles_student_number", "student_number"),
        Index("idx_profiles_generation", "generation"),
    )

    id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    student_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    name_kana: Mapped[str | None] = mapped_column(String(255), nullable=True)
    generation: Mapped[str | None] = mapped_column(String(32), nullable=True)  # cohort, e.g. "60"
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)  # "male" | "female"

    department: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ryuha: Mapped[str | None] = mapped_column(String(128), nullable=True)  # school of shooting
    position: Mapped[str | None] = mapped_column(String(128), nullable=True)

    public_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    restricted_note: Mapped[str | None] = mapped_column(Text, nullable=True)  # owner + admins only

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow, onupdate=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="profile")
