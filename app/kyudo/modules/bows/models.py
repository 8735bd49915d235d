from __future__ import annotations

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, Float, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.kyudo.models import Base
from app.kyudo.utils import utcnow


class BowLength(str, PyEnum):
    NAMISUN = "並寸"
    NISUN_NOBI = "二寸伸"
    YONSUN_NOBI = "四寸伸"
    SANSUN_TSUME = "三寸詰"


class Bow(Base):
    __tablename__ = "bows"
    __table_args__ = (
        Index("idx_bows_bow_number", "bow_number"),
        Index("idx_bows_borrower", "borrower_profile_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bow_number: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0)  # kg
    length: Mapped[BowLength] = mapped_column(
        Enum(BowLength, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    # NULL = available
    borrower_profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    loans: Mapped[list["BowLoan"]] = relationship(
        back_populates="bow",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BowLoan.loaned_at.desc()",
    )


class BowLoan(Base):
    __tablename__ = "bow_loans"
    __table_args__ = (
        Index("idx_bow_loans_bow", "bow_id", "loaned_at"),
        # At most one open loan per bow.
        Index(
            "uq_bow_loans_open",
            "bow_id",
            unique=True,
            sqlite_where=text("returned_at IS NULL"),
            postgresql_where=text("returned_at IS NULL"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bow_id: Mapped[int] = mapped_column(ForeignKey("bows.id", ondelete="CASCADE"), nullable=False)
    borrower_profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True
    )
    loaned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    returned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    bow: Mapped[Bow] = relationship(back_populates="loans")
