"""
Database models and data structures for savings circles.
"""

import time
from decimal import Decimal
from enum import StrEnum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _now() -> int:
    return int(time.time())


class ClaimStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class PaymentStatus(StrEnum):
    PAID = "paid"
    PENDING = "pending"
    REJECTED = "rejected"


class Member(Base):
    __tablename__ = "members"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    language_code: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)

    @property
    def display_name(self) -> str:
        full_name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return full_name or self.external_id


class Circle(Base):
    __tablename__ = "circles"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    monthly_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    start_date: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )  # Unix timestamp, set when the circle is locked
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)

    months: Mapped[List["CircleMonth"]] = relationship(
        back_populates="circle",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="CircleMonth.index",
    )


class CircleMonth(Base):
    __tablename__ = "circle_months"
    __table_args__ = (
        UniqueConstraint("circle_id", "index", name="uq_circle_month_index"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    circle_id: Mapped[int] = mapped_column(
        ForeignKey("circles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False)  # 1-based
    total_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)

    circle: Mapped["Circle"] = relationship(back_populates="months")
    claims: Mapped[List["Claim"]] = relationship(
        back_populates="month", cascade="all, delete-orphan", passive_deletes=True
    )


class Claim(Base):
    """A member's reservation of slots in one month"""

    __tablename__ = "claims"
    __table_args__ = (
        Index("claims_member_id_idx", "member_id"),
        Index("claims_circle_id_idx", "circle_id"),
        Index("claims_month_id_idx", "month_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    circle_id: Mapped[int] = mapped_column(
        ForeignKey("circles.id", ondelete="CASCADE"), nullable=False
    )
    month_id: Mapped[int] = mapped_column(
        ForeignKey("circle_months.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    slot_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, default=ClaimStatus.PENDING)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[int] = mapped_column(Integer, default=_now, onupdate=_now)

    month: Mapped["CircleMonth"] = relationship(back_populates="claims")
    member: Mapped["Member"] = relationship()


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("payments_member_id_idx", "member_id"),
        Index("payments_circle_id_idx", "circle_id"),
        Index("payments_month_id_idx", "month_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    circle_id: Mapped[int] = mapped_column(
        ForeignKey("circles.id", ondelete="CASCADE"), nullable=False
    )
    month_id: Mapped[int] = mapped_column(
        ForeignKey("circle_months.id", ondelete="CASCADE"), nullable=False
    )
    proof_ref: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=PaymentStatus.PAID)
    paid_at: Mapped[int] = mapped_column(Integer, default=_now)
    created_at: Mapped[int] = mapped_column(Integer, default=_now)
    updated_at: Mapped[int] = mapped_column(Integer, default=_now, onupdate=_now)


class ReminderLog(Base):
    """One row per reminder delivered to a member for a month on a given day"""

    __tablename__ = "reminder_logs"
    __table_args__ = (
        UniqueConstraint(
            "member_id", "month_id", "sent_on", name="uq_reminder_member_month_day"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    member_id: Mapped[int] = mapped_column(
        ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    circle_id: Mapped[int] = mapped_column(
        ForeignKey("circles.id", ondelete="CASCADE"), nullable=False
    )
    month_id: Mapped[int] = mapped_column(
        ForeignKey("circle_months.id", ondelete="CASCADE"), nullable=False
    )
    sent_on: Mapped[str] = mapped_column(String, nullable=False)  # YYYY-MM-DD
    sent_at: Mapped[int] = mapped_column(Integer, default=_now)


class SweepCheckpoint(Base):
    """Last run of a recurring job: the local date it ran for and whether it finished cleanly"""

    __tablename__ = "sweep_checkpoints"

    name: Mapped[str] = mapped_column(String, primary_key=True)
    run_date: Mapped[str] = mapped_column(String, nullable=False)  # YYYY-MM-DD
    success: Mapped[bool] = mapped_column(Boolean, default=False)
    updated_at: Mapped[int] = mapped_column(Integer, default=_now, onupdate=_now)


class CircleRecord(BaseModel):
    """Detached view of a circle"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    monthly_amount: Decimal
    start_date: Optional[int]
    is_locked: bool


class MonthRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    circle_id: int
    name: str
    index: int
    total_capacity: int


class ClaimRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    circle_id: int
    month_id: int
    member_id: int
    slot_count: int
    status: ClaimStatus


class PaymentRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: int
    circle_id: int
    month_id: int
    proof_ref: str
    status: PaymentStatus
    paid_at: int


class MemberRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    first_name: Optional[str]
    last_name: Optional[str]
    phone: Optional[str]
    language_code: Optional[str]
    is_admin: bool
    display_name: str
