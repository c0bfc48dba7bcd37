"""
shared/models/models.py
All SQLAlchemy ORM models for the detailing booking engine.
Four engine relations (bookings, time_slots, booking_reschedule_requests,
booking_status_history) plus the users table they point at.
Portable column types only, so the same models run on PostgreSQL and SQLite.
"""

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAYMENT_FAILED = "payment_failed"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SlotBookingStatus(str, PyEnum):
    """Coarse booking status mirrored onto the occupied slot."""
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RescheduleRequestStatus(str, PyEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def _enum(enum_cls, length: int = 20) -> Enum:
    """Store enum *values* ("in_progress"), not member names."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda e: [m.value for m in e],
        validate_strings=True,
    )


# ── Mixins ────────────────────────────────────────────────────

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """
    Adds created_at and updated_at to any model.
    Values are generated client-side so they are already loaded on the
    instance after flush (no implicit refresh under asyncio).
    """
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account of a customer or a member of staff."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        _enum(UserRole), nullable=False, default=UserRole.CUSTOMER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="customer")

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class TimeSlot(TimestampMixin, Base):
    """
    A fixed calendar interval that can host at most one active booking.
    is_available is true exactly when no booking reference is attached;
    the CHECK constraint makes the database refuse any other combination.
    """
    __tablename__ = "time_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    booking_reference: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    booking_status: Mapped[Optional[SlotBookingStatus]] = mapped_column(
        _enum(SlotBookingStatus), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("slot_date", "start_time", name="uq_time_slot_date_start"),
        CheckConstraint(
            "(is_available AND booking_reference IS NULL) OR "
            "(NOT is_available AND booking_reference IS NOT NULL)",
            name="ck_time_slot_availability",
        ),
        CheckConstraint("end_time > start_time", name="ck_time_slot_range"),
        Index("ix_time_slots_date_available", "slot_date", "is_available"),
        Index("ix_time_slots_booking_reference", "booking_reference"),
    )

    def __repr__(self) -> str:
        return f"<TimeSlot {self.slot_date} {self.start_time} available={self.is_available}>"


class Booking(TimestampMixin, Base):
    """
    Core booking entity.
    Status transitions are validated by services/booking/state_machine.py;
    `version` is bumped on every UPDATE so concurrent writers conflict
    instead of silently overwriting each other.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_reference: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )

    # Schedule
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    scheduled_start_time: Mapped[time] = mapped_column(Time, nullable=False)
    scheduled_end_time: Mapped[time] = mapped_column(Time, nullable=False)
    time_slot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("time_slots.id"), nullable=True, unique=True
    )

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (computed upstream, stored as given)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )

    # Timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    customer: Mapped["User"] = relationship(back_populates="bookings")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_bookings_customer_id", "customer_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_date", "scheduled_date"),
    )


class RescheduleRequest(TimestampMixin, Base):
    """Customer proposal to move a booking; consumed exactly once by an admin."""
    __tablename__ = "booking_reschedule_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    requested_date: Mapped[date] = mapped_column(Date, nullable=False)
    requested_time: Mapped[time] = mapped_column(Time, nullable=False)
    original_date: Mapped[date] = mapped_column(Date, nullable=False)
    original_time: Mapped[time] = mapped_column(Time, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    customer_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[RescheduleRequestStatus] = mapped_column(
        _enum(RescheduleRequestStatus),
        nullable=False,
        default=RescheduleRequestStatus.PENDING,
    )
    admin_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_reschedule_requests_booking_status", "booking_id", "status"),
    )


class BookingStatusHistory(Base):
    """Immutable log of booking status transitions. Rows are never updated."""
    __tablename__ = "booking_status_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("ix_status_history_booking_id", "booking_id"),)
