from datetime import date, datetime, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .config import settings
from .db import Base

BOOKING_STATUSES = {
    "pending",
    "in-progress",
    "completed",
    "cancelled",
    "no-show",
    "skipped",
}
ACTIVE_STATUSES = ("pending", "in-progress")
TERMINAL_STATUSES = ("completed", "cancelled", "no-show")
PAYMENT_STATUSES = {"pending", "paid", "refunded", "failed"}
BOOKING_TYPES = {"immediate", "scheduled"}
USER_ROLES = {"customer", "owner", "manager", "staff", "admin"}
COMMISSION_TYPES = {"percentage", "fixed", "none"}


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _one_of(field: str, value, allowed) -> str:
    if value not in allowed:
        raise ValueError(f"invalid {field}: {value!r}")
    return value


def _default_priority_limit() -> int:
    return int(settings.DEFAULT_PRIORITY_LIMIT_PER_DAY)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), unique=True, nullable=True, index=True)
    role: Mapped[str] = mapped_column(String(20), default="customer", index=True)
    # staff/manager accounts are scoped to one salon
    salon_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    device_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    loyalty_points: Mapped[int] = mapped_column(Integer, default=0)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    @validates("role")
    def _validate_role(self, key, value):
        return _one_of(key, value, USER_ROLES)


class Salon(Base):
    __tablename__ = "salons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    is_open: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    busy_mode: Mapped[bool] = mapped_column(Boolean, default=False)
    operating_mode: Mapped[str] = mapped_column(String(16), default="normal")
    total_barbers: Mapped[int] = mapped_column(Integer, default=1)
    active_barbers: Mapped[int] = mapped_column(Integer, default=1)
    avg_service_time: Mapped[int] = mapped_column(Integer, default=30)
    average_service_duration: Mapped[int] = mapped_column(Integer, default=30)
    max_queue_size: Mapped[int] = mapped_column(Integer, default=20)
    priority_used_today: Mapped[int] = mapped_column(Integer, default=0)
    priority_limit_per_day: Mapped[int] = mapped_column(Integer, default=_default_priority_limit)
    priority_reset_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_closure_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    services = relationship(
        "SalonService", order_by="SalonService.id", back_populates="salon"
    )


class SalonService(Base):
    __tablename__ = "salon_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    salon_id: Mapped[int] = mapped_column(ForeignKey("salons.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    duration: Mapped[int] = mapped_column(Integer, default=30)
    category: Mapped[str] = mapped_column(String(20), default="Hair")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    salon = relationship("Salon", back_populates="services")


class SalonClosure(Base):
    __tablename__ = "salon_closures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    salon_id: Mapped[int] = mapped_column(ForeignKey("salons.id"), index=True)
    reason: Mapped[str] = mapped_column(String(80))
    custom_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    queue_size_at_closure: Mapped[int] = mapped_column(Integer, default=0)
    closed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    reopened_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class Staff(Base):
    __tablename__ = "staff"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    salon_id: Mapped[int] = mapped_column(ForeignKey("salons.id"), index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    name: Mapped[str] = mapped_column(String(120))
    role: Mapped[str] = mapped_column(String(20), default="barber")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    commission_type: Mapped[str] = mapped_column(String(16), default="percentage")
    commission_rate: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    total_bookings: Mapped[int] = mapped_column(Integer, default=0)
    completed_bookings: Mapped[int] = mapped_column(Integer, default=0)
    total_revenue: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), default=0)
    total_commission: Mapped[float] = mapped_column(Numeric(12, 2, asdecimal=False), default=0)

    @validates("commission_type")
    def _validate_commission_type(self, key, value):
        return _one_of(key, value, COMMISSION_TYPES)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_salon_status", "salon_id", "status"),
        Index("ix_bookings_salon_position", "salon_id", "queue_position"),
        Index("ix_bookings_user_status", "user_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    salon_id: Mapped[int] = mapped_column(ForeignKey("salons.id"), index=True)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    booking_type: Mapped[str] = mapped_column(String(16), default="immediate", index=True)
    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    scheduled_time: Mapped[str | None] = mapped_column(String(5), nullable=True)

    total_price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    total_duration: Mapped[int] = mapped_column(Integer, default=0)
    payment_method: Mapped[str] = mapped_column(String(16), default="cash")
    payment_status: Mapped[str] = mapped_column(String(16), default="pending")
    paid_amount: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # NULL while a scheduled booking has not arrived yet
    queue_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimated_start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    estimated_end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    arrived: Mapped[bool] = mapped_column(Boolean, default=False)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    walk_in_token: Mapped[str | None] = mapped_column(String(3), nullable=True, index=True)

    assigned_staff_id: Mapped[int | None] = mapped_column(
        ForeignKey("staff.id"), nullable=True, index=True
    )

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    notes: Mapped[str] = mapped_column(Text, default="")
    cancellation_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)
    loyalty_points_earned: Mapped[int] = mapped_column(Integer, default=0)

    skipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    original_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now_naive, onupdate=utc_now_naive
    )

    services = relationship(
        "BookingService",
        order_by="BookingService.position",
        cascade="all, delete-orphan",
    )
    user = relationship("User")
    salon = relationship("Salon")
    assigned_staff = relationship("Staff")

    @validates("status")
    def _validate_status(self, key, value):
        return _one_of(key, value, BOOKING_STATUSES)

    @validates("booking_type")
    def _validate_booking_type(self, key, value):
        return _one_of(key, value, BOOKING_TYPES)

    @validates("payment_status")
    def _validate_payment_status(self, key, value):
        return _one_of(key, value, PAYMENT_STATUSES)


class BookingService(Base):
    __tablename__ = "booking_services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    service_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(120))
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), default=0)
    duration: Mapped[int] = mapped_column(Integer, default=0)
    position: Mapped[int] = mapped_column(Integer, default=0)


class BookingStatusEvent(Base):
    __tablename__ = "booking_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    salon_id: Mapped[int] = mapped_column(ForeignKey("salons.id"), index=True)
    from_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16))
    actor: Mapped[str | None] = mapped_column(String(120), nullable=True)
    note: Mapped[str | None] = mapped_column(String(300), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class PriorityLog(Base):
    __tablename__ = "priority_logs"
    __table_args__ = (Index("ix_priority_logs_salon_created", "salon_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    salon_id: Mapped[int] = mapped_column(ForeignKey("salons.id"), index=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    customer_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    customer_name: Mapped[str] = mapped_column(String(120))
    triggered_by: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    triggered_by_name: Mapped[str] = mapped_column(String(120))
    triggered_by_role: Mapped[str] = mapped_column(String(16))
    reason: Mapped[str] = mapped_column(String(40))
    queue_position_before: Mapped[int] = mapped_column(Integer)
    assigned_staff_id: Mapped[int | None] = mapped_column(ForeignKey("staff.id"), nullable=True)
    assigned_staff_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


@event.listens_for(PriorityLog, "before_update")
def _priority_log_is_immutable(mapper, connection, target):
    raise RuntimeError("PriorityLog rows are append-only")


@event.listens_for(PriorityLog, "before_delete")
def _priority_log_is_undeletable(mapper, connection, target):
    raise RuntimeError("PriorityLog rows are append-only")
