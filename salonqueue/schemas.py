from datetime import date, datetime

from pydantic import BaseModel, Field, field_validator


class JoinQueueIn(BaseModel):
    salon_id: int = Field(gt=0)
    service_ids: list[int] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=500)
    payment_method: str = Field(default="cash", max_length=16)

    @field_validator("payment_method")
    @classmethod
    def normalize_payment_method(cls, value: str) -> str:
        normalized = (value or "cash").strip().lower()
        if normalized not in {"cash", "card", "upi", "wallet"}:
            raise ValueError("payment_method must be one of cash, card, upi, wallet")
        return normalized


class ScheduleBookingIn(BaseModel):
    salon_id: int = Field(gt=0)
    service_ids: list[int] = Field(default_factory=list)
    scheduled_date: date
    scheduled_time: str = Field(min_length=4, max_length=5)
    notes: str | None = Field(default=None, max_length=500)


class WalkInIn(BaseModel):
    service_ids: list[int] = Field(default_factory=list)
    name: str | None = Field(default=None, max_length=120)
    phone: str | None = Field(default=None, max_length=40)


class ArrivedIn(BaseModel):
    booking_id: int = Field(gt=0)


class StartServiceIn(BaseModel):
    assigned_staff_id: int | None = None


class SkipIn(BaseModel):
    reason: str = Field(default="", max_length=300)


class UndoSkipIn(BaseModel):
    return_to_original: bool = True


class CancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=300)


class PriorityStartIn(BaseModel):
    reason: str = Field(default="", max_length=40)
    assigned_staff_id: int | None = None


class CloseSalonIn(BaseModel):
    reason: str = Field(default="", max_length=80)
    custom_reason: str | None = Field(default=None, max_length=200)


class BusyModeIn(BaseModel):
    enabled: bool


class ActiveBarbersIn(BaseModel):
    active_barbers: int


class BookingServiceOut(BaseModel):
    service_id: int | None = None
    name: str
    price: float
    duration: int


class BookingOut(BaseModel):
    id: int
    salon_id: int
    user_id: int | None = None
    booking_type: str
    status: str
    queue_position: int | None = None
    walk_in_token: str | None = None
    assigned_staff_id: int | None = None
    services: list[BookingServiceOut] = Field(default_factory=list)
    total_price: float
    total_duration: int
    payment_method: str
    payment_status: str
    paid_amount: float
    arrived: bool
    scheduled_date: date | None = None
    scheduled_time: str | None = None
    joined_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_start_time: datetime | None = None
    estimated_end_time: datetime | None = None
    loyalty_points_earned: int = 0
    notes: str = ""
    cancellation_reason: str | None = None
    skip_reason: str | None = None
    original_position: int | None = None


class QueueOut(BaseModel):
    salon_id: int
    queue_length: int
    in_progress: list[BookingOut]
    pending: list[BookingOut]
    skipped: list[BookingOut]


class PriorityUsageOut(BaseModel):
    used_today: int
    daily_limit: int
    remaining: int
    can_use: bool


class PriorityLogOut(BaseModel):
    id: int
    salon_id: int
    booking_id: int
    customer_id: int | None = None
    customer_name: str
    triggered_by: int
    triggered_by_name: str
    triggered_by_role: str
    reason: str
    queue_position_before: int
    assigned_staff_id: int | None = None
    assigned_staff_name: str | None = None
    created_at: datetime


class PriorityStartOut(BaseModel):
    booking: BookingOut
    log: PriorityLogOut
    usage: PriorityUsageOut


class SalonStateOut(BaseModel):
    id: int
    name: str
    is_open: bool
    is_active: bool
    busy_mode: bool
    operating_mode: str
    total_barbers: int
    active_barbers: int
    last_closure_reason: str | None = None


class CloseSalonOut(BaseModel):
    salon: SalonStateOut
    queue_size_at_closure: int
    notifications_sent: int
