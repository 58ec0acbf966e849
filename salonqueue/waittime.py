"""Wait-time estimation.

`estimate_wait` is pure: it only sees the salon snapshot and the ordered queue
entries passed in, so the broadcaster can call it once per connected client
and get a personalised answer for each one.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import salon_not_found
from .models import ACTIVE_STATUSES, Booking, Salon, utc_now_naive

VERY_BUSY_AFTER_MINUTES = 45
BUSY_AFTER_MINUTES = 15


@dataclass(frozen=True)
class SalonSnapshot:
    salon_id: int
    is_open: bool = True
    is_active: bool = True
    busy_mode: bool = False
    active_barbers: int = 1
    max_queue_size: int = 20
    average_service_duration: int = 30


@dataclass(frozen=True)
class QueueEntry:
    booking_id: int
    status: str
    queue_position: int
    total_duration: int
    user_id: int | None = None
    started_at: datetime | None = None
    joined_at: datetime | None = None


@dataclass
class WaitEstimate:
    wait_minutes: int | None
    display_text: str
    queue_length: int
    status: str
    estimated_start_time: datetime | None = None
    is_in_queue: bool = False
    position: int | None = None
    people_ahead: int | None = None

    def to_dict(self) -> dict:
        data = {
            "waitMinutes": self.wait_minutes,
            "displayText": self.display_text,
            "queueLength": self.queue_length,
            "status": self.status,
            "estimatedStartTime": self.estimated_start_time.isoformat() if self.estimated_start_time else None,
            "isInQueue": self.is_in_queue,
        }
        if self.is_in_queue:
            data["position"] = self.position
            data["peopleAhead"] = self.people_ahead
        return data


def format_wait_time(minutes: int) -> str:
    if minutes <= 0:
        return "No wait"
    if minutes <= 5:
        return "~0-5 min"
    if minutes < 60:
        return f"~{minutes} min wait"
    hours, mins = divmod(minutes, 60)
    if mins == 0:
        return f"~{hours}h wait"
    return f"~{hours}h {mins}m wait"


def is_queue_full(queue_length: int, active_barbers: int, max_queue_size: int) -> bool:
    limit = min(int(active_barbers) + int(settings.QUEUE_FULL_HEADROOM), int(max_queue_size))
    return queue_length >= limit


def _service_minutes(entry: QueueEntry, salon: SalonSnapshot) -> int:
    duration = int(entry.total_duration or 0)
    if duration > 0:
        return duration
    return int(salon.average_service_duration or settings.DEFAULT_SERVICE_MINUTES)


def remaining_minutes(entry: QueueEntry, salon: SalonSnapshot, now: datetime) -> float:
    """Minutes this entry still occupies a chair."""
    duration = _service_minutes(entry, salon)
    if entry.status == "in-progress":
        if entry.started_at is None:
            return float(duration)
        elapsed = (now - entry.started_at).total_seconds() / 60.0
        return max(0.0, duration - elapsed)
    return float(duration)


def _congestion_status(total_minutes: int) -> str:
    if total_minutes > VERY_BUSY_AFTER_MINUTES:
        return "very-busy"
    if total_minutes > BUSY_AFTER_MINUTES:
        return "busy"
    return "available"


def estimate_wait(
    salon: SalonSnapshot,
    entries: list[QueueEntry],
    user_id: int | None = None,
    now: datetime | None = None,
) -> WaitEstimate:
    now = now or utc_now_naive()

    if not salon.is_open or not salon.is_active:
        return WaitEstimate(wait_minutes=None, display_text="Closed", queue_length=0, status="closed")
    if int(salon.active_barbers or 0) <= 0:
        return WaitEstimate(wait_minutes=None, display_text="Wait unavailable", queue_length=0, status="unavailable")

    active = [e for e in entries if e.status in ACTIVE_STATUSES]
    queue_length = len(active)
    if queue_length == 0:
        return WaitEstimate(
            wait_minutes=0,
            display_text="No wait",
            queue_length=0,
            status="available",
            estimated_start_time=now,
        )

    if user_id is not None:
        own = next((e for e in active if e.user_id == user_id), None)
        if own is not None and own.status == "in-progress":
            return WaitEstimate(
                wait_minutes=0,
                display_text="In service",
                queue_length=queue_length,
                status="in-service",
                estimated_start_time=own.started_at or now,
                is_in_queue=True,
                position=own.queue_position,
                people_ahead=0,
            )
        if own is not None:
            # entries arrive ordered by position, so everything before ours is ahead
            ahead = active[: active.index(own)]
            wait = math.ceil(sum(remaining_minutes(e, salon, now) for e in ahead))
            return WaitEstimate(
                wait_minutes=wait,
                display_text=format_wait_time(wait),
                queue_length=queue_length,
                status="in-queue",
                estimated_start_time=now + timedelta(minutes=wait),
                is_in_queue=True,
                position=own.queue_position,
                people_ahead=len(ahead),
            )

    wait = math.ceil(sum(remaining_minutes(e, salon, now) for e in active))
    if salon.busy_mode:
        return WaitEstimate(
            wait_minutes=wait,
            display_text="Walk-ins only",
            queue_length=queue_length,
            status="busy",
            estimated_start_time=now + timedelta(minutes=wait),
        )
    if is_queue_full(queue_length, salon.active_barbers, salon.max_queue_size):
        return WaitEstimate(wait_minutes=None, display_text="Queue full", queue_length=queue_length, status="full")
    return WaitEstimate(
        wait_minutes=wait,
        display_text=format_wait_time(wait),
        queue_length=queue_length,
        status=_congestion_status(wait),
        estimated_start_time=now + timedelta(minutes=wait),
    )


def project_estimates(
    salon: SalonSnapshot,
    entries: list[QueueEntry],
    now: datetime | None = None,
) -> dict[int, tuple[datetime, datetime]]:
    """Advisory (start, end) per active booking, serving the queue in order."""
    now = now or utc_now_naive()
    projections: dict[int, tuple[datetime, datetime]] = {}
    cursor = now
    for entry in entries:
        duration = timedelta(minutes=_service_minutes(entry, salon))
        if entry.status == "in-progress":
            start = entry.started_at or now
            projections[entry.booking_id] = (start, start + duration)
            cursor += timedelta(minutes=remaining_minutes(entry, salon, now))
        elif entry.status == "pending":
            projections[entry.booking_id] = (cursor, cursor + duration)
            cursor += duration
    return projections


def snapshot_from_salon(salon: Salon) -> SalonSnapshot:
    return SalonSnapshot(
        salon_id=salon.id,
        is_open=bool(salon.is_open),
        is_active=bool(salon.is_active),
        busy_mode=bool(salon.busy_mode),
        active_barbers=int(salon.active_barbers or 0),
        max_queue_size=int(salon.max_queue_size or 20),
        average_service_duration=int(
            salon.average_service_duration or salon.avg_service_time or settings.DEFAULT_SERVICE_MINUTES
        ),
    )


def entry_from_booking(booking: Booking) -> QueueEntry:
    return QueueEntry(
        booking_id=booking.id,
        status=booking.status,
        queue_position=int(booking.queue_position or 0),
        total_duration=int(booking.total_duration or 0),
        user_id=booking.user_id,
        started_at=booking.started_at,
        joined_at=booking.joined_at,
    )


def load_queue_entries(db: Session, salon_id: int) -> list[QueueEntry]:
    rows = db.execute(
        select(Booking)
        .where(
            Booking.salon_id == salon_id,
            Booking.status.in_(ACTIVE_STATUSES),
            Booking.queue_position.is_not(None),
        )
        .order_by(Booking.queue_position.asc(), Booking.joined_at.asc(), Booking.id.asc())
    ).scalars().all()
    return [entry_from_booking(row) for row in rows]


def estimate_for_salon(
    db: Session,
    salon_id: int,
    user_id: int | None = None,
    now: datetime | None = None,
) -> WaitEstimate:
    salon = db.get(Salon, salon_id)
    if salon is None:
        raise salon_not_found()
    return estimate_wait(snapshot_from_salon(salon), load_queue_entries(db, salon_id), user_id=user_id, now=now)
