from datetime import date, datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import notifications
from .authn import Actor
from .broadcast import Broadcaster
from .errors import ConflictError, QueueError, ValidationFailed
from .ledger import append_note, in_progress_count, record_transition
from .lifecycle import conditional_start, fan_out_queue_change, get_salon, get_salon_booking, staff_for_assignment
from .models import Booking, PriorityLog, Salon, User, utc_now_naive
from .policy import enforce, salon_role

log = structlog.get_logger("salonqueue.priority")

PRIORITY_REASONS = ("Senior citizen", "Medical urgency", "Child", "System exception")


def reset_priority_if_needed(db: Session, salon: Salon, today: date | None = None) -> bool:
    today = today or utc_now_naive().date()
    if salon.priority_reset_date == today:
        return False
    salon.priority_used_today = 0
    salon.priority_reset_date = today
    db.commit()
    log.info("priority_quota_reset", salon_id=salon.id, day=today.isoformat())
    return True


def priority_usage(db: Session, salon_id: int, today: date | None = None) -> dict:
    salon = get_salon(db, salon_id)
    reset_priority_if_needed(db, salon, today)
    used = int(salon.priority_used_today or 0)
    limit = int(salon.priority_limit_per_day or 0)
    return {
        "used_today": used,
        "daily_limit": limit,
        "remaining": max(0, limit - used),
        "can_use": used < limit,
    }


def _customer_label(booking: Booking) -> str:
    if booking.user is not None and booking.user.name:
        return booking.user.name
    notes = booking.notes or ""
    for line in notes.splitlines():
        if line.startswith("Walk-in: "):
            return line[len("Walk-in: "):].strip() or "Walk-in"
    if booking.walk_in_token:
        return f"Walk-in {booking.walk_in_token}"
    return "Customer"


def _actor_label(db: Session, actor: Actor) -> str:
    user = db.get(User, actor.user_id)
    if user is not None and user.name:
        return user.name
    return f"User {actor.user_id}"


def start_priority(
    db: Session,
    salon_id: int,
    booking_id: int,
    reason: str,
    actor: Actor,
    assigned_staff_id: int | None = None,
    broadcaster: Broadcaster | None = None,
    notifier=None,
    now: datetime | None = None,
) -> tuple[Booking, PriorityLog]:
    """Jump a pending booking straight to in-progress.

    Checks run in a fixed order and the first failure wins. The booking
    transition, the quota increment and the audit row commit together.
    """
    reason = (reason or "").strip()
    if reason not in PRIORITY_REASONS:
        raise ValidationFailed(
            "INVALID_PRIORITY_REASON",
            f"Reason must be one of: {', '.join(PRIORITY_REASONS)}",
        )

    salon = get_salon(db, salon_id)
    enforce(actor, "queue.priority", salon=salon)

    now = now or utc_now_naive()
    reset_priority_if_needed(db, salon, now.date())
    if int(salon.priority_used_today or 0) >= int(salon.priority_limit_per_day or 0):
        raise ConflictError(
            "PRIORITY_LIMIT_REACHED",
            f"Daily priority limit reached ({salon.priority_used_today}/{salon.priority_limit_per_day})",
        )

    booking = get_salon_booking(db, salon, booking_id)
    if booking.status != "pending" or booking.queue_position is None:
        raise ConflictError("INVALID_BOOKING_STATUS", f"Cannot prioritise a booking that is {booking.status}")

    if in_progress_count(db, salon.id) >= int(salon.active_barbers or 0):
        raise ConflictError("NO_BARBERS_AVAILABLE", "No barber is free to take a priority customer")

    staff = staff_for_assignment(db, salon, assigned_staff_id)

    position_before = int(booking.queue_position)
    customer_id = booking.user_id
    customer_name = _customer_label(booking)
    triggered_by_name = _actor_label(db, actor)
    triggered_by_role = salon_role(actor, salon) or actor.role

    try:
        conditional_start(db, booking, staff, now, notes=append_note(booking.notes, f"Priority: {reason}"))

        quota = db.execute(
            update(Salon)
            .where(Salon.id == salon.id, Salon.priority_used_today < Salon.priority_limit_per_day)
            .values(priority_used_today=Salon.priority_used_today + 1)
            .execution_options(synchronize_session=False)
        )
        if int(quota.rowcount or 0) != 1:
            raise ConflictError("PRIORITY_LIMIT_REACHED", "Daily priority limit reached")

        entry = PriorityLog(
            salon_id=salon.id,
            booking_id=booking.id,
            customer_id=customer_id,
            customer_name=customer_name,
            triggered_by=actor.user_id,
            triggered_by_name=triggered_by_name,
            triggered_by_role=triggered_by_role,
            reason=reason,
            queue_position_before=position_before,
            assigned_staff_id=staff.id if staff else None,
            assigned_staff_name=staff.name if staff else None,
            created_at=now,
        )
        db.add(entry)
        record_transition(db, booking, "pending", "in-progress", actor, f"Priority: {reason}")
        db.commit()
    except QueueError:
        db.rollback()
        raise
    except Exception:
        db.rollback()
        log.error("priority_start_failed", salon_id=salon.id, booking_id=booking_id, exc_info=True)
        raise

    db.refresh(booking)
    db.refresh(salon)
    log.info(
        "priority_started",
        salon_id=salon.id,
        booking_id=booking.id,
        reason=reason,
        position_before=position_before,
        used_today=salon.priority_used_today,
    )

    fan_out_queue_change(db, broadcaster, salon.id, "priority_started", booking)
    try:
        notifications.notify_priority_started(notifier, booking.user, booking, salon, reason)
    except Exception:
        log.warning("priority_notification_failed", booking_id=booking.id, exc_info=True)
    return booking, entry


def list_priority_logs(db: Session, salon_id: int, limit: int = 50) -> list[PriorityLog]:
    return list(
        db.execute(
            select(PriorityLog)
            .where(PriorityLog.salon_id == salon_id)
            .order_by(PriorityLog.created_at.desc(), PriorityLog.id.desc())
            .limit(max(1, min(limit, 500)))
        ).scalars()
    )
