import math
import random
import re
from datetime import date, datetime

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session, aliased

from . import ledger, notifications
from .authn import Actor
from .broadcast import Broadcaster, publish_queue_update, publish_wait_times
from .config import settings
from .errors import (
    ConflictError,
    NotFoundError,
    ValidationFailed,
    booking_not_found,
    salon_not_found,
    staff_not_found,
)
from .ledger import active_count, active_queue, next_position, queue_snapshot, record_transition, reorder_quietly
from .models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Booking,
    BookingService,
    Salon,
    SalonService,
    Staff,
    User,
    utc_now_naive,
)
from .policy import enforce
from .tokens import allocate_walk_in_token
from .waittime import estimate_for_salon, is_queue_full

log = structlog.get_logger("salonqueue.lifecycle")

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def authorize(actor: Actor | None, action: str, salon: Salon | None = None, booking: Booking | None = None) -> None:
    # internal callers (scripts, fan-out) act without an actor
    if actor is not None:
        enforce(actor, action, salon=salon, booking=booking)


def get_salon(db: Session, salon_id: int) -> Salon:
    salon = db.get(Salon, salon_id)
    if salon is None:
        raise salon_not_found()
    return salon


def get_salon_booking(db: Session, salon: Salon, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None or booking.salon_id != salon.id:
        raise booking_not_found()
    return booking


def _require_open(salon: Salon) -> None:
    if not salon.is_open:
        raise ConflictError("SALON_CLOSED", "Salon is currently closed")
    if not salon.is_active:
        raise ConflictError("SALON_INACTIVE", "Salon is not active")


def resolve_services(db: Session, salon: Salon, service_ids: list[int] | None) -> list[SalonService]:
    ids = [int(sid) for sid in (service_ids or [])]
    if not ids:
        raise ValidationFailed("SERVICES_REQUIRED", "At least one service is required")
    rows = {
        row.id: row
        for row in db.execute(
            select(SalonService).where(
                SalonService.salon_id == salon.id,
                SalonService.id.in_(ids),
                SalonService.is_active.is_(True),
            )
        ).scalars()
    }
    missing = [sid for sid in ids if sid not in rows]
    if missing:
        raise NotFoundError("SERVICE_NOT_FOUND", f"Service not found: {missing[0]}")
    return [rows[sid] for sid in ids]


def _build_booking(salon: Salon, services: list[SalonService], **fields) -> Booking:
    booking = Booking(salon_id=salon.id, **fields)
    total_price = 0.0
    total_duration = 0
    for idx, service in enumerate(services):
        price = float(service.price or 0)
        duration = int(service.duration or 0)
        booking.services.append(
            BookingService(service_id=service.id, name=service.name, price=price, duration=duration, position=idx)
        )
        total_price += price
        total_duration += duration
    booking.total_price = round(total_price, 2)
    booking.total_duration = total_duration
    return booking


def staff_is_busy(db: Session, staff_id: int, exclude_booking_id: int | None = None) -> bool:
    q = select(Booking.id).where(Booking.assigned_staff_id == staff_id, Booking.status == "in-progress")
    if exclude_booking_id is not None:
        q = q.where(Booking.id != exclude_booking_id)
    return db.execute(q.limit(1)).first() is not None


def _has_active_booking(
    db: Session,
    salon_id: int,
    user_id: int,
    exclude_booking_id: int | None = None,
    in_queue_only: bool = False,
) -> bool:
    q = select(Booking.id).where(
        Booking.user_id == user_id,
        Booking.salon_id == salon_id,
        Booking.status.in_(ACTIVE_STATUSES),
    )
    if exclude_booking_id is not None:
        q = q.where(Booking.id != exclude_booking_id)
    if in_queue_only:
        q = q.where(Booking.queue_position.is_not(None))
    return db.execute(q.limit(1)).first() is not None


def staff_for_assignment(db: Session, salon: Salon, staff_id: int | None) -> Staff | None:
    if staff_id is None:
        return None
    staff = db.get(Staff, staff_id)
    if staff is None or staff.salon_id != salon.id:
        raise staff_not_found()
    if not staff.is_active:
        raise ConflictError("STAFF_INACTIVE", f"{staff.name} is not active")
    if staff_is_busy(db, staff.id):
        raise ConflictError("STAFF_BUSY", f"{staff.name} is already serving another customer")
    return staff


def conditional_start(db: Session, booking: Booking, staff: Staff | None, now: datetime, notes: str | None = None) -> None:
    """pending -> in-progress as one guarded UPDATE.

    The write only lands while the booking is still pending and, when a staff
    member is given, while nobody else holds them in-progress. Does not commit.
    """
    values = {"status": "in-progress", "started_at": now, "updated_at": now}
    if notes is not None:
        values["notes"] = notes
    stmt = update(Booking).where(Booking.id == booking.id, Booking.status == "pending")
    if staff is not None:
        other = aliased(Booking)
        stmt = stmt.where(
            ~exists(
                select(other.id).where(
                    other.assigned_staff_id == staff.id,
                    other.status == "in-progress",
                )
            )
        )
        values["assigned_staff_id"] = staff.id
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if int(result.rowcount or 0) == 1:
        if staff is not None:
            db.execute(
                update(Staff)
                .where(Staff.id == staff.id)
                .values(total_bookings=Staff.total_bookings + 1)
                .execution_options(synchronize_session=False)
            )
        db.expire(booking)
        return

    db.rollback()
    if staff is not None and staff_is_busy(db, staff.id):
        raise ConflictError("STAFF_BUSY", f"{staff.name} is already serving another customer")
    raise ConflictError("INVALID_BOOKING_STATUS", "Booking is no longer pending")


def fan_out_queue_change(
    db: Session,
    broadcaster: Broadcaster | None,
    salon_id: int,
    action: str,
    booking: Booking | None = None,
) -> None:
    """Best-effort follow-up after a committed change: renumber, then tell clients."""
    reorder_quietly(db, salon_id)
    try:
        payload = {}
        if booking is not None:
            db.refresh(booking)
            payload = {"bookingId": booking.id, "status": booking.status, "queuePosition": booking.queue_position}
        publish_queue_update(db, broadcaster, salon_id, action, payload)
        publish_wait_times(db, broadcaster, salon_id)
    except Exception:
        db.rollback()
        log.warning("queue_fan_out_failed", salon_id=salon_id, action=action, exc_info=True)


def _notify_quietly(fn, *args) -> None:
    try:
        fn(*args)
    except Exception:
        log.warning("notification_dispatch_failed", notifier=getattr(fn, "__name__", str(fn)), exc_info=True)


def join_queue(
    db: Session,
    actor: Actor,
    salon_id: int,
    service_ids: list[int],
    notes: str | None = None,
    payment_method: str = "cash",
    broadcaster: Broadcaster | None = None,
    notifier=None,
    now: datetime | None = None,
) -> Booking:
    salon = get_salon(db, salon_id)
    _require_open(salon)
    if salon.busy_mode:
        raise ConflictError("SALON_BUSY", "Salon is only accepting walk-ins right now")
    services = resolve_services(db, salon, service_ids)

    if _has_active_booking(db, salon.id, actor.user_id):
        raise ConflictError("DUPLICATE_BOOKING", "You already have an active booking at this salon")

    if is_queue_full(active_count(db, salon.id), salon.active_barbers, salon.max_queue_size):
        raise ConflictError("QUEUE_FULL", "Queue is full, please try again later")

    now = now or utc_now_naive()
    booking = _build_booking(
        salon,
        services,
        user_id=actor.user_id,
        booking_type="immediate",
        payment_method=(payment_method or "cash").strip().lower(),
        queue_position=next_position(db, salon.id),
        joined_at=now,
        notes=(notes or "").strip(),
        status="pending",
    )
    db.add(booking)
    db.flush()
    record_transition(db, booking, None, "pending", actor, "joined")
    db.commit()
    db.refresh(booking)
    log.info("queue_joined", salon_id=salon.id, booking_id=booking.id, position=booking.queue_position)

    fan_out_queue_change(db, broadcaster, salon.id, "joined", booking)
    try:
        estimate = estimate_for_salon(db, salon.id, user_id=actor.user_id)
        wait_minutes = estimate.wait_minutes
    except Exception:
        log.warning("join_estimate_failed", booking_id=booking.id, exc_info=True)
        wait_minutes = None
    _notify_quietly(notifications.notify_queue_joined, notifier, booking.user, booking, salon, wait_minutes)
    return booking


def _parse_schedule(scheduled_date, scheduled_time: str, today: date) -> date:
    if isinstance(scheduled_date, str):
        try:
            scheduled_date = date.fromisoformat(scheduled_date.strip())
        except ValueError as exc:
            raise ValidationFailed("INVALID_SCHEDULE", "scheduled_date must be YYYY-MM-DD") from exc
    if not isinstance(scheduled_date, date):
        raise ValidationFailed("INVALID_SCHEDULE", "scheduled_date is required")
    if scheduled_date < today:
        raise ValidationFailed("INVALID_SCHEDULE", "Cannot schedule a booking in the past")
    if not _TIME_RE.match(str(scheduled_time or "").strip()):
        raise ValidationFailed("INVALID_SCHEDULE", "scheduled_time must be HH:MM")
    return scheduled_date


def schedule_booking(
    db: Session,
    actor: Actor,
    salon_id: int,
    service_ids: list[int],
    scheduled_date,
    scheduled_time: str,
    notes: str | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> Booking:
    salon = get_salon(db, salon_id)
    if not salon.is_active:
        raise ConflictError("SALON_INACTIVE", "Salon is not active")
    services = resolve_services(db, salon, service_ids)
    now = now or utc_now_naive()
    day = _parse_schedule(scheduled_date, scheduled_time, now.date())

    booking = _build_booking(
        salon,
        services,
        user_id=actor.user_id,
        booking_type="scheduled",
        scheduled_date=day,
        scheduled_time=str(scheduled_time).strip(),
        queue_position=None,
        joined_at=now,
        notes=(notes or "").strip(),
        status="pending",
    )
    db.add(booking)
    db.flush()
    record_transition(db, booking, None, "pending", actor, f"scheduled for {day.isoformat()} {booking.scheduled_time}")
    db.commit()
    db.refresh(booking)
    log.info("booking_scheduled", salon_id=salon.id, booking_id=booking.id, scheduled_date=day.isoformat())
    publish_queue_update(db, broadcaster, salon.id, "scheduled", {"bookingId": booking.id})
    return booking


def add_walk_in(
    db: Session,
    salon_id: int,
    service_ids: list[int],
    name: str | None = None,
    phone: str | None = None,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
    notifier=None,
    rng: random.Random | None = None,
    now: datetime | None = None,
) -> Booking:
    salon = get_salon(db, salon_id)
    authorize(actor, "queue.walk_in", salon)
    _require_open(salon)
    services = resolve_services(db, salon, service_ids)

    name = (name or "").strip() or None
    phone = (phone or "").strip()
    user = None
    token = None
    notes = ""
    if len(phone) >= int(settings.WALK_IN_PHONE_MIN_LENGTH):
        user = db.execute(select(User).where(User.phone == phone)).scalar_one_or_none()
        if user is None:
            user = User(name=name or "Walk-in Customer", phone=phone, role="customer")
            db.add(user)
            db.flush()
            log.info("walk_in_customer_created", user_id=user.id, phone=phone)
        elif _has_active_booking(db, salon.id, user.id, in_queue_only=True):
            raise ConflictError("DUPLICATE_BOOKING", "Customer already has a live entry in this queue")
    else:
        token = allocate_walk_in_token(db, salon.id, rng=rng)
        if name:
            notes = f"Walk-in: {name}"

    now = now or utc_now_naive()
    booking = _build_booking(
        salon,
        services,
        user_id=user.id if user else None,
        booking_type="immediate",
        queue_position=next_position(db, salon.id),
        joined_at=now,
        arrived=True,
        arrived_at=now,
        walk_in_token=token,
        notes=notes,
        status="pending",
    )
    db.add(booking)
    db.flush()
    record_transition(db, booking, None, "pending", actor, "walk-in")
    db.commit()
    db.refresh(booking)
    log.info(
        "walk_in_added",
        salon_id=salon.id,
        booking_id=booking.id,
        position=booking.queue_position,
        walk_in_token=token,
        linked_user=bool(user),
    )

    fan_out_queue_change(db, broadcaster, salon.id, "walk_in", booking)
    if user is not None:
        _notify_quietly(notifications.notify_queue_joined, notifier, user, booking, salon, None)
    return booking


def mark_arrived(
    db: Session,
    salon_id: int,
    booking_id: int,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> Booking:
    salon = get_salon(db, salon_id)
    authorize(actor, "queue.arrive", salon)
    booking = get_salon_booking(db, salon, booking_id)
    if booking.status != "pending":
        raise ConflictError("INVALID_BOOKING_STATUS", f"Cannot mark a {booking.status} booking as arrived")
    if booking.arrived:
        raise ConflictError("ALREADY_ARRIVED", "Customer is already marked as arrived")

    if booking.user_id is not None and _has_active_booking(
        db, salon.id, booking.user_id, exclude_booking_id=booking.id, in_queue_only=True
    ):
        raise ConflictError("DUPLICATE_BOOKING", "Customer already has a live entry in this queue")

    now = now or utc_now_naive()
    values = {"arrived": True, "arrived_at": now, "updated_at": now}
    if booking.queue_position is None:
        # scheduled bookings enter the live queue at the back on arrival
        values["queue_position"] = next_position(db, salon.id)
        values["joined_at"] = now
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == "pending", Booking.arrived.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        db.rollback()
        raise ConflictError("INVALID_BOOKING_STATUS", "Booking changed while marking arrival")
    record_transition(db, booking, "pending", "pending", actor, "arrived")
    db.commit()
    db.refresh(booking)
    log.info("booking_arrived", salon_id=salon.id, booking_id=booking.id, position=booking.queue_position)

    fan_out_queue_change(db, broadcaster, salon.id, "arrived", booking)
    return booking


def start_service(
    db: Session,
    salon_id: int,
    booking_id: int,
    staff_id: int | None = None,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
    notifier=None,
    now: datetime | None = None,
) -> Booking:
    salon = get_salon(db, salon_id)
    authorize(actor, "queue.start", salon)
    booking = get_salon_booking(db, salon, booking_id)
    if booking.status != "pending":
        raise ConflictError("INVALID_BOOKING_STATUS", f"Cannot start a booking that is {booking.status}")
    if booking.queue_position is None:
        raise ConflictError("INVALID_BOOKING_STATUS", "Scheduled customer has not arrived yet")
    staff = staff_for_assignment(db, salon, staff_id)

    now = now or utc_now_naive()
    conditional_start(db, booking, staff, now)
    record_transition(db, booking, "pending", "in-progress", actor, f"staff {staff.id}" if staff else None)
    db.commit()
    db.refresh(booking)
    log.info("booking_started", salon_id=salon.id, booking_id=booking.id, staff_id=booking.assigned_staff_id)

    fan_out_queue_change(db, broadcaster, salon.id, "started", booking)
    _notify_quietly(notifications.notify_booking_started, notifier, booking.user, booking, salon)
    return booking


def commission_for(staff: Staff, total_price: float) -> float:
    rate = float(staff.commission_rate or 0)
    if staff.commission_type == "percentage":
        return round(float(total_price) * rate / 100.0, 2)
    if staff.commission_type == "fixed":
        return round(rate, 2)
    return 0.0


def complete_service(
    db: Session,
    salon_id: int,
    booking_id: int,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
    notifier=None,
    now: datetime | None = None,
) -> Booking:
    salon = get_salon(db, salon_id)
    authorize(actor, "queue.complete", salon)
    booking = get_salon_booking(db, salon, booking_id)
    if booking.status == "completed":
        raise ConflictError("ALREADY_COMPLETED", "Booking is already completed")
    if booking.status != "in-progress":
        raise ConflictError("INVALID_BOOKING_STATUS", f"Cannot complete a booking that is {booking.status}")

    now = now or utc_now_naive()
    total = float(booking.total_price or 0)
    points = int(math.floor(total / 10))
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == "in-progress")
        .values(
            status="completed",
            completed_at=now,
            payment_status="paid",
            paid_amount=total,
            payment_date=now,
            loyalty_points_earned=points,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        db.rollback()
        raise ConflictError("ALREADY_COMPLETED", "Booking was completed by another request")

    if booking.user_id is not None:
        db.execute(
            update(User)
            .where(User.id == booking.user_id)
            .values(loyalty_points=User.loyalty_points + points, total_bookings=User.total_bookings + 1)
            .execution_options(synchronize_session=False)
        )
    if booking.assigned_staff_id is not None:
        staff = db.get(Staff, booking.assigned_staff_id)
        if staff is not None:
            db.execute(
                update(Staff)
                .where(Staff.id == staff.id)
                .values(
                    completed_bookings=Staff.completed_bookings + 1,
                    total_revenue=Staff.total_revenue + total,
                    total_commission=Staff.total_commission + commission_for(staff, total),
                )
                .execution_options(synchronize_session=False)
            )
    record_transition(db, booking, "in-progress", "completed", actor, f"paid {total:.2f}")
    db.commit()
    db.refresh(booking)
    log.info("booking_completed", salon_id=salon.id, booking_id=booking.id, loyalty_points=points, paid=total)

    fan_out_queue_change(db, broadcaster, salon.id, "completed", booking)
    _notify_quietly(notifications.notify_booking_completed, notifier, booking.user, booking, salon)
    _notify_next_in_line(db, salon, notifier)
    return booking


def _notify_next_in_line(db: Session, salon: Salon, notifier) -> None:
    try:
        head = next((b for b in active_queue(db, salon.id) if b.status == "pending"), None)
    except Exception:
        log.warning("next_in_line_lookup_failed", salon_id=salon.id, exc_info=True)
        return
    if head is not None:
        _notify_quietly(notifications.notify_almost_ready, notifier, head.user, head, salon)


def cancel_booking(
    db: Session,
    booking_id: int,
    reason: str | None = None,
    actor: Actor | None = None,
    salon_id: int | None = None,
    broadcaster: Broadcaster | None = None,
    notifier=None,
    now: datetime | None = None,
) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None or (salon_id is not None and booking.salon_id != salon_id):
        raise booking_not_found()
    salon = get_salon(db, booking.salon_id)
    authorize(actor, "booking.cancel", salon, booking)

    if booking.status == "completed":
        raise ConflictError("ALREADY_COMPLETED", "Cannot cancel a completed booking")
    if booking.status == "cancelled":
        raise ConflictError("ALREADY_CANCELLED", "Booking is already cancelled")
    if booking.status in TERMINAL_STATUSES:
        raise ConflictError("INVALID_BOOKING_STATUS", f"Cannot cancel a booking that is {booking.status}")

    by_customer = actor is not None and booking.user_id is not None and actor.user_id == booking.user_id
    reason = (reason or "").strip() or ("User cancelled" if by_customer else "Cancelled by salon")
    previous = booking.status
    now = now or utc_now_naive()
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == previous)
        .values(status="cancelled", cancellation_reason=reason[:300], updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        db.rollback()
        raise ConflictError("INVALID_BOOKING_STATUS", "Booking changed while cancelling")
    record_transition(db, booking, previous, "cancelled", actor, reason)
    db.commit()
    db.refresh(booking)
    log.info("booking_cancelled", salon_id=salon.id, booking_id=booking.id, by_customer=by_customer)

    fan_out_queue_change(db, broadcaster, salon.id, "cancelled", booking)
    if not by_customer:
        _notify_quietly(notifications.notify_booking_cancelled, notifier, booking.user, booking, salon)
    return booking


def mark_no_show(
    db: Session,
    salon_id: int,
    booking_id: int,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
    now: datetime | None = None,
) -> Booking:
    salon = get_salon(db, salon_id)
    authorize(actor, "queue.no_show", salon)
    booking = get_salon_booking(db, salon, booking_id)
    if booking.status not in ACTIVE_STATUSES:
        raise ConflictError("INVALID_BOOKING_STATUS", f"Cannot mark a {booking.status} booking as no-show")

    previous = booking.status
    now = now or utc_now_naive()
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == previous)
        .values(status="no-show", updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if int(result.rowcount or 0) != 1:
        db.rollback()
        raise ConflictError("INVALID_BOOKING_STATUS", "Booking changed while marking no-show")
    record_transition(db, booking, previous, "no-show", actor)
    db.commit()
    db.refresh(booking)
    log.info("booking_no_show", salon_id=salon.id, booking_id=booking.id)

    fan_out_queue_change(db, broadcaster, salon.id, "no_show", booking)
    return booking


def get_booking(db: Session, booking_id: int, actor: Actor | None = None) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise booking_not_found()
    if actor is not None:
        enforce(actor, "booking.view", salon=db.get(Salon, booking.salon_id), booking=booking)
    return booking


def list_user_bookings(db: Session, user_id: int, status: str | None = None, limit: int = 50) -> list[Booking]:
    q = select(Booking).where(Booking.user_id == user_id)
    if status:
        q = q.where(Booking.status == status.strip().lower())
    q = q.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(max(1, min(limit, 200)))
    return list(db.execute(q).scalars())


def list_salon_queue(db: Session, salon_id: int, actor: Actor | None = None) -> dict[str, list[Booking]]:
    salon = get_salon(db, salon_id)
    authorize(actor, "queue.view", salon)
    return queue_snapshot(db, salon.id)


def skip_booking(
    db: Session,
    salon_id: int,
    booking_id: int,
    reason: str,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
) -> Booking:
    booking = ledger.skip(db, salon_id, booking_id, reason, actor=actor)
    fan_out_queue_change(db, broadcaster, salon_id, "skipped", booking)
    return booking


def undo_skip_booking(
    db: Session,
    salon_id: int,
    booking_id: int,
    return_to_original: bool = True,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
) -> Booking:
    booking = ledger.undo_skip(db, salon_id, booking_id, return_to_original=return_to_original, actor=actor)
    fan_out_queue_change(db, broadcaster, salon_id, "skip_undone", booking)
    return booking
