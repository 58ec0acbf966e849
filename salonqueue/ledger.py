import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .authn import Actor
from .errors import ConflictError, ValidationFailed, booking_not_found, salon_not_found
from .models import ACTIVE_STATUSES, Booking, BookingStatusEvent, Salon, utc_now_naive
from .policy import enforce
from .waittime import entry_from_booking, project_estimates, snapshot_from_salon

log = structlog.get_logger("salonqueue.ledger")


def _in_queue(salon_id: int):
    # a pending scheduled booking has no position until it arrives
    return (
        Booking.salon_id == salon_id,
        Booking.status.in_(ACTIVE_STATUSES),
        Booking.queue_position.is_not(None),
    )


def active_queue(db: Session, salon_id: int) -> list[Booking]:
    return list(
        db.execute(
            select(Booking)
            .where(*_in_queue(salon_id))
            .order_by(Booking.queue_position.asc(), Booking.joined_at.asc(), Booking.id.asc())
        ).scalars()
    )


def skipped_bookings(db: Session, salon_id: int) -> list[Booking]:
    return list(
        db.execute(
            select(Booking)
            .where(Booking.salon_id == salon_id, Booking.status == "skipped")
            .order_by(Booking.skipped_at.asc(), Booking.id.asc())
        ).scalars()
    )


def queue_snapshot(db: Session, salon_id: int) -> dict[str, list[Booking]]:
    active = active_queue(db, salon_id)
    return {
        "in_progress": [b for b in active if b.status == "in-progress"],
        "pending": [b for b in active if b.status == "pending"],
        "skipped": skipped_bookings(db, salon_id),
    }


def active_count(db: Session, salon_id: int) -> int:
    return int(db.execute(select(func.count(Booking.id)).where(*_in_queue(salon_id))).scalar_one())


def in_progress_count(db: Session, salon_id: int) -> int:
    return int(
        db.execute(
            select(func.count(Booking.id)).where(
                Booking.salon_id == salon_id,
                Booking.status == "in-progress",
            )
        ).scalar_one()
    )


def next_position(db: Session, salon_id: int, include_skipped: bool = False) -> int:
    statuses = list(ACTIVE_STATUSES) + (["skipped"] if include_skipped else [])
    current = db.execute(
        select(func.max(Booking.queue_position)).where(
            Booking.salon_id == salon_id,
            Booking.status.in_(statuses),
        )
    ).scalar_one()
    return int(current or 0) + 1


def salons_with_active_queues(db: Session) -> list[int]:
    rows = db.execute(
        select(Booking.salon_id)
        .where(Booking.status.in_(ACTIVE_STATUSES), Booking.queue_position.is_not(None))
        .distinct()
        .order_by(Booking.salon_id.asc())
    ).scalars()
    return [int(salon_id) for salon_id in rows]


def record_transition(
    db: Session,
    booking: Booking,
    from_status: str | None,
    to_status: str,
    actor: Actor | None = None,
    note: str | None = None,
) -> None:
    db.add(
        BookingStatusEvent(
            booking_id=booking.id,
            salon_id=booking.salon_id,
            from_status=from_status,
            to_status=to_status,
            actor=actor.label if actor else None,
            note=note[:300] if note else None,
            created_at=utc_now_naive(),
        )
    )


def append_note(existing: str | None, line: str) -> str:
    existing = (existing or "").strip()
    return f"{existing}\n{line}" if existing else line


def reorder(db: Session, salon_id: int, now=None) -> int:
    """Renumber the salon's active queue to 1..N and refresh advisory estimates.

    Returns how many positions changed.
    """
    now = now or utc_now_naive()
    bookings = active_queue(db, salon_id)
    changed = 0
    for idx, booking in enumerate(bookings, start=1):
        if booking.queue_position != idx:
            booking.queue_position = idx
            changed += 1

    salon = db.get(Salon, salon_id)
    if salon is not None and bookings:
        projections = project_estimates(
            snapshot_from_salon(salon), [entry_from_booking(b) for b in bookings], now=now
        )
        for booking in bookings:
            start, end = projections.get(booking.id, (None, None))
            if booking.estimated_start_time != start:
                booking.estimated_start_time = start
            if booking.estimated_end_time != end:
                booking.estimated_end_time = end

    db.commit()
    log.info("queue_reordered", salon_id=salon_id, size=len(bookings), changed=changed)
    return changed


def reorder_quietly(db: Session, salon_id: int) -> None:
    try:
        reorder(db, salon_id)
    except Exception:
        db.rollback()
        log.warning("queue_reorder_failed", salon_id=salon_id, exc_info=True)


def _load_salon_booking(db: Session, salon_id: int, booking_id: int, actor: Actor | None, action: str) -> Booking:
    salon = db.get(Salon, salon_id)
    if salon is None:
        raise salon_not_found()
    if actor is not None:
        enforce(actor, action, salon=salon)
    booking = db.get(Booking, booking_id)
    if booking is None or booking.salon_id != salon_id:
        raise booking_not_found()
    return booking


def skip(db: Session, salon_id: int, booking_id: int, reason: str, actor: Actor | None = None) -> Booking:
    booking = _load_salon_booking(db, salon_id, booking_id, actor, "queue.skip")
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("REASON_REQUIRED", "A reason is required to skip a booking")
    if booking.status != "pending" or booking.queue_position is None:
        raise ConflictError("INVALID_BOOKING_STATUS", f"Cannot skip a booking that is {booking.status}")

    original = booking.queue_position
    new_position = next_position(db, salon_id, include_skipped=True)
    now = utc_now_naive()
    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == "pending")
        .values(
            status="skipped",
            original_position=original,
            queue_position=new_position,
            skipped_at=now,
            skip_reason=reason,
            notes=append_note(booking.notes, f"Skipped: {reason}"),
            estimated_start_time=None,
            estimated_end_time=None,
            updated_at=now,
        )
        .execution_options(synchronize_session="fetch")
    )
    if int(result.rowcount or 0) != 1:
        db.rollback()
        raise ConflictError("INVALID_BOOKING_STATUS", "Booking is no longer pending")
    record_transition(db, booking, "pending", "skipped", actor, reason)
    db.commit()
    log.info("booking_skipped", salon_id=salon_id, booking_id=booking.id, original_position=original)

    reorder_quietly(db, salon_id)
    db.refresh(booking)
    return booking


def undo_skip(
    db: Session,
    salon_id: int,
    booking_id: int,
    return_to_original: bool = True,
    actor: Actor | None = None,
) -> Booking:
    booking = _load_salon_booking(db, salon_id, booking_id, actor, "queue.undo_skip")
    if booking.status != "skipped":
        raise ConflictError("INVALID_BOOKING_STATUS", "Only skipped bookings can be restored")

    original = booking.original_position
    if return_to_original and original:
        db.execute(
            update(Booking)
            .where(*_in_queue(salon_id), Booking.queue_position >= original)
            .values(queue_position=Booking.queue_position + 1)
            .execution_options(synchronize_session="fetch")
        )
        target = original
    else:
        target = next_position(db, salon_id)

    result = db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == "skipped")
        .values(
            status="pending",
            queue_position=target,
            original_position=None,
            skipped_at=None,
            skip_reason=None,
            updated_at=utc_now_naive(),
        )
        .execution_options(synchronize_session="fetch")
    )
    if int(result.rowcount or 0) != 1:
        db.rollback()
        raise ConflictError("INVALID_BOOKING_STATUS", "Booking is no longer skipped")
    record_transition(db, booking, "skipped", "pending", actor, "restored" if target == original else "appended")
    db.commit()
    log.info("booking_skip_undone", salon_id=salon_id, booking_id=booking.id, position=target)

    reorder_quietly(db, salon_id)
    db.refresh(booking)
    return booking
