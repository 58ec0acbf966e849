import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import notifications
from .authn import Actor
from .broadcast import Broadcaster, publish_wait_times, safe_emit_to_room
from .errors import ValidationFailed
from .ledger import active_queue
from .lifecycle import authorize, get_salon
from .models import Salon, SalonClosure, Staff, utc_now_naive
from .waittime import WaitEstimate, estimate_for_salon

log = structlog.get_logger("salonqueue.salons")


def close_salon(
    db: Session,
    salon_id: int,
    reason: str,
    custom_reason: str | None = None,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
    notifier=None,
) -> dict:
    salon = get_salon(db, salon_id)
    authorize(actor, "salon.manage", salon)
    reason = (reason or "").strip()
    if not reason:
        raise ValidationFailed("REASON_REQUIRED", "Closure reason is required")
    custom_reason = (custom_reason or "").strip() or None
    if reason == "custom" and not custom_reason:
        raise ValidationFailed("REASON_REQUIRED", "A custom closure reason is required")
    label = custom_reason if reason == "custom" else reason

    queue = active_queue(db, salon.id)
    salon.operating_mode = "closed"
    salon.is_open = False
    salon.is_active = False
    salon.last_closure_reason = label
    closure = SalonClosure(
        salon_id=salon.id,
        reason=reason,
        custom_reason=custom_reason if reason == "custom" else None,
        queue_size_at_closure=len(queue),
        closed_at=utc_now_naive(),
    )
    db.add(closure)
    db.commit()
    log.info("salon_closed", salon_id=salon.id, reason=label, queue_size=len(queue))

    notified = 0
    for booking in queue:
        try:
            if notifications.notify_salon_closed(notifier, booking.user, booking, salon, label):
                notified += 1
        except Exception:
            log.warning("closure_notification_failed", booking_id=booking.id, exc_info=True)

    safe_emit_to_room(
        broadcaster,
        salon.id,
        "salon_closed",
        {"salonId": salon.id, "reason": label, "queueSize": len(queue)},
    )
    publish_wait_times(db, broadcaster, salon.id)
    return {"salon": salon, "queue_size_at_closure": len(queue), "notifications_sent": notified}


def reopen_salon(
    db: Session,
    salon_id: int,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
) -> Salon:
    salon = get_salon(db, salon_id)
    authorize(actor, "salon.manage", salon)
    salon.is_open = True
    salon.is_active = True
    salon.operating_mode = "busy" if salon.busy_mode else "normal"
    last = db.execute(
        select(SalonClosure)
        .where(SalonClosure.salon_id == salon.id, SalonClosure.reopened_at.is_(None))
        .order_by(SalonClosure.closed_at.desc(), SalonClosure.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if last is not None:
        last.reopened_at = utc_now_naive()
    db.commit()
    db.refresh(salon)
    log.info("salon_reopened", salon_id=salon.id)

    safe_emit_to_room(broadcaster, salon.id, "salon_opened", {"salonId": salon.id})
    publish_wait_times(db, broadcaster, salon.id)
    return salon


def set_busy_mode(
    db: Session,
    salon_id: int,
    enabled: bool,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
) -> Salon:
    salon = get_salon(db, salon_id)
    authorize(actor, "salon.manage", salon)
    salon.busy_mode = bool(enabled)
    salon.operating_mode = "busy" if enabled else "normal"
    salon.is_open = True
    salon.is_active = True
    db.commit()
    db.refresh(salon)
    log.info("busy_mode_changed", salon_id=salon.id, busy_mode=salon.busy_mode)

    safe_emit_to_room(broadcaster, salon.id, "busy_mode_changed", {"salonId": salon.id, "busyMode": salon.busy_mode})
    publish_wait_times(db, broadcaster, salon.id)
    return salon


def update_active_barbers(
    db: Session,
    salon_id: int,
    active_barbers: int,
    actor: Actor | None = None,
    broadcaster: Broadcaster | None = None,
) -> Salon:
    salon = get_salon(db, salon_id)
    authorize(actor, "salon.manage", salon)
    try:
        value = int(active_barbers)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed("INVALID_ACTIVE_BARBERS", "Active barbers must be a number") from exc
    if value < 0 or value > int(salon.total_barbers or 0):
        raise ValidationFailed(
            "INVALID_ACTIVE_BARBERS",
            f"Active barbers must be between 0 and {salon.total_barbers}",
        )
    salon.active_barbers = value
    db.commit()
    db.refresh(salon)
    log.info("active_barbers_updated", salon_id=salon.id, active_barbers=value)

    safe_emit_to_room(
        broadcaster, salon.id, "barbers_updated", {"salonId": salon.id, "activeBarbers": value}
    )
    publish_wait_times(db, broadcaster, salon.id)
    return salon


def sync_staff_counts(db: Session, salon_id: int, actor: Actor | None = None) -> Salon:
    """Derive barber capacity from the staff roster."""
    salon = get_salon(db, salon_id)
    authorize(actor, "salon.manage", salon)
    total = db.execute(
        select(func.count(Staff.id)).where(Staff.salon_id == salon.id, Staff.is_active.is_(True))
    ).scalar_one()
    available = db.execute(
        select(func.count(Staff.id)).where(
            Staff.salon_id == salon.id,
            Staff.is_active.is_(True),
            Staff.is_available.is_(True),
        )
    ).scalar_one()
    salon.total_barbers = max(1, int(total or 0))
    salon.active_barbers = min(salon.total_barbers, max(1, int(available or 0)))
    db.commit()
    db.refresh(salon)
    log.info("staff_counts_synced", salon_id=salon.id, total=salon.total_barbers, active=salon.active_barbers)
    return salon


def get_salon_wait_time(db: Session, salon_id: int, user_id: int | None = None) -> WaitEstimate:
    return estimate_for_salon(db, salon_id, user_id=user_id)
