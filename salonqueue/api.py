from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from . import lifecycle, priority, salons
from .authn import Actor, get_actor, get_optional_actor
from .broadcast import Broadcaster, get_broadcaster
from .db import get_db
from .errors import QueueError
from .models import Booking, PriorityLog, Salon
from .notifications import PushNotifier, get_notifier
from .schemas import (
    ActiveBarbersIn,
    ArrivedIn,
    BookingOut,
    BookingServiceOut,
    BusyModeIn,
    CancelIn,
    CloseSalonIn,
    CloseSalonOut,
    JoinQueueIn,
    PriorityLogOut,
    PriorityStartIn,
    PriorityStartOut,
    PriorityUsageOut,
    QueueOut,
    SalonStateOut,
    ScheduleBookingIn,
    SkipIn,
    StartServiceIn,
    UndoSkipIn,
    WalkInIn,
)

queue_router = APIRouter(prefix="/api/queue", tags=["queue"])
bookings_router = APIRouter(prefix="/api/bookings", tags=["bookings"])
salons_router = APIRouter(prefix="/api/salons", tags=["salons"])


def _http_error(exc: QueueError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.as_dict())


def _to_booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        salon_id=b.salon_id,
        user_id=b.user_id,
        booking_type=b.booking_type,
        status=b.status,
        queue_position=b.queue_position,
        walk_in_token=b.walk_in_token,
        assigned_staff_id=b.assigned_staff_id,
        services=[
            BookingServiceOut(service_id=s.service_id, name=s.name, price=float(s.price or 0), duration=int(s.duration or 0))
            for s in b.services
        ],
        total_price=float(b.total_price or 0),
        total_duration=int(b.total_duration or 0),
        payment_method=b.payment_method,
        payment_status=b.payment_status,
        paid_amount=float(b.paid_amount or 0),
        arrived=bool(b.arrived),
        scheduled_date=b.scheduled_date,
        scheduled_time=b.scheduled_time,
        joined_at=b.joined_at,
        started_at=b.started_at,
        completed_at=b.completed_at,
        estimated_start_time=b.estimated_start_time,
        estimated_end_time=b.estimated_end_time,
        loyalty_points_earned=int(b.loyalty_points_earned or 0),
        notes=b.notes or "",
        cancellation_reason=b.cancellation_reason,
        skip_reason=b.skip_reason,
        original_position=b.original_position,
    )


def _to_priority_log_out(row: PriorityLog) -> PriorityLogOut:
    return PriorityLogOut(
        id=row.id,
        salon_id=row.salon_id,
        booking_id=row.booking_id,
        customer_id=row.customer_id,
        customer_name=row.customer_name,
        triggered_by=row.triggered_by,
        triggered_by_name=row.triggered_by_name,
        triggered_by_role=row.triggered_by_role,
        reason=row.reason,
        queue_position_before=row.queue_position_before,
        assigned_staff_id=row.assigned_staff_id,
        assigned_staff_name=row.assigned_staff_name,
        created_at=row.created_at,
    )


def _to_salon_state_out(s: Salon) -> SalonStateOut:
    return SalonStateOut(
        id=s.id,
        name=s.name,
        is_open=bool(s.is_open),
        is_active=bool(s.is_active),
        busy_mode=bool(s.busy_mode),
        operating_mode=s.operating_mode,
        total_barbers=int(s.total_barbers or 0),
        active_barbers=int(s.active_barbers or 0),
        last_closure_reason=s.last_closure_reason,
    )


@queue_router.get("/{salon_id}", response_model=QueueOut)
def get_queue(
    salon_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        snapshot = lifecycle.list_salon_queue(db, salon_id, actor=actor)
    except QueueError as exc:
        raise _http_error(exc)
    return QueueOut(
        salon_id=salon_id,
        queue_length=len(snapshot["in_progress"]) + len(snapshot["pending"]),
        in_progress=[_to_booking_out(b) for b in snapshot["in_progress"]],
        pending=[_to_booking_out(b) for b in snapshot["pending"]],
        skipped=[_to_booking_out(b) for b in snapshot["skipped"]],
    )


@queue_router.post("/{salon_id}/walk-in", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def add_walk_in(
    salon_id: int,
    payload: WalkInIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    try:
        booking = lifecycle.add_walk_in(
            db,
            salon_id,
            payload.service_ids,
            name=payload.name,
            phone=payload.phone,
            actor=actor,
            broadcaster=broadcaster,
            notifier=notifier,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.post("/{salon_id}/arrived", response_model=BookingOut)
def mark_arrived(
    salon_id: int,
    payload: ArrivedIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        booking = lifecycle.mark_arrived(db, salon_id, payload.booking_id, actor=actor, broadcaster=broadcaster)
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.post("/{salon_id}/start/{booking_id}", response_model=BookingOut)
def start_service(
    salon_id: int,
    booking_id: int,
    payload: Optional[StartServiceIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    staff_id = payload.assigned_staff_id if payload else None
    try:
        booking = lifecycle.start_service(
            db,
            salon_id,
            booking_id,
            staff_id=staff_id,
            actor=actor,
            broadcaster=broadcaster,
            notifier=notifier,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.post("/{salon_id}/complete/{booking_id}", response_model=BookingOut)
def complete_service(
    salon_id: int,
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    try:
        booking = lifecycle.complete_service(
            db, salon_id, booking_id, actor=actor, broadcaster=broadcaster, notifier=notifier
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.post("/{salon_id}/skip/{booking_id}", response_model=BookingOut)
def skip_booking(
    salon_id: int,
    booking_id: int,
    payload: SkipIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        booking = lifecycle.skip_booking(
            db, salon_id, booking_id, payload.reason, actor=actor, broadcaster=broadcaster
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.post("/{salon_id}/undo-skip/{booking_id}", response_model=BookingOut)
def undo_skip(
    salon_id: int,
    booking_id: int,
    payload: Optional[UndoSkipIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    return_to_original = payload.return_to_original if payload else True
    try:
        booking = lifecycle.undo_skip_booking(
            db,
            salon_id,
            booking_id,
            return_to_original=return_to_original,
            actor=actor,
            broadcaster=broadcaster,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.post("/{salon_id}/cancel/{booking_id}", response_model=BookingOut)
def cancel_from_queue(
    salon_id: int,
    booking_id: int,
    payload: Optional[CancelIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    try:
        # salon-side cancellation uses the stricter queue permission
        lifecycle.authorize(actor, "queue.cancel", lifecycle.get_salon(db, salon_id))
        booking = lifecycle.cancel_booking(
            db,
            booking_id,
            reason=payload.reason if payload else None,
            actor=actor,
            salon_id=salon_id,
            broadcaster=broadcaster,
            notifier=notifier,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.post("/{salon_id}/no-show/{booking_id}", response_model=BookingOut)
def mark_no_show(
    salon_id: int,
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        booking = lifecycle.mark_no_show(db, salon_id, booking_id, actor=actor, broadcaster=broadcaster)
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@queue_router.get("/{salon_id}/priority-limit", response_model=PriorityUsageOut)
def get_priority_limit(
    salon_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        lifecycle.authorize(actor, "queue.priority", lifecycle.get_salon(db, salon_id))
        usage = priority.priority_usage(db, salon_id)
    except QueueError as exc:
        raise _http_error(exc)
    return PriorityUsageOut(**usage)


@queue_router.post("/{salon_id}/priority-start/{booking_id}", response_model=PriorityStartOut)
def start_priority(
    salon_id: int,
    booking_id: int,
    payload: PriorityStartIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    try:
        booking, log_row = priority.start_priority(
            db,
            salon_id,
            booking_id,
            payload.reason,
            actor,
            assigned_staff_id=payload.assigned_staff_id,
            broadcaster=broadcaster,
            notifier=notifier,
        )
        usage = priority.priority_usage(db, salon_id)
    except QueueError as exc:
        raise _http_error(exc)
    return PriorityStartOut(
        booking=_to_booking_out(booking),
        log=_to_priority_log_out(log_row),
        usage=PriorityUsageOut(**usage),
    )


@queue_router.get("/{salon_id}/priority-logs", response_model=List[PriorityLogOut])
def get_priority_logs(
    salon_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        lifecycle.authorize(actor, "queue.priority", lifecycle.get_salon(db, salon_id))
    except QueueError as exc:
        raise _http_error(exc)
    return [_to_priority_log_out(row) for row in priority.list_priority_logs(db, salon_id, limit=limit)]


@queue_router.get("/{salon_id}/wait-time", response_model=dict)
def get_queue_wait_time(
    salon_id: int,
    db: Session = Depends(get_db),
    actor: Optional[Actor] = Depends(get_optional_actor),
):
    try:
        estimate = salons.get_salon_wait_time(db, salon_id, user_id=actor.user_id if actor else None)
    except QueueError as exc:
        raise _http_error(exc)
    return {"salonId": salon_id, "waitTime": estimate.to_dict()}


@bookings_router.post("/join", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def join_queue(
    payload: JoinQueueIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    try:
        booking = lifecycle.join_queue(
            db,
            actor,
            payload.salon_id,
            payload.service_ids,
            notes=payload.notes,
            payment_method=payload.payment_method,
            broadcaster=broadcaster,
            notifier=notifier,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@bookings_router.post("/schedule", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def schedule_booking(
    payload: ScheduleBookingIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        booking = lifecycle.schedule_booking(
            db,
            actor,
            payload.salon_id,
            payload.service_ids,
            payload.scheduled_date,
            payload.scheduled_time,
            notes=payload.notes,
            broadcaster=broadcaster,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@bookings_router.get("/my-bookings", response_model=List[BookingOut])
def my_bookings(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    rows = lifecycle.list_user_bookings(db, actor.user_id, status=status_filter, limit=limit)
    return [_to_booking_out(b) for b in rows]


@bookings_router.get("/{booking_id}", response_model=BookingOut)
def get_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        booking = lifecycle.get_booking(db, booking_id, actor=actor)
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@bookings_router.put("/{booking_id}/cancel", response_model=BookingOut)
def cancel_booking(
    booking_id: int,
    payload: Optional[CancelIn] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    try:
        booking = lifecycle.cancel_booking(
            db,
            booking_id,
            reason=payload.reason if payload else None,
            actor=actor,
            broadcaster=broadcaster,
            notifier=notifier,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@salons_router.put("/{salon_id}/close", response_model=CloseSalonOut)
def close_salon(
    salon_id: int,
    payload: CloseSalonIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
    notifier: PushNotifier = Depends(get_notifier),
):
    try:
        result = salons.close_salon(
            db,
            salon_id,
            payload.reason,
            custom_reason=payload.custom_reason,
            actor=actor,
            broadcaster=broadcaster,
            notifier=notifier,
        )
    except QueueError as exc:
        raise _http_error(exc)
    return CloseSalonOut(
        salon=_to_salon_state_out(result["salon"]),
        queue_size_at_closure=result["queue_size_at_closure"],
        notifications_sent=result["notifications_sent"],
    )


@salons_router.put("/{salon_id}/open", response_model=SalonStateOut)
def reopen_salon(
    salon_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        salon = salons.reopen_salon(db, salon_id, actor=actor, broadcaster=broadcaster)
    except QueueError as exc:
        raise _http_error(exc)
    return _to_salon_state_out(salon)


@salons_router.put("/{salon_id}/busy-mode", response_model=SalonStateOut)
def set_busy_mode(
    salon_id: int,
    payload: BusyModeIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        salon = salons.set_busy_mode(db, salon_id, payload.enabled, actor=actor, broadcaster=broadcaster)
    except QueueError as exc:
        raise _http_error(exc)
    return _to_salon_state_out(salon)


@salons_router.put("/{salon_id}/active-barbers", response_model=SalonStateOut)
def update_active_barbers(
    salon_id: int,
    payload: ActiveBarbersIn,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
    broadcaster: Broadcaster = Depends(get_broadcaster),
):
    try:
        salon = salons.update_active_barbers(
            db, salon_id, payload.active_barbers, actor=actor, broadcaster=broadcaster
        )
    except QueueError as exc:
        raise _http_error(exc)
    return _to_salon_state_out(salon)


@salons_router.post("/{salon_id}/sync-staff", response_model=SalonStateOut)
def sync_staff(
    salon_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_actor),
):
    try:
        salon = salons.sync_staff_counts(db, salon_id, actor=actor)
    except QueueError as exc:
        raise _http_error(exc)
    return _to_salon_state_out(salon)


@salons_router.get("/{salon_id}/wait-time", response_model=dict)
def get_salon_wait_time(
    salon_id: int,
    db: Session = Depends(get_db),
    actor: Optional[Actor] = Depends(get_optional_actor),
):
    try:
        estimate = salons.get_salon_wait_time(db, salon_id, user_id=actor.user_id if actor else None)
    except QueueError as exc:
        raise _http_error(exc)
    return {"salonId": salon_id, "waitTime": estimate.to_dict()}
