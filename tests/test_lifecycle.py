import random
import re
from datetime import timedelta

import pytest

from salonqueue import lifecycle
from salonqueue.broadcast import InMemoryBroadcaster
from salonqueue.errors import ConflictError, ForbiddenError, NotFoundError, ValidationFailed
from salonqueue.ledger import active_queue
from salonqueue.models import Booking, BookingStatusEvent, Salon, Staff, User, utc_now_naive


class ExplodingBroadcaster(InMemoryBroadcaster):
    def emit_to_room(self, salon_id, event, payload):
        raise ConnectionError("socket gateway down")

    def emit_to_client(self, client_id, event, payload):
        raise ConnectionError("socket gateway down")

    def room_members(self, salon_id):
        raise ConnectionError("socket gateway down")


def _update_salon(db, salon_id, **fields):
    salon = db.get(Salon, salon_id)
    for key, value in fields.items():
        setattr(salon, key, value)
    db.commit()


def _join(db, seed, actor=None, services=None, **kwargs):
    return lifecycle.join_queue(
        db,
        actor or seed.customer,
        seed.salon_id,
        services or [seed.haircut_id, seed.beard_id],
        **kwargs,
    )


def _walk_in(db, seed, seed_value=1, **kwargs):
    return lifecycle.add_walk_in(
        db,
        seed.salon_id,
        [seed.haircut_id],
        actor=seed.staff,
        rng=random.Random(seed_value),
        **kwargs,
    )


def _contiguous(db, salon_id):
    db.expire_all()
    positions = [b.queue_position for b in active_queue(db, salon_id)]
    return positions == list(range(1, len(positions) + 1))


def test_join_appends_priced_booking_and_fans_out(db, seed, broadcaster, notifier):
    booking = _join(db, seed, broadcaster=broadcaster, notifier=notifier, payment_method="UPI")

    assert booking.status == "pending"
    assert booking.queue_position == 1
    assert booking.booking_type == "immediate"
    assert booking.total_price == 300
    assert booking.total_duration == 45
    assert booking.payment_method == "upi"
    assert [s.name for s in booking.services] == ["Haircut", "Beard Trim"]
    assert broadcaster.events("queue_updated")[0]["payload"]["action"] == "joined"
    assert broadcaster.events("wait_time_updated")
    assert notifier.titles() == ["Queue Update"]
    assert db.query(BookingStatusEvent).filter_by(booking_id=booking.id, to_status="pending").count() == 1

    second = _join(db, seed, actor=seed.customer2, services=[seed.beard_id])
    assert second.queue_position == 2


def test_join_rejects_second_active_booking(db, seed):
    _join(db, seed)

    with pytest.raises(ConflictError) as exc_info:
        _join(db, seed)

    assert exc_info.value.code == "DUPLICATE_BOOKING"


def test_pending_scheduled_booking_blocks_immediate_join(db, seed):
    tomorrow = utc_now_naive().date() + timedelta(days=1)
    lifecycle.schedule_booking(db, seed.customer, seed.salon_id, [seed.haircut_id], tomorrow.isoformat(), "09:30")

    with pytest.raises(ConflictError) as exc_info:
        _join(db, seed)

    assert exc_info.value.code == "DUPLICATE_BOOKING"
    assert active_queue(db, seed.salon_id) == []


def test_arrival_refused_while_customer_already_in_queue(db, seed):
    joined = _join(db, seed)
    tomorrow = utc_now_naive().date() + timedelta(days=1)
    scheduled = lifecycle.schedule_booking(
        db, seed.customer, seed.salon_id, [seed.haircut_id], tomorrow.isoformat(), "10:00"
    )

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.mark_arrived(db, seed.salon_id, scheduled.id, actor=seed.staff)

    assert exc_info.value.code == "DUPLICATE_BOOKING"
    db.expire_all()
    mine = [b.id for b in active_queue(db, seed.salon_id) if b.user_id == seed.customer_id]
    assert mine == [joined.id]
    assert db.get(Booking, scheduled.id).queue_position is None


def test_phone_walk_in_refused_for_customer_already_in_queue(db, seed):
    _join(db, seed)

    with pytest.raises(ConflictError) as exc_info:
        _walk_in(db, seed, phone="9000000010")

    assert exc_info.value.code == "DUPLICATE_BOOKING"
    assert len(active_queue(db, seed.salon_id)) == 1


def test_unknown_booking_status_is_rejected_by_the_model():
    with pytest.raises(ValueError):
        Booking(salon_id=1, status="done")


def test_join_allowed_again_after_previous_booking_finishes(db, seed):
    first = _join(db, seed)
    lifecycle.cancel_booking(db, first.id, actor=seed.customer)

    again = _join(db, seed)

    assert again.queue_position == 1


def test_join_requires_open_salon(db, seed):
    _update_salon(db, seed.salon_id, is_open=False)
    with pytest.raises(ConflictError) as exc_info:
        _join(db, seed)
    assert exc_info.value.code == "SALON_CLOSED"

    _update_salon(db, seed.salon_id, is_open=True, is_active=False)
    with pytest.raises(ConflictError) as exc_info:
        _join(db, seed)
    assert exc_info.value.code == "SALON_INACTIVE"


def test_busy_mode_blocks_joins_but_not_walk_ins(db, seed):
    _update_salon(db, seed.salon_id, busy_mode=True, operating_mode="busy")

    with pytest.raises(ConflictError) as exc_info:
        _join(db, seed)
    assert exc_info.value.code == "SALON_BUSY"

    walk_in = _walk_in(db, seed)
    assert walk_in.queue_position == 1


def test_join_validates_services(db, seed, seed_other):
    with pytest.raises(ValidationFailed) as exc_info:
        lifecycle.join_queue(db, seed.customer, seed.salon_id, [])
    assert exc_info.value.code == "SERVICES_REQUIRED"

    with pytest.raises(NotFoundError) as exc_info:
        lifecycle.join_queue(db, seed.customer, seed.salon_id, [seed_other.haircut_id])
    assert exc_info.value.code == "SERVICE_NOT_FOUND"


def test_join_rejected_when_queue_is_full(db, seed, add_booking):
    _update_salon(db, seed.salon_id, max_queue_size=2)
    add_booking(seed.salon_id, 1)
    add_booking(seed.salon_id, 2)

    with pytest.raises(ConflictError) as exc_info:
        _join(db, seed)

    assert exc_info.value.code == "QUEUE_FULL"


def test_join_unknown_salon(db, seed):
    with pytest.raises(NotFoundError) as exc_info:
        lifecycle.join_queue(db, seed.customer, 9999, [seed.haircut_id])
    assert exc_info.value.code == "SALON_NOT_FOUND"


def test_anonymous_walk_in_gets_token(db, seed, broadcaster):
    booking = _walk_in(db, seed, name="Ravi", broadcaster=broadcaster)

    assert re.match(r"^[A-Z][0-9]{2}$", booking.walk_in_token)
    assert booking.user_id is None
    assert booking.arrived is True
    assert booking.notes == "Walk-in: Ravi"
    assert broadcaster.events("queue_updated")[0]["payload"]["action"] == "walk_in"


def test_walk_in_with_phone_links_customer_account(db, seed, notifier):
    known = _walk_in(db, seed, phone="9000000010", notifier=notifier)
    fresh = _walk_in(db, seed, seed_value=2, name="Priya", phone="9123456789")

    assert known.user_id == seed.customer_id
    assert known.walk_in_token is None
    assert notifier.titles() == ["Queue Update"]
    created = db.get(User, fresh.user_id)
    assert created.name == "Priya"
    assert created.phone == "9123456789"
    assert fresh.walk_in_token is None


def test_short_phone_is_treated_as_anonymous(db, seed):
    booking = _walk_in(db, seed, phone="12345")

    assert booking.user_id is None
    assert booking.walk_in_token is not None


def test_customers_cannot_add_walk_ins(db, seed):
    with pytest.raises(ForbiddenError) as exc_info:
        lifecycle.add_walk_in(db, seed.salon_id, [seed.haircut_id], actor=seed.customer)

    assert exc_info.value.code == "INSUFFICIENT_PERMISSIONS"


def test_scheduled_booking_enters_queue_on_arrival(db, seed):
    walk_in = _walk_in(db, seed)
    tomorrow = utc_now_naive().date() + timedelta(days=1)
    booking = lifecycle.schedule_booking(
        db, seed.customer, seed.salon_id, [seed.haircut_id], tomorrow.isoformat(), "14:30"
    )

    assert booking.booking_type == "scheduled"
    assert booking.queue_position is None
    assert booking.scheduled_date == tomorrow

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.start_service(db, seed.salon_id, booking.id, actor=seed.staff)
    assert exc_info.value.code == "INVALID_BOOKING_STATUS"

    arrived = lifecycle.mark_arrived(db, seed.salon_id, booking.id, actor=seed.staff)
    assert arrived.arrived is True
    assert arrived.queue_position == 2
    assert walk_in.queue_position == 1

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.mark_arrived(db, seed.salon_id, booking.id, actor=seed.staff)
    assert exc_info.value.code == "ALREADY_ARRIVED"


@pytest.mark.parametrize(
    "day_offset,time_value",
    [(-1, "10:00"), (1, "25:00"), (1, "9am")],
)
def test_schedule_validation(db, seed, day_offset, time_value):
    day = utc_now_naive().date() + timedelta(days=day_offset)

    with pytest.raises(ValidationFailed) as exc_info:
        lifecycle.schedule_booking(db, seed.customer, seed.salon_id, [seed.haircut_id], day, time_value)

    assert exc_info.value.code == "INVALID_SCHEDULE"


def test_start_assigns_staff_and_blocks_double_booking(db, seed, notifier):
    first = _join(db, seed)
    second = _join(db, seed, actor=seed.customer2)

    started = lifecycle.start_service(
        db, seed.salon_id, first.id, staff_id=seed.alex_id, actor=seed.staff, notifier=notifier
    )

    assert started.status == "in-progress"
    assert started.started_at is not None
    assert started.assigned_staff_id == seed.alex_id
    assert db.get(Staff, seed.alex_id).total_bookings == 1
    assert "Service Started" in notifier.titles()

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.start_service(db, seed.salon_id, second.id, staff_id=seed.alex_id, actor=seed.staff)
    assert exc_info.value.code == "STAFF_BUSY"
    db.expire_all()
    assert db.get(Booking, second.id).status == "pending"

    other = lifecycle.start_service(db, seed.salon_id, second.id, staff_id=seed.bo_id, actor=seed.staff)
    assert other.assigned_staff_id == seed.bo_id


def test_conditional_start_refuses_when_staff_became_busy(db, seed):
    first = _walk_in(db, seed, seed_value=1)
    second = _walk_in(db, seed, seed_value=2)
    lifecycle.start_service(db, seed.salon_id, first.id, staff_id=seed.alex_id, actor=seed.staff)
    alex = db.get(Staff, seed.alex_id)

    # as if the availability check had run before the first start landed
    with pytest.raises(ConflictError) as exc_info:
        lifecycle.conditional_start(db, second, alex, utc_now_naive())

    assert exc_info.value.code == "STAFF_BUSY"
    db.expire_all()
    assert db.get(Booking, second.id).status == "pending"
    assert db.get(Booking, second.id).assigned_staff_id is None
    assert db.get(Staff, seed.alex_id).total_bookings == 1


def test_conditional_start_refuses_non_pending_booking(db, seed):
    booking = _walk_in(db, seed)
    lifecycle.start_service(db, seed.salon_id, booking.id, actor=seed.staff)

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.conditional_start(db, booking, None, utc_now_naive())

    assert exc_info.value.code == "INVALID_BOOKING_STATUS"


def test_start_checks_staff_record(db, seed, seed_other):
    booking = _walk_in(db, seed)

    with pytest.raises(NotFoundError) as exc_info:
        lifecycle.start_service(db, seed.salon_id, booking.id, staff_id=seed_other.alex_id, actor=seed.staff)
    assert exc_info.value.code == "STAFF_NOT_FOUND"

    alex = db.get(Staff, seed.alex_id)
    alex.is_active = False
    db.commit()
    with pytest.raises(ConflictError) as exc_info:
        lifecycle.start_service(db, seed.salon_id, booking.id, staff_id=seed.alex_id, actor=seed.staff)
    assert exc_info.value.code == "STAFF_INACTIVE"


def test_complete_settles_payment_loyalty_and_commission(db, seed, notifier):
    booking = _join(db, seed)
    lifecycle.start_service(db, seed.salon_id, booking.id, staff_id=seed.alex_id, actor=seed.staff)

    done = lifecycle.complete_service(db, seed.salon_id, booking.id, actor=seed.staff, notifier=notifier)

    assert done.status == "completed"
    assert done.completed_at is not None
    assert done.payment_status == "paid"
    assert done.paid_amount == 300
    assert done.loyalty_points_earned == 30
    customer = db.get(User, seed.customer_id)
    assert customer.loyalty_points == 30
    assert customer.total_bookings == 1
    alex = db.get(Staff, seed.alex_id)
    assert alex.completed_bookings == 1
    assert alex.total_revenue == 300
    assert alex.total_commission == 30
    assert "Service Completed" in notifier.titles()


def test_complete_is_not_repeatable(db, seed):
    booking = _join(db, seed)
    lifecycle.start_service(db, seed.salon_id, booking.id, staff_id=seed.bo_id, actor=seed.staff)
    lifecycle.complete_service(db, seed.salon_id, booking.id, actor=seed.staff)

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.complete_service(db, seed.salon_id, booking.id, actor=seed.staff)

    assert exc_info.value.code == "ALREADY_COMPLETED"
    db.expire_all()
    assert db.get(User, seed.customer_id).loyalty_points == 30
    bo = db.get(Staff, seed.bo_id)
    assert bo.completed_bookings == 1
    assert bo.total_commission == 50


def test_complete_requires_in_progress(db, seed):
    booking = _join(db, seed)

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.complete_service(db, seed.salon_id, booking.id, actor=seed.staff)

    assert exc_info.value.code == "INVALID_BOOKING_STATUS"


def test_completion_warns_next_customer(db, seed, notifier):
    first = _join(db, seed)
    _join(db, seed, actor=seed.customer2)
    lifecycle.start_service(db, seed.salon_id, first.id, actor=seed.staff)

    lifecycle.complete_service(db, seed.salon_id, first.id, actor=seed.staff, notifier=notifier)

    almost = [item for item in notifier.sent if item["title"] == "Almost Your Turn!"]
    assert [item["token"] for item in almost] == ["device-jordan"]


def test_customer_cancels_own_booking(db, seed, notifier):
    first = _join(db, seed)
    second = _join(db, seed, actor=seed.customer2)

    cancelled = lifecycle.cancel_booking(db, first.id, actor=seed.customer, notifier=notifier)

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "User cancelled"
    assert notifier.titles() == []
    db.expire_all()
    assert db.get(Booking, second.id).queue_position == 1

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.cancel_booking(db, first.id, actor=seed.customer)
    assert exc_info.value.code == "ALREADY_CANCELLED"


def test_salon_cancellation_notifies_customer(db, seed, notifier):
    booking = _join(db, seed)

    cancelled = lifecycle.cancel_booking(db, booking.id, actor=seed.manager, salon_id=seed.salon_id, notifier=notifier)

    assert cancelled.cancellation_reason == "Cancelled by salon"
    assert notifier.titles() == ["Booking Cancelled"]


def test_cancel_guards(db, seed, seed_other):
    booking = _join(db, seed)

    with pytest.raises(ForbiddenError):
        lifecycle.cancel_booking(db, booking.id, actor=seed.customer2)
    with pytest.raises(NotFoundError):
        lifecycle.cancel_booking(db, booking.id, actor=seed.owner, salon_id=seed_other.salon_id)

    lifecycle.start_service(db, seed.salon_id, booking.id, actor=seed.staff)
    lifecycle.complete_service(db, seed.salon_id, booking.id, actor=seed.staff)
    with pytest.raises(ConflictError) as exc_info:
        lifecycle.cancel_booking(db, booking.id, actor=seed.customer)
    assert exc_info.value.code == "ALREADY_COMPLETED"


def test_skipped_booking_can_be_cancelled(db, seed):
    booking = _join(db, seed)
    lifecycle.skip_booking(db, seed.salon_id, booking.id, "Not present", actor=seed.owner)

    cancelled = lifecycle.cancel_booking(db, booking.id, actor=seed.owner)

    assert cancelled.status == "cancelled"


def test_no_show_leaves_queue(db, seed):
    first = _walk_in(db, seed, seed_value=1)
    second = _walk_in(db, seed, seed_value=2)

    gone = lifecycle.mark_no_show(db, seed.salon_id, first.id, actor=seed.manager)

    assert gone.status == "no-show"
    db.expire_all()
    assert db.get(Booking, second.id).queue_position == 1
    with pytest.raises(ConflictError):
        lifecycle.mark_no_show(db, seed.salon_id, first.id, actor=seed.manager)


def test_positions_stay_contiguous_through_mixed_operations(db, seed):
    walk_ins = [_walk_in(db, seed, seed_value=n) for n in range(1, 6)]
    joined = _join(db, seed)
    assert _contiguous(db, seed.salon_id)

    lifecycle.start_service(db, seed.salon_id, walk_ins[0].id, staff_id=seed.alex_id, actor=seed.staff)
    lifecycle.complete_service(db, seed.salon_id, walk_ins[0].id, actor=seed.staff)
    assert _contiguous(db, seed.salon_id)

    lifecycle.cancel_booking(db, walk_ins[2].id, actor=seed.owner, salon_id=seed.salon_id)
    assert _contiguous(db, seed.salon_id)

    lifecycle.skip_booking(db, seed.salon_id, walk_ins[3].id, "Outside", actor=seed.manager)
    assert _contiguous(db, seed.salon_id)

    lifecycle.mark_no_show(db, seed.salon_id, walk_ins[1].id, actor=seed.manager)
    assert _contiguous(db, seed.salon_id)

    lifecycle.undo_skip_booking(db, seed.salon_id, walk_ins[3].id, return_to_original=False, actor=seed.manager)
    assert _contiguous(db, seed.salon_id)

    lifecycle.cancel_booking(db, joined.id, actor=seed.customer)
    assert _contiguous(db, seed.salon_id)
    assert [b.id for b in active_queue(db, seed.salon_id)] == [walk_ins[4].id, walk_ins[3].id]


def test_broadcast_failure_does_not_undo_committed_change(db, seed):
    booking = _join(db, seed, broadcaster=ExplodingBroadcaster())

    db.expire_all()
    assert db.get(Booking, booking.id).status == "pending"
    started = lifecycle.start_service(
        db, seed.salon_id, booking.id, actor=seed.staff, broadcaster=ExplodingBroadcaster()
    )
    assert started.status == "in-progress"


class RoomDownBroadcaster(InMemoryBroadcaster):
    def emit_to_room(self, salon_id, event, payload):
        raise ConnectionError("room channel down")


def test_room_emit_failure_still_reaches_connected_clients(db, seed):
    gateway = RoomDownBroadcaster()
    gateway.join_room(seed.salon_id, "sock-casey", seed.customer_id)

    booking = _join(db, seed, broadcaster=gateway)

    assert booking.queue_position == 1
    client_events = [item for item in gateway.sent if item["target"] == "client"]
    assert [item["event"] for item in client_events] == ["wait_time_updated"]
    assert client_events[0]["payload"]["waitTime"]["status"] == "in-queue"


def test_notifier_failure_does_not_undo_committed_change(db, seed, failing_notifier):
    failing = failing_notifier
    booking = _join(db, seed, notifier=failing)
    lifecycle.start_service(db, seed.salon_id, booking.id, actor=seed.staff, notifier=failing)

    done = lifecycle.complete_service(db, seed.salon_id, booking.id, actor=seed.staff, notifier=failing)

    assert done.status == "completed"


def test_list_salon_queue_requires_salon_role(db, seed):
    _join(db, seed)

    with pytest.raises(ForbiddenError):
        lifecycle.list_salon_queue(db, seed.salon_id, actor=seed.customer)

    snapshot = lifecycle.list_salon_queue(db, seed.salon_id, actor=seed.staff)
    assert len(snapshot["pending"]) == 1
