import pytest

from salonqueue import ledger
from salonqueue.errors import ConflictError, ForbiddenError, ValidationFailed
from salonqueue.models import Booking, BookingStatusEvent


def _positions(db, salon_id):
    db.expire_all()
    return [(b.id, b.queue_position) for b in ledger.active_queue(db, salon_id)]


def test_reorder_closes_gaps_and_reports_changes(db, seed, add_booking):
    a = add_booking(seed.salon_id, 3)
    b = add_booking(seed.salon_id, 7)
    c = add_booking(seed.salon_id, 9)

    changed = ledger.reorder(db, seed.salon_id)

    assert changed == 3
    assert _positions(db, seed.salon_id) == [(a.id, 1), (b.id, 2), (c.id, 3)]
    assert ledger.reorder(db, seed.salon_id) == 0


def test_reorder_breaks_ties_by_join_time(db, seed, add_booking):
    late = add_booking(seed.salon_id, 2, joined_offset_seconds=30)
    early = add_booking(seed.salon_id, 2, joined_offset_seconds=0)
    head = add_booking(seed.salon_id, 1)

    ledger.reorder(db, seed.salon_id)

    assert _positions(db, seed.salon_id) == [(head.id, 1), (early.id, 2), (late.id, 3)]


def test_reorder_ignores_bookings_outside_the_live_queue(db, seed, add_booking):
    kept = add_booking(seed.salon_id, 4)
    skipped = add_booking(seed.salon_id, 9, status="skipped")
    done = add_booking(seed.salon_id, 2, status="completed")
    scheduled = add_booking(seed.salon_id, None)

    ledger.reorder(db, seed.salon_id)
    db.expire_all()

    assert db.get(Booking, kept.id).queue_position == 1
    assert db.get(Booking, skipped.id).queue_position == 9
    assert db.get(Booking, done.id).queue_position == 2
    assert db.get(Booking, scheduled.id).queue_position is None


def test_reorder_refreshes_advisory_estimates(db, seed, add_booking):
    serving = add_booking(seed.salon_id, 1, status="in-progress", duration=30, started_minutes_ago=10)
    waiting = add_booking(seed.salon_id, 2, duration=15)

    ledger.reorder(db, seed.salon_id)
    db.expire_all()
    serving = db.get(Booking, serving.id)
    waiting = db.get(Booking, waiting.id)

    assert serving.estimated_start_time == serving.started_at
    assert (serving.estimated_end_time - serving.started_at).total_seconds() == 30 * 60
    assert waiting.estimated_start_time is not None
    assert (waiting.estimated_end_time - waiting.estimated_start_time).total_seconds() == 15 * 60


def test_skip_moves_booking_behind_the_queue(db, seed, add_booking):
    bookings = [add_booking(seed.salon_id, pos) for pos in range(1, 5)]
    target = bookings[1]

    skipped = ledger.skip(db, seed.salon_id, target.id, "Not present", actor=seed.manager)

    assert skipped.status == "skipped"
    assert skipped.original_position == 2
    assert skipped.queue_position == 5
    assert skipped.skip_reason == "Not present"
    assert "Skipped: Not present" in skipped.notes
    remaining = [b.id for b in bookings if b.id != target.id]
    assert _positions(db, seed.salon_id) == [(bid, idx) for idx, bid in enumerate(remaining, start=1)]

    event = db.query(BookingStatusEvent).filter_by(booking_id=target.id, to_status="skipped").one()
    assert event.actor == f"manager:{seed.manager.user_id}"


def test_skip_requires_reason(db, seed, add_booking):
    booking = add_booking(seed.salon_id, 1)

    with pytest.raises(ValidationFailed) as exc_info:
        ledger.skip(db, seed.salon_id, booking.id, "   ", actor=seed.owner)

    assert exc_info.value.code == "REASON_REQUIRED"


def test_skip_only_pending_bookings(db, seed, add_booking):
    booking = add_booking(seed.salon_id, 1, status="in-progress", started_minutes_ago=3)

    with pytest.raises(ConflictError) as exc_info:
        ledger.skip(db, seed.salon_id, booking.id, "Not present", actor=seed.owner)

    assert exc_info.value.code == "INVALID_BOOKING_STATUS"


def test_skip_permission_checked_before_reason(db, seed, add_booking):
    booking = add_booking(seed.salon_id, 1)

    with pytest.raises(ForbiddenError):
        ledger.skip(db, seed.salon_id, booking.id, "", actor=seed.staff)

    db.expire_all()
    assert db.get(Booking, booking.id).status == "pending"


def test_undo_skip_restores_original_order(db, seed, add_booking):
    bookings = [add_booking(seed.salon_id, pos) for pos in range(1, 5)]
    before = _positions(db, seed.salon_id)

    ledger.skip(db, seed.salon_id, bookings[1].id, "Stepped out", actor=seed.owner)
    restored = ledger.undo_skip(db, seed.salon_id, bookings[1].id, return_to_original=True, actor=seed.owner)

    assert restored.status == "pending"
    assert restored.original_position is None
    assert restored.skipped_at is None
    assert restored.skip_reason is None
    assert _positions(db, seed.salon_id) == before


def test_undo_skip_can_append_to_the_end(db, seed, add_booking):
    bookings = [add_booking(seed.salon_id, pos) for pos in range(1, 5)]

    ledger.skip(db, seed.salon_id, bookings[0].id, "Stepped out", actor=seed.owner)
    restored = ledger.undo_skip(db, seed.salon_id, bookings[0].id, return_to_original=False, actor=seed.owner)

    assert restored.queue_position == 4
    assert [bid for bid, _ in _positions(db, seed.salon_id)] == [b.id for b in bookings[1:]] + [bookings[0].id]


def test_undo_skip_rejects_non_skipped_booking(db, seed, add_booking):
    booking = add_booking(seed.salon_id, 1)

    with pytest.raises(ConflictError) as exc_info:
        ledger.undo_skip(db, seed.salon_id, booking.id, actor=seed.owner)

    assert exc_info.value.code == "INVALID_BOOKING_STATUS"


def test_next_position_and_counts(db, seed, add_booking):
    add_booking(seed.salon_id, 1, status="in-progress", started_minutes_ago=2)
    add_booking(seed.salon_id, 2)
    add_booking(seed.salon_id, 6, status="skipped")
    add_booking(seed.salon_id, None)

    assert ledger.next_position(db, seed.salon_id) == 3
    assert ledger.next_position(db, seed.salon_id, include_skipped=True) == 7
    assert ledger.active_count(db, seed.salon_id) == 2
    assert ledger.in_progress_count(db, seed.salon_id) == 1
    assert ledger.salons_with_active_queues(db) == [seed.salon_id]


def test_queue_snapshot_groups_by_state(db, seed, add_booking):
    serving = add_booking(seed.salon_id, 1, status="in-progress", started_minutes_ago=2)
    waiting = add_booking(seed.salon_id, 2)
    skipped = add_booking(seed.salon_id, 3, status="skipped")

    snapshot = ledger.queue_snapshot(db, seed.salon_id)

    assert [b.id for b in snapshot["in_progress"]] == [serving.id]
    assert [b.id for b in snapshot["pending"]] == [waiting.id]
    assert [b.id for b in snapshot["skipped"]] == [skipped.id]
