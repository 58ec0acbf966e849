import random
import re

import pytest

from salonqueue.config import settings
from salonqueue.errors import ExhaustedError
from salonqueue.tokens import allocate_walk_in_token, draw_token, token_in_use

TOKEN_RE = re.compile(r"^[A-Z][0-9]{2}$")


class ScriptedRng:
    """Replays (letter, number) draws, repeating the last one forever."""

    def __init__(self, draws):
        self.draws = list(draws)
        self.calls = 0

    def _current(self):
        return self.draws[min(self.calls, len(self.draws) - 1)]

    def choice(self, seq):
        return self._current()[0]

    def randrange(self, stop):
        value = self._current()[1]
        self.calls += 1
        return value


def test_draw_token_shape():
    rng = random.Random(7)
    for _ in range(200):
        assert TOKEN_RE.match(draw_token(rng))


def test_draw_token_zero_pads_number():
    assert draw_token(ScriptedRng([("C", 4)])) == "C04"


def test_allocation_skips_codes_held_by_active_bookings(db, seed, add_booking):
    add_booking(seed.salon_id, 1, token="A07")
    rng = ScriptedRng([("A", 7), ("B", 12)])

    token = allocate_walk_in_token(db, seed.salon_id, rng=rng)

    assert token == "B12"
    assert rng.calls == 2


def test_finished_bookings_release_their_code(db, seed, add_booking):
    add_booking(seed.salon_id, None, status="completed", token="A07")
    add_booking(seed.salon_id, None, status="cancelled", token="A07")

    assert token_in_use(db, seed.salon_id, "A07") is False
    assert allocate_walk_in_token(db, seed.salon_id, rng=ScriptedRng([("A", 7)])) == "A07"


def test_codes_are_scoped_per_salon(db, seed, seed_other, add_booking):
    add_booking(seed_other.salon_id, 1, token="A07")

    assert allocate_walk_in_token(db, seed.salon_id, rng=ScriptedRng([("A", 7)])) == "A07"


def test_in_progress_booking_still_holds_its_code(db, seed, add_booking):
    add_booking(seed.salon_id, 1, status="in-progress", token="Z99", started_minutes_ago=5)

    assert token_in_use(db, seed.salon_id, "Z99") is True


def test_exhausted_pool_raises_typed_error(db, seed, add_booking, monkeypatch):
    monkeypatch.setattr(settings, "WALK_IN_TOKEN_MAX_ATTEMPTS", 3)
    add_booking(seed.salon_id, 1, token="A07")
    rng = ScriptedRng([("A", 7)])

    with pytest.raises(ExhaustedError) as exc_info:
        allocate_walk_in_token(db, seed.salon_id, rng=rng)

    assert exc_info.value.code == "TOKEN_POOL_EXHAUSTED"
    assert exc_info.value.status_code == 503
    assert rng.calls == 3
