import random
import string

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import ExhaustedError
from .models import ACTIVE_STATUSES, Booking

log = structlog.get_logger("salonqueue.tokens")

_system_random = random.SystemRandom()


def draw_token(rng: random.Random | None = None) -> str:
    rng = rng or _system_random
    return f"{rng.choice(string.ascii_uppercase)}{rng.randrange(100):02d}"


def token_in_use(db: Session, salon_id: int, token: str) -> bool:
    row = db.execute(
        select(Booking.id)
        .where(
            Booking.salon_id == salon_id,
            Booking.walk_in_token == token,
            Booking.status.in_(ACTIVE_STATUSES),
        )
        .limit(1)
    ).first()
    return row is not None


def allocate_walk_in_token(db: Session, salon_id: int, rng: random.Random | None = None) -> str:
    """Return a free `[A-Z][0-9]{2}` code for the salon.

    Tokens only need to be unique among the salon's pending/in-progress bookings,
    so codes of finished bookings are reused freely.
    """
    attempts = max(1, int(settings.WALK_IN_TOKEN_MAX_ATTEMPTS))
    for _ in range(attempts):
        token = draw_token(rng)
        if not token_in_use(db, salon_id, token):
            return token
    log.error("walk_in_token_pool_exhausted", salon_id=salon_id, attempts=attempts)
    raise ExhaustedError("TOKEN_POOL_EXHAUSTED", "Could not allocate a walk-in token, try again")
