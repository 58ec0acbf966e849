from dataclasses import dataclass

from .authn import Actor
from .errors import ForbiddenError
from .models import Booking, Salon

SALON_STAFF_ROLES = {"owner", "manager", "staff"}
SALON_ADMIN_ROLES = {"owner", "manager"}

ACTION_ROLES: dict[str, set[str]] = {
    "queue.view": SALON_STAFF_ROLES,
    "queue.walk_in": SALON_STAFF_ROLES,
    "queue.arrive": SALON_STAFF_ROLES,
    "queue.start": SALON_STAFF_ROLES,
    "queue.complete": SALON_STAFF_ROLES,
    "queue.skip": SALON_ADMIN_ROLES,
    "queue.undo_skip": SALON_ADMIN_ROLES,
    "queue.cancel": SALON_ADMIN_ROLES,
    "queue.no_show": SALON_ADMIN_ROLES,
    "queue.priority": SALON_ADMIN_ROLES,
    "salon.manage": SALON_ADMIN_ROLES,
}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    code: str | None = None
    reason: str | None = None


ALLOW = Decision(allowed=True)


def _deny(reason: str) -> Decision:
    return Decision(allowed=False, code="INSUFFICIENT_PERMISSIONS", reason=reason)


def salon_role(actor: Actor, salon: Salon | None) -> str | None:
    """Role the actor holds at this particular salon, or None."""
    if salon is None:
        return None
    if actor.user_id == salon.owner_id:
        return "owner"
    if actor.salon_id is not None and actor.salon_id == salon.id and actor.role in {"manager", "staff"}:
        return actor.role
    return None


def evaluate(actor: Actor, action: str, salon: Salon | None = None, booking: Booking | None = None) -> Decision:
    if actor.role == "admin":
        return ALLOW

    role = salon_role(actor, salon)

    if action == "booking.cancel":
        if booking is not None and booking.user_id is not None and booking.user_id == actor.user_id:
            return ALLOW
        if role in SALON_ADMIN_ROLES:
            return ALLOW
        return _deny("Only the customer or the salon owner/manager can cancel this booking")

    if action == "booking.view":
        if booking is not None and booking.user_id is not None and booking.user_id == actor.user_id:
            return ALLOW
        if role in SALON_STAFF_ROLES:
            return ALLOW
        return _deny("Not allowed to view this booking")

    if action == "queue.priority":
        # global owners must own this salon; managers must be scoped to it
        if role == "owner" and actor.role == "owner":
            return ALLOW
        if role == "manager":
            return ALLOW
        return _deny("Only the salon owner or a manager can start priority service")

    allowed_roles = ACTION_ROLES.get(action)
    if allowed_roles is None:
        return _deny(f"Unknown action: {action}")
    if role in allowed_roles:
        return ALLOW
    return _deny(f"Role not allowed for {action}")


def enforce(actor: Actor, action: str, salon: Salon | None = None, booking: Booking | None = None) -> None:
    decision = evaluate(actor, action, salon=salon, booking=booking)
    if not decision.allowed:
        raise ForbiddenError(decision.reason or "Insufficient permissions", code=decision.code or "INSUFFICIENT_PERMISSIONS")
