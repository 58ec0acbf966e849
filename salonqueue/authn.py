from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt

from .config import settings

ACTOR_ROLES = {"customer", "owner", "manager", "staff", "admin"}


@dataclass(frozen=True)
class Actor:
    user_id: int
    role: str
    salon_id: int | None = None

    @property
    def label(self) -> str:
        return f"{self.role}:{self.user_id}"


def _token_exp(minutes: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=max(1, int(minutes)))


def create_access_token(actor: Actor, minutes: int = 60) -> str:
    payload = {
        "sub": str(int(actor.user_id)),
        "role": actor.role,
        "iss": settings.AUTH_ISSUER,
        "aud": settings.AUTH_AUDIENCE,
        "exp": _token_exp(minutes),
        "iat": datetime.now(timezone.utc),
    }
    if actor.salon_id is not None:
        payload["salon_id"] = int(actor.salon_id)
    return jwt.encode(payload, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)


def _parse_int(raw) -> int | None:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return value


def _build_actor(user_id, role, salon_id) -> Actor | None:
    uid = _parse_int(user_id)
    role = str(role or "").strip().lower()
    if not uid or uid <= 0 or role not in ACTOR_ROLES:
        return None
    sid = _parse_int(salon_id) if salon_id not in (None, "") else None
    return Actor(user_id=uid, role=role, salon_id=sid)


def decode_access_token(token: str) -> Actor | None:
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_SECRET_KEY,
            algorithms=[settings.AUTH_ALGORITHM],
            audience=settings.AUTH_AUDIENCE,
            issuer=settings.AUTH_ISSUER,
            options={"verify_aud": True, "verify_iss": True},
        )
    except JWTError:
        return None
    return _build_actor(payload.get("sub"), payload.get("role"), payload.get("salon_id"))


def extract_actor_from_authorization_header(authorization_header: str | None) -> Actor | None:
    raw = (authorization_header or "").strip()
    if not raw.lower().startswith("bearer "):
        return None
    token = raw[7:].strip()
    if not token:
        return None
    return decode_access_token(token)


def extract_actor_from_headers(headers) -> Actor | None:
    return _build_actor(
        headers.get("x-actor-id"),
        headers.get("x-actor-role"),
        headers.get("x-actor-salon"),
    )


def get_optional_actor(request: Request) -> Actor | None:
    actor = extract_actor_from_authorization_header(request.headers.get("authorization"))
    if actor is None and not bool(settings.AUTH_REQUIRED):
        actor = extract_actor_from_headers(request.headers)
    return actor


def get_actor(request: Request) -> Actor:
    """Resolve the calling actor: bearer token first, then trusted X-Actor-* headers
    when AUTH_REQUIRED is off (gateway-authenticated deployments and tests)."""
    actor = get_optional_actor(request)
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid bearer token")
    return actor
