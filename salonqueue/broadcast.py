import json
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import redis
import structlog
from sqlalchemy.orm import Session

from .config import settings
from .ledger import active_count
from .models import Salon, utc_now_naive
from .waittime import WaitEstimate, estimate_wait, load_queue_entries, snapshot_from_salon

log = structlog.get_logger("salonqueue.broadcast")


@dataclass(frozen=True)
class RoomMember:
    client_id: str
    user_id: int | None = None


class Broadcaster(Protocol):
    def emit_to_room(self, salon_id: int, event: str, payload: dict) -> None: ...

    def emit_to_client(self, client_id: str, event: str, payload: dict) -> None: ...

    def room_members(self, salon_id: int) -> list[RoomMember]: ...

    def join_room(self, salon_id: int, client_id: str, user_id: int | None = None) -> None: ...

    def leave_room(self, salon_id: int, client_id: str) -> None: ...


class InMemoryBroadcaster:
    """Process-local rooms; keeps every emitted event in `sent`."""

    def __init__(self):
        self.rooms: dict[int, dict[str, int | None]] = {}
        self.sent: list[dict] = []

    def emit_to_room(self, salon_id: int, event: str, payload: dict) -> None:
        self.sent.append({"target": "room", "salon_id": salon_id, "event": event, "payload": payload})

    def emit_to_client(self, client_id: str, event: str, payload: dict) -> None:
        self.sent.append({"target": "client", "client_id": client_id, "event": event, "payload": payload})

    def room_members(self, salon_id: int) -> list[RoomMember]:
        members = self.rooms.get(salon_id, {})
        return [RoomMember(client_id=cid, user_id=uid) for cid, uid in members.items()]

    def join_room(self, salon_id: int, client_id: str, user_id: int | None = None) -> None:
        self.rooms.setdefault(salon_id, {})[client_id] = user_id

    def leave_room(self, salon_id: int, client_id: str) -> None:
        self.rooms.get(salon_id, {}).pop(client_id, None)

    def events(self, event: str) -> list[dict]:
        return [item for item in self.sent if item["event"] == event]


class RedisBroadcaster:
    """Room membership in a Redis hash, events published on pub/sub channels
    that the socket gateway relays to connected clients."""

    def __init__(self, client: redis.Redis | None = None, prefix: str | None = None):
        self._client = client
        self.prefix = (prefix or settings.BROADCAST_CHANNEL_PREFIX or "salonqueue").strip()

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(settings.REDIS_URL, decode_responses=True)
        return self._client

    def _members_key(self, salon_id: int) -> str:
        return f"{self.prefix}:room:{salon_id}:members"

    def _publish(self, channel: str, event: str, payload: dict) -> None:
        message = json.dumps({"event": event, "payload": payload}, ensure_ascii=True, default=str)
        self.client.publish(channel, message)

    def emit_to_room(self, salon_id: int, event: str, payload: dict) -> None:
        self._publish(f"{self.prefix}:room:{salon_id}", event, payload)

    def emit_to_client(self, client_id: str, event: str, payload: dict) -> None:
        self._publish(f"{self.prefix}:client:{client_id}", event, payload)

    def room_members(self, salon_id: int) -> list[RoomMember]:
        raw = self.client.hgetall(self._members_key(salon_id)) or {}
        members = []
        for client_id, user_id in raw.items():
            user_id = str(user_id or "").strip()
            members.append(RoomMember(client_id=str(client_id), user_id=int(user_id) if user_id.isdigit() else None))
        return members

    def join_room(self, salon_id: int, client_id: str, user_id: int | None = None) -> None:
        self.client.hset(self._members_key(salon_id), client_id, str(user_id or ""))

    def leave_room(self, salon_id: int, client_id: str) -> None:
        self.client.hdel(self._members_key(salon_id), client_id)

    def ping(self) -> bool:
        return bool(self.client.ping())


_broadcaster: Broadcaster | None = None


def get_broadcaster() -> Broadcaster:
    global _broadcaster
    if _broadcaster is None:
        if settings.BROADCAST_BACKEND == "redis":
            _broadcaster = RedisBroadcaster()
        else:
            _broadcaster = InMemoryBroadcaster()
        log.info("broadcaster_selected", backend=type(_broadcaster).__name__)
    return _broadcaster


def _timestamp(now: datetime | None = None) -> str:
    return (now or utc_now_naive()).isoformat() + "Z"


def safe_emit_to_room(broadcaster: Broadcaster | None, salon_id: int, event: str, payload: dict) -> bool:
    if broadcaster is None:
        return False
    try:
        broadcaster.emit_to_room(salon_id, event, payload)
        return True
    except Exception:
        log.warning("broadcast_room_emit_failed", salon_id=salon_id, event_name=event, exc_info=True)
        return False


def safe_emit_to_client(broadcaster: Broadcaster | None, client_id: str, event: str, payload: dict) -> bool:
    if broadcaster is None:
        return False
    try:
        broadcaster.emit_to_client(client_id, event, payload)
        return True
    except Exception:
        log.warning("broadcast_client_emit_failed", client_id=client_id, event_name=event, exc_info=True)
        return False


def publish_queue_update(
    db: Session,
    broadcaster: Broadcaster | None,
    salon_id: int,
    action: str,
    payload: dict | None = None,
) -> bool:
    if broadcaster is None:
        return False
    try:
        queue_length = active_count(db, salon_id)
    except Exception:
        log.warning("queue_length_lookup_failed", salon_id=salon_id, exc_info=True)
        queue_length = None
    body = {
        "salonId": salon_id,
        "action": action,
        "queueLength": queue_length,
        "timestamp": _timestamp(),
    }
    body.update(payload or {})
    return safe_emit_to_room(broadcaster, salon_id, "queue_updated", body)


def publish_wait_times(
    db: Session,
    broadcaster: Broadcaster | None,
    salon_id: int,
    now: datetime | None = None,
) -> int:
    """Send every connected client its own estimate, then one anonymous
    estimate to the whole room. Returns the number of personalised sends."""
    if broadcaster is None:
        return 0
    now = now or utc_now_naive()
    try:
        salon = db.get(Salon, salon_id)
        if salon is None:
            log.warning("wait_time_publish_salon_missing", salon_id=salon_id)
            return 0
        snapshot = snapshot_from_salon(salon)
        entries = load_queue_entries(db, salon_id)
    except Exception:
        log.warning("wait_time_snapshot_failed", salon_id=salon_id, exc_info=True)
        return 0

    try:
        members = broadcaster.room_members(salon_id)
    except Exception:
        log.warning("room_members_lookup_failed", salon_id=salon_id, exc_info=True)
        members = []

    memo: dict[int | None, WaitEstimate] = {}
    sent = 0
    for member in members:
        if member.user_id not in memo:
            memo[member.user_id] = estimate_wait(snapshot, entries, user_id=member.user_id, now=now)
        payload = {
            "salonId": salon_id,
            "waitTime": memo[member.user_id].to_dict(),
            "timestamp": _timestamp(now),
        }
        if safe_emit_to_client(broadcaster, member.client_id, "wait_time_updated", payload):
            sent += 1

    if None not in memo:
        memo[None] = estimate_wait(snapshot, entries, now=now)
    safe_emit_to_room(
        broadcaster,
        salon_id,
        "wait_time_updated",
        {"salonId": salon_id, "waitTime": memo[None].to_dict(), "timestamp": _timestamp(now)},
    )
    log.info("wait_times_published", salon_id=salon_id, clients=len(members), personalised=sent)
    return sent
