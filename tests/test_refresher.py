import importlib.util
from pathlib import Path

from salonqueue.broadcast import InMemoryBroadcaster

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "wait_time_refresher.py"


def _load_refresher():
    spec = importlib.util.spec_from_file_location("wait_time_refresher", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_refresh_cycle_publishes_only_live_queues(session_factory, seed, seed_other, add_booking, broadcaster, monkeypatch):
    refresher = _load_refresher()
    monkeypatch.setattr(refresher, "SessionLocal", session_factory)
    add_booking(seed.salon_id, 1, status="in-progress", started_minutes_ago=12, user_id=seed.customer_id)
    add_booking(seed_other.salon_id, None, status="completed")
    broadcaster.join_room(seed.salon_id, "sock-1", seed.customer_id)

    result = refresher.process_once(broadcaster)

    assert result == {"salons": 1, "personalised": 1}
    client_events = [item for item in broadcaster.sent if item["target"] == "client"]
    assert client_events[0]["payload"]["waitTime"]["status"] == "in-service"
    assert {item["salon_id"] for item in broadcaster.sent if item["target"] == "room"} == {seed.salon_id}


def test_refresh_cycle_keeps_going_when_clients_are_unreachable(session_factory, seed, seed_other, add_booking, monkeypatch):
    class Unreachable(InMemoryBroadcaster):
        def emit_to_room(self, salon_id, event, payload):
            raise ConnectionError("socket gateway down")

        def emit_to_client(self, client_id, event, payload):
            raise ConnectionError("socket gateway down")

    refresher = _load_refresher()
    monkeypatch.setattr(refresher, "SessionLocal", session_factory)
    add_booking(seed.salon_id, 1, user_id=seed.customer_id)
    add_booking(seed_other.salon_id, 1)
    gateway = Unreachable()
    gateway.join_room(seed.salon_id, "sock-1", seed.customer_id)

    result = refresher.process_once(gateway)

    assert result == {"salons": 2, "personalised": 0}
