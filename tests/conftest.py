from datetime import timedelta
from types import SimpleNamespace

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from salonqueue.api import bookings_router, queue_router, salons_router
from salonqueue.authn import Actor
from salonqueue.broadcast import InMemoryBroadcaster, get_broadcaster
from salonqueue.db import Base, get_db
from salonqueue.models import Booking, Salon, SalonService, Staff, User, utc_now_naive
from salonqueue.notifications import get_notifier


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[dict] = []

    def send_to_device(self, device_token, title, body, data=None):
        if self.fail:
            raise RuntimeError("push gateway unreachable")
        self.sent.append({"token": device_token, "title": title, "body": body, "data": data or {}})
        return True

    def titles(self) -> list[str]:
        return [item["title"] for item in self.sent]


@pytest.fixture
def session_factory(tmp_path):
    db_path = tmp_path / "test_salonqueue.db"
    engine = create_engine(f"sqlite:///{db_path}", connect_args={"check_same_thread": False})
    testing_session_local = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    Base.metadata.create_all(bind=engine)
    yield testing_session_local
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail=True)


def _seed_salon(db, name: str = "Fade Street", phone_prefix: str = "90000", **salon_fields):
    owner = User(name="Olivia Owner", role="owner")
    db.add(owner)
    db.flush()

    fields = {"active_barbers": 2, "total_barbers": 3, "max_queue_size": 20, "priority_limit_per_day": 5}
    fields.update(salon_fields)
    salon = Salon(owner_id=owner.id, name=name, **fields)
    db.add(salon)
    db.flush()

    manager = User(name="Manny Manager", role="manager", salon_id=salon.id)
    staff_user = User(name="Sam Staff", role="staff", salon_id=salon.id)
    customer = User(name="Casey", phone=f"{phone_prefix}00010", role="customer", device_token="device-casey")
    customer2 = User(name="Jordan", phone=f"{phone_prefix}00011", role="customer", device_token="device-jordan")
    haircut = SalonService(salon_id=salon.id, name="Haircut", price=200, duration=30)
    beard = SalonService(salon_id=salon.id, name="Beard Trim", price=100, duration=15)
    alex = Staff(salon_id=salon.id, name="Alex", commission_type="percentage", commission_rate=10)
    bo = Staff(salon_id=salon.id, name="Bo", commission_type="fixed", commission_rate=50)
    db.add_all([manager, staff_user, customer, customer2, haircut, beard, alex, bo])
    db.commit()

    return SimpleNamespace(
        salon_id=salon.id,
        owner_id=owner.id,
        manager_id=manager.id,
        customer_id=customer.id,
        customer2_id=customer2.id,
        haircut_id=haircut.id,
        beard_id=beard.id,
        alex_id=alex.id,
        bo_id=bo.id,
        owner=Actor(user_id=owner.id, role="owner"),
        manager=Actor(user_id=manager.id, role="manager", salon_id=salon.id),
        staff=Actor(user_id=staff_user.id, role="staff", salon_id=salon.id),
        customer=Actor(user_id=customer.id, role="customer"),
        customer2=Actor(user_id=customer2.id, role="customer"),
    )


@pytest.fixture
def seed(db):
    return _seed_salon(db)


@pytest.fixture
def seed_other(db):
    return _seed_salon(db, name="Clip Joint", phone_prefix="80000")


@pytest.fixture
def add_booking(db):
    """Insert a booking row directly, bypassing the lifecycle checks."""

    def _add(
        salon_id: int,
        position: int | None,
        status: str = "pending",
        user_id: int | None = None,
        duration: int = 30,
        price: float = 200.0,
        started_minutes_ago: float | None = None,
        staff_id: int | None = None,
        token: str | None = None,
        joined_offset_seconds: int = 0,
    ) -> Booking:
        now = utc_now_naive()
        booking = Booking(
            salon_id=salon_id,
            user_id=user_id,
            status=status,
            queue_position=position,
            total_duration=duration,
            total_price=price,
            assigned_staff_id=staff_id,
            walk_in_token=token,
            joined_at=now + timedelta(seconds=joined_offset_seconds),
            started_at=now - timedelta(minutes=started_minutes_ago) if started_minutes_ago is not None else None,
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
        return booking

    return _add


@pytest.fixture
def client(session_factory, broadcaster, notifier):
    app = FastAPI()
    app.include_router(queue_router)
    app.include_router(bookings_router)
    app.include_router(salons_router)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[get_notifier] = lambda: notifier
    test_client = TestClient(app)
    test_client.testing_session_local = session_factory
    return test_client


def actor_headers(actor: Actor) -> dict[str, str]:
    headers = {"X-Actor-Id": str(actor.user_id), "X-Actor-Role": actor.role}
    if actor.salon_id is not None:
        headers["X-Actor-Salon"] = str(actor.salon_id)
    return headers


@pytest.fixture
def headers_for():
    return actor_headers
