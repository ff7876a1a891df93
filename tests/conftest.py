import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ.setdefault("STORAGE_MOCK_MODE", "true")
os.environ.setdefault("NOTIFY_MOCK_MODE", "true")

from datetime import date, datetime, time, timedelta, timezone  # noqa: E402
from uuid import uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from slotbook.core.errors import UpstreamFailure  # noqa: E402
from slotbook.core.roles import Actor, Role  # noqa: E402
from slotbook.db.base import Base  # noqa: E402
from slotbook.models import Customer, Provider  # noqa: E402
from slotbook.services.booking_lifecycle import BookingRequest, create_booking  # noqa: E402
from slotbook.services.slot_registry import create_slots  # noqa: E402
from slotbook.services.storage import StoredObject  # noqa: E402
from slotbook.services.throttle import WindowCounter  # noqa: E402

# 10:00 on 2026-10-18 in Asia/Manila.
NOW = datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)
TODAY = date(2026, 10, 18)

ADMIN = Actor(id="admin-1", role=Role.ADMIN)


class FakeStorage:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.delete_calls: list[str] = []
        self.fail_deletes: set[str] = set()
        self.fail_uploads = False
        self._counter = 0

    def upload(self, content: bytes, folder: str, content_type: str) -> StoredObject:
        if self.fail_uploads:
            raise UpstreamFailure("upload failed", folder=folder)
        self._counter += 1
        ref = f"{folder}/obj-{self._counter}"
        self.objects[ref] = content
        return StoredObject(url=f"https://cdn.test/{ref}", ref=ref)

    def delete(self, ref: str) -> None:
        self.delete_calls.append(ref)
        if ref in self.fail_deletes:
            raise UpstreamFailure("delete failed", ref=ref)
        self.objects.pop(ref, None)


class FakeDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple] = []
        self.fail = False

    def send(self, booking_id, notification_type) -> None:
        if self.fail:
            raise UpstreamFailure("gateway down")
        self.sent.append((booking_id, notification_type))


class FakeAudit:
    def __init__(self) -> None:
        self.records: list[tuple] = []

    def record(self, actor, action, resource_id, details=None) -> None:
        self.records.append((actor, action, resource_id, details))


class FakeRedis:
    """In-memory stand-in for the few Redis commands used, with TTLs on a manual clock."""

    def __init__(self) -> None:
        self.store: dict[str, object] = {}
        self.expires_at: dict[str, float] = {}
        self.clock = 0.0

    def advance(self, seconds: float) -> None:
        self.clock += seconds

    def _purge(self, key) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and self.clock >= deadline:
            self.store.pop(key, None)
            self.expires_at.pop(key, None)

    def set(self, key, value, nx=False, px=None):
        self._purge(key)
        if nx and key in self.store:
            return None
        self.store[key] = value
        if px is not None:
            self.expires_at[key] = self.clock + px / 1000
        else:
            self.expires_at.pop(key, None)
        return True

    def incr(self, key):
        self._purge(key)
        self.store[key] = int(self.store.get(key, 0)) + 1
        return self.store[key]

    def expire(self, key, seconds):
        if key not in self.store:
            return False
        self.expires_at[key] = self.clock + seconds
        return True


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'slotbook.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def audit():
    return FakeAudit()


@pytest.fixture
def throttle():
    return WindowCounter(client=FakeRedis())


@pytest.fixture
def provider(db):
    provider = Provider(full_name="Ana Reyes")
    db.add(provider)
    db.commit()
    return provider


@pytest.fixture
def customer(db):
    customer = Customer(full_name="Maria Cruz", email="maria@example.com")
    db.add(customer)
    db.commit()
    return customer


@pytest.fixture
def make_slots(db, provider):
    """Create slots ``day_offset`` days after 2026-10-18 at the given local hours."""

    def _make(day_offset=1, hours=(10,), provider_id=None, base_date=TODAY):
        result = create_slots(
            db,
            provider_id=provider_id or provider.id,
            dates=[base_date + timedelta(days=day_offset)],
            times=[time(hour=hour) for hour in hours],
        )
        db.commit()
        return result.created

    return _make


@pytest.fixture
def make_booking(db, customer, provider, make_slots):
    def _make(slots=None, now=NOW, subtotal=1000):
        slots = slots or make_slots()
        return create_booking(
            db,
            BookingRequest(
                customer_id=customer.id,
                provider_id=provider.id,
                slot_ids=[slot.id for slot in slots],
                service_description="Gel manicure",
                subtotal=subtotal,
            ),
            now=now,
        )

    return _make


@pytest.fixture
def client(session_factory, storage, dispatcher, audit, throttle):
    from slotbook import main
    from slotbook.db.session import get_db

    def override_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = override_db
    main.app.dependency_overrides[main.get_storage] = lambda: storage
    main.app.dependency_overrides[main.get_dispatcher] = lambda: dispatcher
    main.app.dependency_overrides[main.get_audit] = lambda: audit
    main.app.dependency_overrides[main.get_throttle] = lambda: throttle
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


def admin_headers() -> dict[str, str]:
    return {"X-Actor-Id": "admin-1", "X-Actor-Role": "ADMIN"}


def staff_headers(provider_id) -> dict[str, str]:
    return {
        "X-Actor-Id": f"staff-{uuid4().hex[:6]}",
        "X-Actor-Role": "staff",
        "X-Actor-Provider-Id": str(provider_id),
    }
