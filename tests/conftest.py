# Pytest configuration for the booking engine and API tests.
# Forces a local SQLite DB, disables Redis, Stripe and the background sweeper, and wires
# JWT secrets for deterministic runs.
import os
from typing import Any, Callable, Dict, Iterator, List, Tuple

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("DRIVESHARE_JWT_SECRET", "test-secret")
os.environ.setdefault("ADMIN_SIGNUP_ENABLED", "true")
os.environ.setdefault("SWEEP_INTERVAL_SECONDS", "0")
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""

import sys
# Ensure the repo root is on sys.path so 'driveshare' resolves when running pytest from anywhere
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from driveshare.main import app  # noqa: E402
from driveshare.db import Base, SessionLocal, engine  # noqa: E402
from driveshare import models  # noqa: E402
from driveshare.redis_client import reset_redis  # noqa: E402
from driveshare.notifications import NotificationDispatcher, NullTransport, dispatcher as app_dispatcher  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _bootstrap_db() -> Iterator[None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Function-level isolation: drop and recreate schema before each test.

    Also resets the process-wide dispatcher and the cached Redis client so a
    transport or connection set up by one test does not leak into the next.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    app_dispatcher.transport = NullTransport()
    reset_redis()
    yield
    app_dispatcher.transport = NullTransport()


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """
    FastAPI TestClient bound to the application for HTTP-level tests.
    """
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db() -> Iterator[Any]:
    """A plain session for service-level tests that call the engine directly."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


class RecordingTransport:
    """Live transport double: remembers every push, optionally failing on demand."""

    def __init__(self) -> None:
        self.sent: List[Tuple[int, Dict[str, Any]]] = []
        self.fail = False

    def deliver(self, user_id: int, payload: Dict[str, Any]) -> bool:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append((user_id, payload))
        return True


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def dispatcher(transport: RecordingTransport) -> NotificationDispatcher:
    return NotificationDispatcher(transport)


@pytest.fixture()
def make_user(db) -> Callable[..., models.User]:
    counter = {"n": 0}

    def _make(role: str = "renter", email: str = "") -> models.User:
        counter["n"] += 1
        user = models.User(
            email=email or f"{role}{counter['n']}@example.com",
            password_hash="not-a-real-hash",
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def make_vehicle(db) -> Callable[..., models.Vehicle]:
    def _make(host: models.User, daily_rate_cents: int = 10000, approval_status: str = "approved") -> models.Vehicle:
        vehicle = models.Vehicle(
            host_id=host.id,
            title=f"Test car {daily_rate_cents}",
            daily_rate_cents=daily_rate_cents,
            currency="USD",
            approval_status=approval_status,
        )
        db.add(vehicle)
        db.commit()
        db.refresh(vehicle)
        return vehicle

    return _make
