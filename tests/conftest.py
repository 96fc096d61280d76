import os
from datetime import datetime, timedelta
from typing import Generator

import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_gear_rental.db")
os.environ.setdefault("RATE_LIMITING_ENABLED", "false")
os.environ.setdefault("EVENT_SINK", "log")
os.environ.setdefault("LOG_DIR", "./logs")
os.environ.setdefault("METRICS_ENABLED", "false")

from gear_rental.config import reset_settings_cache  # noqa: E402

reset_settings_cache()

from gear_rental.database import Base, SessionLocal, engine  # noqa: E402
from gear_rental.dependencies import get_event_sink  # noqa: E402
from gear_rental.events import Actor  # noqa: E402
from gear_rental.ledger import ResourceLedger  # noqa: E402
from gear_rental.models import utcnow  # noqa: E402
from gear_rental.orchestrator import BookingOrchestrator  # noqa: E402
from services.equipment.app import app as equipment_app  # noqa: E402
from services.rentals.app import app as rentals_app  # noqa: E402

ADMIN = Actor(id="admin-1", label="Admin One")
ALICE = Actor(id="user-a", label="Alice")
BOB = Actor(id="user-b", label="Bob")
CAROL = Actor(id="user-c", label="Carol")


class RecordingEventSink:
    """Keeps every event in memory so tests can assert on the audit trail."""

    def __init__(self) -> None:
        self.events: list[dict] = []

    def record(self, actor_id, actor_label, event_type, booking_id, payload) -> None:
        self.events.append(
            {
                "actor_id": actor_id,
                "actor_label": actor_label,
                "event_type": event_type,
                "booking_id": booking_id,
                "payload": payload,
            }
        )

    def types(self) -> list[str]:
        return [event["event_type"] for event in self.events]


class ExplodingEventSink:
    def record(self, actor_id, actor_label, event_type, booking_id, payload) -> None:
        raise ConnectionError("audit collaborator unreachable")


def future(hours: float, base: datetime | None = None) -> datetime:
    """A naive UTC datetime ``hours`` after now (or after ``base``)."""

    return (base or utcnow()) + timedelta(hours=hours)


@pytest.fixture(autouse=True, scope="function")
def _create_test_database() -> Generator[None, None, None]:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session() -> Generator:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def events() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture()
def ledger(db_session) -> ResourceLedger:
    return ResourceLedger(db_session)


@pytest.fixture()
def orchestrator(db_session, events) -> BookingOrchestrator:
    return BookingOrchestrator(db_session, events=events)


@pytest.fixture()
def camera(ledger):
    """Resource "Camera X" with a single serialized item "001"."""

    return ledger.create_resource_type("Camera X", stock_count=1, category="Camera")


@pytest.fixture()
def tripods(ledger):
    return ledger.create_resource_type("Tripod", stock_count=3, category="Support")


@pytest.fixture()
def rentals_client(events) -> Generator[TestClient, None, None]:
    rentals_app.dependency_overrides[get_event_sink] = lambda: events
    with TestClient(rentals_app) as client:
        yield client
    rentals_app.dependency_overrides.pop(get_event_sink, None)


@pytest.fixture()
def equipment_client() -> Generator[TestClient, None, None]:
    with TestClient(equipment_app) as client:
        yield client
