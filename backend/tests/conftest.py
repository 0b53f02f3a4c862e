"""Pytest fixtures: file-backed SQLite database for fast, isolated tests."""
from datetime import datetime, timezone, timedelta
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from event_reminders.database import Base, get_db
from event_reminders.deps import get_realtime_broker, get_reminder_processor
from event_reminders.main import app
from event_reminders.services.notification_service import NotificationFanout, RealtimeBroker
from event_reminders.services.reminder_processor import ProcessorConfig, ReminderProcessor

# Import all models so they register with Base.metadata
from event_reminders.models.user import User                          # noqa: F401
from event_reminders.models.event import Event                        # noqa: F401
from event_reminders.models.registration import EventRegistration     # noqa: F401
from event_reminders.models.recurring_series import RecurringSeries   # noqa: F401
from event_reminders.models.reminder import Reminder                  # noqa: F401
from event_reminders.models.notification import Notification          # noqa: F401

SQLITE_URL = "sqlite:///./test.db"


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh SQLite engine for each test."""
    engine = create_engine(SQLITE_URL, connect_args={"check_same_thread": False})

    # Enable WAL mode for better concurrency
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory):
    """Yield a database session, closed after the test."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def broker():
    return RealtimeBroker()


@pytest.fixture(scope="function")
def processor(session_factory, broker):
    """A processor bound to the test database; never started by fixtures."""
    return ReminderProcessor(
        session_factory=session_factory,
        fanout=NotificationFanout(session_factory, broker),
        config=ProcessorConfig(),
    )


@pytest.fixture(scope="function")
def client(session_factory, processor, broker):
    """FastAPI TestClient with the database and processor dependencies overridden."""

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_reminder_processor] = lambda: processor
    app.dependency_overrides[get_realtime_broker] = lambda: broker
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers: create records via the API, return the JSON response dict
# ---------------------------------------------------------------------------
def auth(user: dict) -> dict:
    """Request headers identifying ``user`` as the caller."""
    return {"X-User-Id": user["user_id"]}


def create_test_user(client: TestClient, name: str = "Test User", tz: str = "America/New_York",
                     is_admin: bool = False) -> dict:
    """Helper: POST /api/users and return response JSON."""
    resp = client.post("/api/users/", json={
        "display_name": name,
        "default_timezone": tz,
        "is_admin": is_admin,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


def event_payload(title: str = "Test Event", start_offset_hours: int = 48, duration_hours: int = 1,
                  **overrides) -> dict:
    start = datetime.now(timezone.utc) + timedelta(hours=start_offset_hours)
    end = start + timedelta(hours=duration_hours)
    payload = {
        "title": title,
        "start_time_utc": start.isoformat(),
        "end_time_utc": end.isoformat(),
        "timezone": "UTC",
        "mode": "ONLINE",
        "virtual_link": "https://meet.example.com/abc",
        "is_public": True,
    }
    payload.update(overrides)
    return payload


def create_test_event(client: TestClient, creator: dict, **kwargs) -> dict:
    """Helper: POST /api/events as ``creator`` and return response JSON."""
    resp = client.post("/api/events/", json=event_payload(**kwargs), headers=auth(creator))
    assert resp.status_code == 201, resp.text
    return resp.json()
