"""
Shared fixtures and configuration for all tests.
"""
import json
import os
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

# Override environment settings for testing
os.environ["ENVIRONMENT"] = "testing"
os.environ["SQLALCHEMY_DATABASE_URI"] = os.getenv(
    "TEST_DATABASE_URI", "sqlite:///./test_calsync.db"
)
os.environ["TOKEN_ENCRYPTION_KEY"] = "MDEyMzQ1Njc4OTAxMjM0NTY3ODkwMTIzNDU2Nzg5MDE="
os.environ["BACKEND_CORS_ORIGINS"] = '["http://localhost:3000"]'
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"
os.environ["GOOGLE_CLIENT_ID"] = "google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-client-secret"
os.environ["OUTLOOK_CLIENT_ID"] = "outlook-client-id"
os.environ["OUTLOOK_CLIENT_SECRET"] = "outlook-client-secret"

import requests
from fastapi.testclient import TestClient

import calsync.models  # noqa: F401
from calsync.core.constants import Provider
from calsync.db.base import Base, engine, SessionLocal
from calsync.db.session import get_db
from calsync.integrations.base import ProviderAdapter
from calsync.main import app
from calsync.models.calendar_integration import CalendarIntegration
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent, TokenSet
from calsync.services.calendar_service import CalendarService
from calsync.services.health_monitor import get_health_monitor
from calsync.utils.dependencies import register_service
from calsync.utils.time import utcnow


# Test fixtures for the database
@pytest.fixture
def db():
    """
    Create a fresh database for each test.
    """
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

    # Drop tables after the test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_health_monitor():
    """Health state lives in process memory; start every test clean."""
    get_health_monitor().reset()
    yield
    get_health_monitor().reset()


@pytest.fixture
def make_integration(db):
    """Factory that stores an integration with sensible defaults."""

    def _make(**overrides):
        values = {
            "user_id": 1,
            "provider": Provider.GOOGLE,
            "name": "Google Calendar",
            "access_token": "access-token",
            "refresh_token": "refresh-token",
            "token_expires_at": utcnow() + timedelta(hours=1),
            "is_active": True,
            "calendar_list": [],
        }
        values.update(overrides)
        integration = CalendarIntegration(**values)
        db.add(integration)
        db.commit()
        db.refresh(integration)
        return integration

    return _make


class FakeAdapter(ProviderAdapter):
    """Adapter double recording calls; behaviour is configured per test."""

    provider = Provider.GOOGLE

    def __init__(self, config, calendars=None, events=None, tokens=None, probe_error=None, errors=None):
        super().__init__(config)
        self.calendars = calendars or []
        self.events = events or {}
        self.tokens = tokens
        self.probe_error = probe_error
        self.errors = errors or {}
        self.calls = []
        self.closed = False

    def list_events(self, calendar_ref, start, end):
        self.calls.append(("list_events", calendar_ref))
        if calendar_ref in self.errors:
            raise self.errors[calendar_ref]
        return list(self.events.get(calendar_ref, []))

    def list_primary_events(self, start, end):
        self.calls.append(("list_primary_events", None))
        return list(self.events.get("primary", []))

    def create_event(self, event, calendar_ref=None):
        raise NotImplementedError

    def update_event(self, event_id, event, calendar_ref=None, etag=None):
        raise NotImplementedError

    def delete_event(self, event_id, calendar_ref=None):
        raise NotImplementedError

    def discover_calendars(self):
        self.calls.append(("discover_calendars", None))
        return list(self.calendars)

    def refresh_token(self):
        self.calls.append(("refresh_token", None))
        if isinstance(self.tokens, Exception):
            raise self.tokens
        return self.tokens

    def _probe(self):
        if self.probe_error is not None:
            raise self.probe_error
        return "ok"

    def close(self):
        self.closed = True


@pytest.fixture
def fake_adapter_factory():
    """
    Adapter factory returning ``FakeAdapter`` instances.

    Configure the adapters through the returned factory's ``options`` dict;
    every created adapter is kept in ``created``.
    """

    class _Factory:
        def __init__(self):
            self.options = {}
            self.created = []

        def __call__(self, config):
            adapter = FakeAdapter(config, **self.options)
            self.created.append(adapter)
            return adapter

    return _Factory()


@pytest.fixture
def sample_calendars():
    return [
        CalendarDescriptor(id="primary-cal", name="Main", primary=True, selected=True),
        CalendarDescriptor(id="work", name="Work", selected=False),
    ]


@pytest.fixture
def sample_tokens():
    return TokenSet(
        access_token="new-access-token",
        refresh_token="new-refresh-token",
        expires_at=utcnow() + timedelta(hours=1),
    )


def make_event(event_id, calendar_id=None, hour=9):
    start = utcnow().replace(hour=hour, minute=0, second=0, microsecond=0)
    return CalendarEvent(
        id=event_id,
        summary=f"Event {event_id}",
        start=start,
        end=start + timedelta(hours=1),
        calendar_id=calendar_id,
    )


# Test client
@pytest.fixture
def client(db):
    """Return a TestClient that uses the test database."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    yield TestClient(app)

    # Reset overrides after test
    app.dependency_overrides = {}


# Service mocks
@pytest.fixture
def mock_calendar_service():
    """Mock calendar service registered in place of the real one."""
    service = MagicMock(spec=CalendarService)
    service.health_monitor = get_health_monitor()
    register_service(CalendarService, lambda db: service)

    yield service

    # Restore the default factory after test
    register_service(CalendarService, lambda db: CalendarService(db))


@pytest.fixture
def event_factory():
    return make_event


@pytest.fixture
def make_response():
    """Build a real ``requests.Response`` for mocked sessions."""

    def _make(status_code=200, json_body=None, text=None, headers=None):
        response = requests.Response()
        response.status_code = status_code
        if json_body is not None:
            response._content = json.dumps(json_body).encode("utf-8")
            response.headers["Content-Type"] = "application/json"
        else:
            response._content = (text or "").encode("utf-8")
        response.headers.update(headers or {})
        response.encoding = "utf-8"
        return response

    return _make
