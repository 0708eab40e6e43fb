import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.errors import HttpError

from calsync.core.constants import Provider
from calsync.core.exceptions import (
    InsufficientPermissionError,
    NotFoundError,
    ProviderTimeoutError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from calsync.integrations.base import ConnectionConfig
from calsync.integrations.google.calendar import (
    GoogleCalendarAdapter,
    google_event_id,
    map_http_error,
    uuid_to_google_event_id,
)
from calsync.integrations.google.oauth import GoogleOAuthClient
from calsync.schemas.calendar import EventData

START = datetime(2025, 2, 1, tzinfo=timezone.utc)
END = START + timedelta(days=7)


def http_error(status, reason="", message="error"):
    content = {"error": {"code": status, "message": message, "errors": [{"reason": reason, "message": message}]}}
    return HttpError(httplib2.Response({"status": status}), json.dumps(content).encode("utf-8"))


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def adapter(service):
    config = ConnectionConfig(
        provider=Provider.GOOGLE,
        integration_id=3,
        access_token="token",
        refresh_token="refresh",
        default_booking_calendar_id="me@example.com",
    )
    return GoogleCalendarAdapter(config, service=service)


class TestEventIds:
    def test_uuid_is_normalized(self):
        assert google_event_id("3F2504E0-4F89-11D3-9A0C-0305E82C3301") == "3f2504e04f8911d39a0c0305e82c3301"
        assert len(uuid_to_google_event_id("3F2504E0-4F89-11D3-9A0C-0305E82C3301")) == 32

    def test_other_ids_pass_through(self):
        assert google_event_id("abc123xyz") == "abc123xyz"


class TestErrorMapping:
    """
    Google API status codes to typed errors
    """

    @pytest.mark.parametrize(
        "status,reason,message,expected",
        [
            (401, "authError", "Invalid Credentials", UnauthorizedError),
            (403, "rateLimitExceeded", "Rate Limit Exceeded", RateLimitedError),
            (403, "quotaExceeded", "Quota exceeded for quota metric", RateLimitedError),
            (403, "insufficientPermissions", "Request had insufficient authentication scopes.", InsufficientPermissionError),
            (403, "forbidden", "Forbidden", InsufficientPermissionError),
            (403, "somethingElse", "Unexplained", TransientError),
            (404, "notFound", "Not Found", NotFoundError),
            (429, "", "Too many requests", RateLimitedError),
            (500, "backendError", "Backend Error", TransientError),
            (503, "", "Unavailable", TransientError),
        ],
    )
    def test_map_http_error(self, status, reason, message, expected):
        error = map_http_error(http_error(status, reason, message), "list events")
        assert type(error) is expected
        assert error.provider == "google"


class TestGoogleCalendarAdapter:
    def test_list_events_follows_pages(self, adapter, service):
        service.events().list().execute.side_effect = [
            {
                "items": [
                    {
                        "id": "e1",
                        "summary": "Planning",
                        "start": {"dateTime": "2025-02-02T10:00:00Z"},
                        "end": {"dateTime": "2025-02-02T11:00:00Z"},
                        "etag": '"1"',
                    }
                ],
                "nextPageToken": "p2",
            },
            {"items": [{"id": "e2", "summary": "Off", "start": {"date": "2025-02-03"}, "end": {"date": "2025-02-04"}}]},
        ]
        events = adapter.list_events("work", START, END)

        assert [e.id for e in events] == ["e1", "e2"]
        assert events[0].start == datetime(2025, 2, 2, 10, tzinfo=timezone.utc)
        assert events[1].all_day is True
        assert all(e.calendar_id == "work" for e in events)
        kwargs = service.events().list.call_args.kwargs
        assert kwargs["singleEvents"] is True
        assert kwargs["pageToken"] == "p2"

    def test_primary_events_use_default_calendar(self, adapter, service):
        service.events().list().execute.return_value = {"items": []}
        adapter.list_primary_events(START, END)
        assert service.events().list.call_args.kwargs["calendarId"] == "me@example.com"

    def test_create_event_body(self, adapter, service):
        service.events().insert().execute.return_value = {
            "id": "3f2504e04f8911d39a0c0305e82c3301",
            "summary": "Call",
            "start": {"dateTime": "2025-02-02T10:00:00Z"},
            "end": {"dateTime": "2025-02-02T10:30:00Z"},
        }
        event = EventData(
            uid="3F2504E0-4F89-11D3-9A0C-0305E82C3301",
            summary="Call",
            start=START,
            end=START + timedelta(minutes=30),
            attendees=["a@example.com"],
            reminder_minutes=10,
        )
        created = adapter.create_event(event)

        body = service.events().insert.call_args.kwargs["body"]
        assert body["id"] == "3f2504e04f8911d39a0c0305e82c3301"
        assert body["start"] == {"dateTime": "2025-02-01T00:00:00Z", "timeZone": "UTC"}
        assert body["attendees"] == [{"email": "a@example.com"}]
        assert body["reminders"]["overrides"] == [{"method": "popup", "minutes": 10}]
        assert created.calendar_id == "me@example.com"

    def test_event_id_is_stable_across_create_update_delete(self, adapter, service):
        booking_uuid = "3F2504E0-4F89-11D3-9A0C-0305E82C3301"
        stored = {
            "id": "3f2504e04f8911d39a0c0305e82c3301",
            "summary": "Call",
            "start": {"dateTime": "2025-02-01T00:00:00Z"},
            "end": {"dateTime": "2025-02-01T00:30:00Z"},
        }
        service.events().insert().execute.return_value = stored
        service.events().update().execute.return_value = stored
        event = EventData(uid=booking_uuid, summary="Call", start=START, end=START + timedelta(minutes=30))

        created = adapter.create_event(event)
        adapter.update_event(booking_uuid, event)
        adapter.delete_event(booking_uuid)

        inserted_id = service.events().insert.call_args.kwargs["body"]["id"]
        assert inserted_id == created.id
        assert service.events().update.call_args.kwargs["eventId"] == inserted_id
        assert service.events().delete.call_args.kwargs["eventId"] == inserted_id
        assert service.events().update.call_args.kwargs["calendarId"] == "me@example.com"

    def test_update_with_stored_id(self, adapter, service):
        service.events().update().execute.return_value = {"id": "abc123", "summary": "Moved"}
        event = EventData(summary="Moved", start=START, end=START + timedelta(hours=1))
        updated = adapter.update_event("abc123", event, calendar_ref="work")

        kwargs = service.events().update.call_args.kwargs
        assert (kwargs["calendarId"], kwargs["eventId"]) == ("work", "abc123")
        assert kwargs["body"]["summary"] == "Moved"
        assert updated.calendar_id == "work"

    def test_recurrence_in_body(self, adapter):
        event = EventData(
            summary="Weekly",
            start=START,
            end=START + timedelta(hours=1),
            recurrence={"freq": "WEEKLY", "by_day": ["MO"]},
        )
        assert adapter._event_body(event)["recurrence"] == ["RRULE:FREQ=WEEKLY;BYDAY=MO"]

    def test_close_leaves_injected_service_alone(self, adapter, service):
        adapter.close()
        service.close.assert_not_called()

    def test_all_day_body_uses_dates(self, adapter):
        event = EventData(summary="Off", start=START, end=START + timedelta(days=1), all_day=True)
        body = adapter._event_body(event)
        assert body["start"] == {"date": "2025-02-01"}
        assert body["end"] == {"date": "2025-02-02"}

    @pytest.mark.parametrize("status", [404, 410])
    def test_delete_of_missing_event_succeeds(self, adapter, service, status):
        service.events().delete().execute.side_effect = http_error(status, "deleted", "Resource has been deleted")
        adapter.delete_event("gone")

    def test_delete_error_is_mapped(self, adapter, service):
        service.events().delete().execute.side_effect = http_error(401, "authError", "Invalid Credentials")
        with pytest.raises(UnauthorizedError):
            adapter.delete_event("e1")

    def test_discover_calendars(self, adapter, service):
        service.calendarList().list().execute.return_value = {
            "items": [
                {"id": "me@example.com", "summary": "Me", "primary": True, "selected": True, "backgroundColor": "#123"},
                {"id": "team", "summary": "Team", "summaryOverride": "My team", "accessRole": "reader"},
            ]
        }
        calendars = adapter.discover_calendars()
        assert [(c.id, c.name, c.primary, c.selected) for c in calendars] == [
            ("me@example.com", "Me", True, True),
            ("team", "My team", False, False),
        ]

    @pytest.mark.parametrize(
        "raised,expected",
        [
            (RefreshError("invalid_grant"), UnauthorizedError),
            (TimeoutError("timed out"), ProviderTimeoutError),
            (TransportError("dns"), TransientError),
            (httplib2.ServerNotFoundError("no host"), TransientError),
        ],
    )
    def test_transport_errors(self, adapter, service, raised, expected):
        service.calendarList().list().execute.side_effect = raised
        with pytest.raises(expected):
            adapter.discover_calendars()

    def test_connection_result_never_raises(self, adapter, service):
        service.calendarList().list().execute.side_effect = http_error(401, "authError", "Invalid Credentials")
        result = adapter.test_connection()
        assert result.ok is False
        assert result.category.value == "permanent"

        service.calendarList().list().execute.side_effect = None
        service.calendarList().list().execute.return_value = {"items": []}
        assert adapter.test_connection().ok is True

    def test_refresh_token_delegates(self, adapter, sample_tokens):
        with patch.object(GoogleOAuthClient, "refresh", return_value=sample_tokens) as refresh:
            assert adapter.refresh_token() is sample_tokens
        refresh.assert_called_once_with("refresh")


class TestGoogleOAuthClient:
    def test_refresh_keeps_previous_refresh_token(self):
        credentials = MagicMock(token="new", refresh_token=None, expiry=datetime(2025, 1, 1, 13), scopes=None)
        with patch.object(GoogleOAuthClient, "get_credentials", return_value=credentials):
            tokens = GoogleOAuthClient.refresh("old-refresh")
        assert tokens.access_token == "new"
        assert tokens.refresh_token == "old-refresh"
        assert tokens.expires_at == datetime(2025, 1, 1, 13, tzinfo=timezone.utc)

    def test_revoked_grant_is_permanent(self):
        credentials = MagicMock()
        credentials.refresh.side_effect = RefreshError("invalid_grant: Token has been revoked.")
        with patch.object(GoogleOAuthClient, "get_credentials", return_value=credentials):
            with pytest.raises(UnauthorizedError):
                GoogleOAuthClient.refresh("old-refresh")

    def test_missing_refresh_token(self):
        with pytest.raises(UnauthorizedError):
            GoogleOAuthClient.refresh(None)

    def test_authorization_url(self):
        url = GoogleOAuthClient.authorization_url("state-123")
        assert url.startswith("https://accounts.google.com/o/oauth2/auth")
        assert "state=state-123" in url
        assert "access_type=offline" in url
