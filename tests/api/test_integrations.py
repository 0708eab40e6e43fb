from datetime import datetime, timedelta, timezone

import pytest
from fastapi import status

from calsync.core.constants import ErrorCategory, HealthOutcome, Provider, ServerType
from calsync.core.exceptions import (
    ConfigurationError,
    InvalidDefaultCalendarError,
    RateLimitedError,
    ResourceNotFoundException,
    UnauthorizedError,
    ValidationException,
)
from calsync.models.calendar_integration import CalendarIntegration
from calsync.schemas.calendar import CalendarDescriptor, ConnectionResult

API = "/api/v1"
CREATED = datetime(2025, 1, 1, 12, tzinfo=timezone.utc)


def integration_obj(integration_id=1, **overrides):
    values = {
        "id": integration_id,
        "user_id": 1,
        "provider": Provider.GOOGLE,
        "name": "Google Calendar",
        "access_token": "secret-access-token",
        "refresh_token": "secret-refresh-token",
        "token_expires_at": CREATED + timedelta(hours=1),
        "is_active": True,
        "calendar_list": [{"id": "primary-cal", "name": "Main", "primary": True, "selected": True}],
        "default_booking_calendar_id": "primary-cal",
        "created_at": CREATED,
    }
    values.update(overrides)
    return CalendarIntegration(**values)


class TestIntegrationsAPI:
    """
    Test cases for the integration endpoints

    The calendar service is replaced by a mock; these tests cover routing,
    serialization and error rendering.
    """

    def test_list_integrations(self, client, mock_calendar_service):
        mock_calendar_service.list_integrations.return_value = [
            integration_obj(1),
            integration_obj(2, provider=Provider.OUTLOOK, name="Outlook Calendar", calendar_list=None),
        ]

        response = client.get(f"{API}/integrations/", params={"user_id": 1})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert [i["provider"] for i in data] == ["google", "outlook"]
        assert data[1]["calendar_list"] == []
        mock_calendar_service.list_integrations.assert_called_once_with(1)

    def test_credentials_never_serialized(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj(
            provider=Provider.NEXTCLOUD, password="dav-password", base_url="https://cloud.example.com/remote.php/dav/"
        )

        response = client.get(f"{API}/integrations/1")

        assert response.status_code == status.HTTP_200_OK
        body = response.text
        assert "secret-access-token" not in body
        assert "secret-refresh-token" not in body
        assert "dav-password" not in body
        assert response.json()["base_url"] == "https://cloud.example.com/remote.php/dav/"

    def test_missing_integration(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.side_effect = ResourceNotFoundException(
            "Calendar integration 9 not found"
        )

        response = client.get(f"{API}/integrations/9")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"error": "resource_not_found", "message": "Calendar integration 9 not found"}

    def test_list_events(self, client, mock_calendar_service, event_factory):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.get_events.return_value = [event_factory("a", "primary-cal")]

        response = client.get(
            f"{API}/integrations/1/events",
            params={"start": "2025-01-01T00:00:00Z", "end": "2025-01-08T00:00:00Z"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["integration_id"] == 1
        assert [e["id"] for e in data["events"]] == ["a"]
        _, start, end = mock_calendar_service.get_events.call_args.args
        assert end - start == timedelta(days=7)

    def test_list_events_requires_range(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        response = client.get(f"{API}/integrations/1/events", params={"start": "2025-01-01T00:00:00Z"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "validation_error"
        assert "end" in response.json()["details"]

    def test_inactive_integration_events(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj(is_active=False)
        mock_calendar_service.get_events.side_effect = ValidationException("Calendar integration 1 is inactive")

        response = client.get(
            f"{API}/integrations/1/events",
            params={"start": "2025-01-01T00:00:00Z", "end": "2025-01-02T00:00:00Z"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["message"] == "Calendar integration 1 is inactive"

    def test_discover_calendars(self, client, mock_calendar_service):
        integration = integration_obj()
        mock_calendar_service.get_integration.return_value = integration
        mock_calendar_service.discover_and_store.return_value = [
            CalendarDescriptor(id="primary-cal", name="Main", primary=True, selected=True),
            CalendarDescriptor(id="work", name="Work"),
        ]

        response = client.post(f"{API}/integrations/1/discover")

        assert response.status_code == status.HTTP_200_OK
        assert [c["id"] for c in response.json()] == ["primary-cal", "work"]
        mock_calendar_service.discover_and_store.assert_called_once_with(integration)

    def test_update_calendar_selection(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.update_calendar_selection.return_value = integration_obj(
            default_booking_calendar_id="work"
        )

        response = client.put(
            f"{API}/integrations/1/calendars",
            json={"selected_calendar_ids": ["work"], "default_booking_calendar_id": "work"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["default_booking_calendar_id"] == "work"
        mock_calendar_service.update_calendar_selection.assert_called_once_with(1, ["work"], "work")

    def test_invalid_default_calendar(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.update_calendar_selection.side_effect = InvalidDefaultCalendarError(
            "Default booking calendar must be one of the selected calendars",
            details={"default_booking_calendar_id": "other"},
        )

        response = client.put(
            f"{API}/integrations/1/calendars",
            json={"selected_calendar_ids": ["work"], "default_booking_calendar_id": "other"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "invalid_default_calendar"
        assert response.json()["details"] == {"default_booking_calendar_id": "other"}

    def test_connection_test(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.test_connection.return_value = ConnectionResult(
            ok=False, message="Token expired or invalid", category=ErrorCategory.PERMANENT
        )

        response = client.post(f"{API}/integrations/1/test")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "ok": False,
            "message": "Token expired or invalid",
            "category": "permanent",
        }

    def test_refresh_token(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.refresh.return_value = integration_obj(
            token_expires_at=datetime(2025, 1, 1, 14, tzinfo=timezone.utc)
        )

        response = client.post(f"{API}/integrations/1/refresh")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["integration_id"] == 1
        assert response.json()["token_expires_at"].startswith("2025-01-01T14:00:00")

    def test_refresh_rejected(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.refresh.side_effect = UnauthorizedError("Token refresh rejected", provider="google")

        response = client.post(f"{API}/integrations/1/refresh")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "unauthorized"

    def test_rate_limited_sets_retry_after(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.discover_and_store.side_effect = RateLimitedError(
            "Too many requests", retry_after=30, provider="outlook"
        )

        response = client.post(f"{API}/integrations/1/discover")

        assert response.status_code == status.HTTP_429_TOO_MANY_REQUESTS
        assert response.headers["Retry-After"] == "30"

    def test_make_primary(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj(2, user_id=5)
        mock_calendar_service.set_primary.return_value = integration_obj(2, user_id=5)

        response = client.post(f"{API}/integrations/2/primary")

        assert response.status_code == status.HTTP_200_OK
        mock_calendar_service.set_primary.assert_called_once_with(5, 2)

    def test_toggle(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()
        mock_calendar_service.toggle.return_value = integration_obj(is_active=False)

        response = client.post(f"{API}/integrations/1/toggle")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["is_active"] is False

    def test_delete(self, client, mock_calendar_service):
        mock_calendar_service.get_integration.return_value = integration_obj()

        response = client.delete(f"{API}/integrations/1")

        assert response.status_code == status.HTTP_204_NO_CONTENT
        mock_calendar_service.delete.assert_called_once_with(1)


class TestHealthAPI:
    def test_user_health_report(self, client, mock_calendar_service):
        integrations = [integration_obj(1), integration_obj(2, provider=Provider.OUTLOOK)]
        mock_calendar_service.list_integrations.return_value = integrations
        monitor = mock_calendar_service.health_monitor
        monitor.record(Provider.OUTLOOK, 2, HealthOutcome.HARD_ERROR, "revoked")

        response = client.get(f"{API}/health/integrations", params={"user_id": 1})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert (data["total"], data["healthy"], data["degraded"], data["unhealthy"]) == (2, 1, 1, 0)
        assert data["integrations"]["2"]["provider"] == "outlook"
        assert data["integrations"]["2"]["failures"] == 1


class TestCalDAVAPI:
    def test_detect_from_url(self, client, mock_calendar_service):
        mock_calendar_service.detect_server.return_value = ServerType.NEXTCLOUD

        response = client.post(f"{API}/caldav/detect", json={"url": "https://cloud.example.com/remote.php/dav"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["server_type"] == "nextcloud"
        assert data["discovery_path"] == "/remote.php/dav/calendars/{username}/"
        mock_calendar_service.detect_server.assert_called_once_with(
            "https://cloud.example.com/remote.php/dav", None, None, probe=False
        )

    def test_create_integration(self, client, mock_calendar_service):
        mock_calendar_service.create_caldav_integration.return_value = integration_obj(
            provider=Provider.RADICALE,
            name="Radicale",
            base_url="https://r.example.com:5232",
            access_token=None,
            refresh_token=None,
            token_expires_at=None,
        )

        response = client.post(
            f"{API}/caldav/integrations",
            json={"user_id": 1, "base_url": "https://r.example.com:5232", "username": "alice", "password": "pw"},
        )

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["provider"] == "radicale"
        mock_calendar_service.create_caldav_integration.assert_called_once_with(
            user_id=1,
            base_url="https://r.example.com:5232",
            username="alice",
            password="pw",
            provider=None,
            name=None,
        )

    def test_create_with_bad_credentials(self, client, mock_calendar_service):
        mock_calendar_service.create_caldav_integration.side_effect = ConfigurationError(
            "Could not connect to the CalDAV server: CalDAV authentication failed", provider="caldav"
        )

        response = client.post(
            f"{API}/caldav/integrations",
            json={"user_id": 1, "base_url": "https://dav.example.com", "username": "a", "password": "b"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert "Could not connect" in response.json()["message"]


class TestOAuthAPI:
    @pytest.mark.parametrize("provider", ["google", "outlook"])
    def test_authorize(self, client, mock_calendar_service, provider):
        mock_calendar_service.start_oauth_flow.return_value = {
            "authorization_url": "https://auth.example.com/?state=s1",
            "state": "s1",
        }

        response = client.get(f"{API}/auth/{provider}/authorize", params={"user_id": 4})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["state"] == "s1"
        mock_calendar_service.start_oauth_flow.assert_called_once_with(4, Provider(provider))

    def test_callback_success(self, client, mock_calendar_service):
        mock_calendar_service.complete_oauth_flow.return_value = integration_obj()

        response = client.get(f"{API}/auth/google/callback", params={"state": "s1", "code": "c1"})

        assert response.status_code == status.HTTP_200_OK
        assert "Google Calendar Successfully Connected!" in response.text
        mock_calendar_service.complete_oauth_flow.assert_called_once_with(Provider.GOOGLE, "s1", "c1")

    def test_callback_denied(self, client, mock_calendar_service):
        response = client.get(f"{API}/auth/outlook/callback", params={"error": "access_denied"})

        assert response.status_code == status.HTTP_200_OK
        assert "Authorization denied: access_denied" in response.text
        mock_calendar_service.complete_oauth_flow.assert_not_called()

    def test_callback_missing_parameters(self, client, mock_calendar_service):
        response = client.get(f"{API}/auth/google/callback", params={"state": "s1"})
        assert "Missing required parameters" in response.text

    def test_callback_invalid_state_is_escaped(self, client, mock_calendar_service):
        mock_calendar_service.complete_oauth_flow.side_effect = ValidationException("Invalid <state>")

        response = client.get(f"{API}/auth/outlook/callback", params={"state": "bad", "code": "c1"})

        assert response.status_code == status.HTTP_200_OK
        assert "Invalid &lt;state&gt;" in response.text


def test_root(client):
    assert client.get("/").json() == {"message": "calsync API"}
