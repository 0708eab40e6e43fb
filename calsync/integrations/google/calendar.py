import json
import logging
import socket
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.core.config import settings
from calsync.core.constants import GOOGLE_EVENT_ID_LENGTH, PROVIDER_FALLBACK_CALENDAR, Provider
from calsync.core.exceptions import (
    CalendarProviderError,
    InsufficientPermissionError,
    NotFoundError,
    ProviderTimeoutError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.caldav.ical_builder import build_rrule
from calsync.integrations.google.oauth import GoogleOAuthClient
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent, EventData, TokenSet
from calsync.utils.time import parse_iso, to_rfc3339

logger = logging.getLogger(__name__)

EVENT_PAGE_SIZE = 2500
_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
_PROVIDER = Provider.GOOGLE.value


def uuid_to_google_event_id(value: str) -> str:
    """
    Google event ids allow only base32hex characters, so hyphens go.

    >>> uuid_to_google_event_id("3F2504E0-4F89-11D3-9A0C-0305E82C3301")
    '3f2504e04f8911d39a0c0305e82c3301'
    """
    return value.replace("-", "").lower()[:GOOGLE_EVENT_ID_LENGTH]


def google_event_id(value: str) -> str:
    """Normalize UUIDs to Google's id alphabet; other ids pass through."""
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return value
    return uuid_to_google_event_id(value)


def _error_reasons(error: HttpError) -> List[str]:
    try:
        payload = json.loads(error.content.decode("utf-8"))
    except (ValueError, AttributeError):
        return []
    errors = payload.get("error", {}).get("errors", []) if isinstance(payload, dict) else []
    return [e.get("reason", "") for e in errors if isinstance(e, dict)]


def map_http_error(error: HttpError, action: str) -> CalendarProviderError:
    """Typed provider error for a Google API ``HttpError``."""
    status = error.resp.status
    reasons = _error_reasons(error)
    message = str(getattr(error, "reason", "") or error)
    lowered = message.lower()
    detail = f"Google Calendar {action} failed ({status}): {message}"

    if status == 401:
        return UnauthorizedError(detail, provider=_PROVIDER)
    if status == 403:
        if _RATE_LIMIT_REASONS.intersection(reasons) or "quota" in lowered or "rate" in lowered:
            return RateLimitedError(detail, provider=_PROVIDER)
        if "insufficientPermissions" in reasons or "insufficient" in lowered or "forbidden" in lowered:
            return InsufficientPermissionError(detail, provider=_PROVIDER)
        return TransientError(detail, provider=_PROVIDER)
    if status == 404:
        return NotFoundError(detail, provider=_PROVIDER)
    if status == 429:
        return RateLimitedError(detail, provider=_PROVIDER)
    return TransientError(detail, provider=_PROVIDER)


class GoogleCalendarAdapter(ProviderAdapter):
    """Google Calendar API v3 through the discovery client."""

    provider = Provider.GOOGLE

    def __init__(self, config: ConnectionConfig, service=None):
        super().__init__(config)
        self._owns_service = service is None
        self._service = service

    @property
    def service(self):
        if self._service is None:
            credentials = GoogleOAuthClient.get_credentials(
                self.config.access_token, self.config.refresh_token
            )
            http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=settings.REQUEST_TIMEOUT))
            self._service = build("calendar", "v3", http=http, cache_discovery=False)
        return self._service

    def _execute(self, request, action: str) -> Dict[str, Any]:
        try:
            return request.execute()
        except HttpError as e:
            raise map_http_error(e, action) from e
        except RefreshError as e:
            raise UnauthorizedError(f"Google credentials rejected: {e}", provider=_PROVIDER) from e
        except (socket.timeout, TimeoutError) as e:
            raise ProviderTimeoutError(f"Google Calendar {action} timed out", provider=_PROVIDER) from e
        except (TransportError, httplib2.HttpLib2Error, OSError) as e:
            raise TransientError(f"Google Calendar {action} network error: {e}", provider=_PROVIDER) from e

    # Payload conversion

    @staticmethod
    def _time_field(value: datetime, all_day: bool) -> Dict[str, str]:
        if all_day:
            return {"date": value.date().isoformat()}
        return {"dateTime": to_rfc3339(value), "timeZone": "UTC"}

    def _event_body(self, event: EventData) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "summary": event.summary,
            "description": event.description or "",
            "start": self._time_field(event.start, event.all_day),
            "end": self._time_field(event.end, event.all_day),
        }
        if event.location:
            body["location"] = event.location
        if event.attendees:
            body["attendees"] = [{"email": email} for email in event.attendees]
        if event.transparency:
            body["transparency"] = event.transparency.lower()
        rrule = build_rrule(event.recurrence)
        if rrule:
            body["recurrence"] = [rrule]
        if event.reminder_minutes is not None:
            body["reminders"] = {
                "useDefault": False,
                "overrides": [{"method": "popup", "minutes": event.reminder_minutes}],
            }
        else:
            body["reminders"] = {"useDefault": True}
        return body

    @staticmethod
    def _to_event(item: Dict[str, Any], calendar_id: Optional[str]) -> CalendarEvent:
        start = item.get("start", {})
        end = item.get("end", {})
        return CalendarEvent(
            id=item["id"],
            summary=item.get("summary"),
            description=item.get("description"),
            location=item.get("location"),
            start=parse_iso(start.get("dateTime") or start.get("date")),
            end=parse_iso(end.get("dateTime") or end.get("date")),
            all_day="date" in start and "dateTime" not in start,
            calendar_id=calendar_id,
            etag=item.get("etag"),
            href=item.get("htmlLink"),
        )

    # Contract

    def list_events(self, calendar_ref: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        events = []
        page_token = None
        while True:
            request = self.service.events().list(
                calendarId=calendar_ref,
                timeMin=to_rfc3339(start),
                timeMax=to_rfc3339(end),
                singleEvents=True,
                orderBy="startTime",
                maxResults=EVENT_PAGE_SIZE,
                pageToken=page_token,
            )
            result = self._execute(request, "list events")
            events.extend(self._to_event(item, calendar_ref) for item in result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return events

    def list_primary_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        return self.list_events(self._calendar(None), start, end)

    def _calendar(self, calendar_ref: Optional[str]) -> str:
        return calendar_ref or self.default_calendar_ref() or PROVIDER_FALLBACK_CALENDAR[Provider.GOOGLE]

    def create_event(self, event: EventData, calendar_ref: Optional[str] = None) -> CalendarEvent:
        calendar_id = self._calendar(calendar_ref)
        body = self._event_body(event)
        if event.uid:
            body["id"] = google_event_id(event.uid)
        created = self._execute(
            self.service.events().insert(calendarId=calendar_id, body=body), "create event"
        )
        logger.info(f"Created event {created.get('id')} in calendar {calendar_id}")
        return self._to_event(created, calendar_id)

    def update_event(
        self,
        event_id: str,
        event: EventData,
        calendar_ref: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> CalendarEvent:
        calendar_id = self._calendar(calendar_ref)
        updated = self._execute(
            self.service.events().update(
                calendarId=calendar_id,
                eventId=google_event_id(event_id),
                body=self._event_body(event),
            ),
            "update event",
        )
        logger.info(f"Updated event {updated.get('id')} in calendar {calendar_id}")
        return self._to_event(updated, calendar_id)

    def delete_event(self, event_id: str, calendar_ref: Optional[str] = None) -> None:
        calendar_id = self._calendar(calendar_ref)
        request = self.service.events().delete(
            calendarId=calendar_id, eventId=google_event_id(event_id)
        )
        try:
            request.execute()
        except HttpError as e:
            if e.resp.status in (404, 410):
                logger.info(f"Event {event_id} already deleted from calendar {calendar_id}")
                return
            raise map_http_error(e, "delete event") from e
        except RefreshError as e:
            raise UnauthorizedError(f"Google credentials rejected: {e}", provider=_PROVIDER) from e
        except (TransportError, httplib2.HttpLib2Error, OSError) as e:
            raise TransientError(f"Google Calendar delete event network error: {e}", provider=_PROVIDER) from e
        logger.info(f"Deleted event {event_id} from calendar {calendar_id}")

    def discover_calendars(self) -> List[CalendarDescriptor]:
        calendars = []
        page_token = None
        while True:
            result = self._execute(
                self.service.calendarList().list(pageToken=page_token), "list calendars"
            )
            for item in result.get("items", []):
                calendars.append(
                    CalendarDescriptor(
                        id=item["id"],
                        name=item.get("summaryOverride") or item.get("summary") or "Calendar",
                        primary=bool(item.get("primary", False)),
                        selected=bool(item.get("selected", False)),
                        color=item.get("backgroundColor"),
                        access_role=item.get("accessRole"),
                    )
                )
            page_token = result.get("nextPageToken")
            if not page_token:
                return calendars

    def refresh_token(self) -> Optional[TokenSet]:
        return GoogleOAuthClient.refresh(self.config.refresh_token)

    def _probe(self) -> str:
        self._execute(self.service.calendarList().list(maxResults=1), "connection test")
        return "Google Calendar connection successful"

    def close(self) -> None:
        if self._owns_service and self._service is not None:
            self._service.close()
            self._service = None
