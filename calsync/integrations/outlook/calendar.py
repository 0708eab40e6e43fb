"""Outlook calendars through Microsoft Graph over plain requests."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import requests

from calsync.core.constants import OUTLOOK_GRAPH_URL, PROVIDER_FALLBACK_CALENDAR, Provider
from calsync.core.exceptions import (
    CalendarProviderError,
    InsufficientPermissionError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from calsync.core.logging import redact
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.http import parse_retry_after, send
from calsync.integrations.outlook.oauth import OutlookOAuthClient
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent, EventData, TokenSet
from calsync.utils.time import ensure_utc, parse_iso

logger = logging.getLogger(__name__)

_PROVIDER = Provider.OUTLOOK.value
EVENT_PAGE_SIZE = 1000
EVENT_FIELDS = "id,subject,body,location,start,end,isAllDay,showAs,isCancelled"
CALENDAR_FIELDS = "id,name,color,hexColor,isDefaultCalendar,canEdit"


def _graph_time(value: datetime) -> str:
    # $filter compares against naive UTC values
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%S")


def map_response_error(response: requests.Response, action: str) -> CalendarProviderError:
    status = response.status_code
    if status == 401:
        return UnauthorizedError("Token expired or invalid", provider=_PROVIDER)
    if status == 403:
        try:
            error = response.json().get("error", {})
        except ValueError:
            error = {}
        message = str(error.get("message") or "Forbidden")
        code = str(error.get("code") or "").lower()
        lowered = message.lower()
        if "throttled" in code or any(t in lowered for t in ("throttle", "rate", "quota")):
            return RateLimitedError(
                message,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                provider=_PROVIDER,
            )
        if "accessdenied" in code or "permission" in code or any(
            t in lowered for t in ("permission", "insufficient")
        ):
            return InsufficientPermissionError(message, provider=_PROVIDER)
        return TransientError(message, provider=_PROVIDER)
    if status == 404:
        return NotFoundError("Calendar not found", provider=_PROVIDER)
    if status == 429:
        return RateLimitedError(
            "Too many requests",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            provider=_PROVIDER,
        )
    logger.error(f"Outlook Calendar API error during {action}: HTTP {status} {redact(response.text[:500])}")
    return TransientError(f"HTTP {status} (see logs for details)", provider=_PROVIDER)


class OutlookCalendarAdapter(ProviderAdapter):
    provider = Provider.OUTLOOK

    def __init__(
        self,
        config: ConnectionConfig,
        session: Optional[requests.Session] = None,
        oauth_client: Optional[OutlookOAuthClient] = None,
    ):
        super().__init__(config)
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.oauth_client = oauth_client or OutlookOAuthClient(self.session)

    def _request(
        self,
        method: str,
        path_or_url: str,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        accept: Tuple[int, ...] = (200, 201, 204),
    ) -> Dict[str, Any]:
        url = path_or_url if path_or_url.startswith("http") else f"{OUTLOOK_GRAPH_URL}{path_or_url}"
        response = send(
            self.session,
            method,
            url,
            provider=_PROVIDER,
            headers={
                "Authorization": f"Bearer {self.config.access_token}",
                "Content-Type": "application/json",
            },
            params=params,
            json=json,
        )
        if response.status_code not in accept:
            raise map_response_error(response, action)
        if response.status_code in (204, 410) or not response.content:
            return {}
        return response.json()

    def _collect(self, path: str, params: Dict[str, Any], action: str) -> List[Dict[str, Any]]:
        items = []
        url, page_params = path, params
        while url:
            data = self._request("GET", url, action, params=page_params)
            items.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
            page_params = None  # nextLink already carries the query
        return items

    # Payload conversion

    @staticmethod
    def _event_body(event: EventData) -> Dict[str, Any]:
        def when(value: datetime) -> Dict[str, str]:
            return {"dateTime": _graph_time(value), "timeZone": "UTC"}

        body: Dict[str, Any] = {
            "subject": event.summary,
            "body": {"contentType": "Text", "content": event.description or ""},
            "location": {"displayName": event.location or ""},
            "start": when(event.start),
            "end": when(event.end),
            "showAs": "busy",
        }
        if event.all_day:
            body["isAllDay"] = True
        if event.attendees:
            body["attendees"] = [
                {"emailAddress": {"address": email}, "type": "required"}
                for email in event.attendees
            ]
        if event.reminder_minutes is not None:
            body["isReminderOn"] = True
            body["reminderMinutesBeforeStart"] = event.reminder_minutes
        return body

    @staticmethod
    def _to_event(item: Dict[str, Any], calendar_id: Optional[str]) -> CalendarEvent:
        return CalendarEvent(
            id=item["id"],
            summary=item.get("subject"),
            description=(item.get("body") or {}).get("content"),
            location=(item.get("location") or {}).get("displayName"),
            start=parse_iso((item.get("start") or {}).get("dateTime")),
            end=parse_iso((item.get("end") or {}).get("dateTime")),
            all_day=bool(item.get("isAllDay", False)),
            calendar_id=calendar_id,
            etag=item.get("@odata.etag"),
        )

    @staticmethod
    def _events_query(start: datetime, end: datetime) -> Dict[str, Any]:
        return {
            "$filter": (
                f"start/dateTime ge '{_graph_time(start)}' and end/dateTime le '{_graph_time(end)}'"
            ),
            "$orderby": "start/dateTime",
            "$top": str(EVENT_PAGE_SIZE),
            "$select": EVENT_FIELDS,
        }

    def _events_path(self, calendar_ref: Optional[str]) -> str:
        if not calendar_ref or calendar_ref == PROVIDER_FALLBACK_CALENDAR[Provider.OUTLOOK]:
            return "/me/events"
        return f"/me/calendars/{calendar_ref}/events"

    # Contract

    def list_events(self, calendar_ref: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        items = self._collect(self._events_path(calendar_ref), self._events_query(start, end), "list events")
        return [self._to_event(item, calendar_ref) for item in items if not item.get("isCancelled")]

    def list_primary_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        return self.list_events(PROVIDER_FALLBACK_CALENDAR[Provider.OUTLOOK], start, end)

    def create_event(self, event: EventData, calendar_ref: Optional[str] = None) -> CalendarEvent:
        calendar_ref = calendar_ref or self.default_calendar_ref()
        created = self._request(
            "POST", self._events_path(calendar_ref), "create event", json=self._event_body(event)
        )
        logger.info(f"Created Outlook event {created.get('id')} for integration {self.config.integration_id}")
        return self._to_event(created, calendar_ref)

    def update_event(
        self,
        event_id: str,
        event: EventData,
        calendar_ref: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> CalendarEvent:
        calendar_ref = calendar_ref or self.default_calendar_ref()
        updated = self._request(
            "PATCH",
            f"{self._events_path(calendar_ref)}/{event_id}",
            "update event",
            json=self._event_body(event),
        )
        return self._to_event(updated, calendar_ref)

    def delete_event(self, event_id: str, calendar_ref: Optional[str] = None) -> None:
        calendar_ref = calendar_ref or self.default_calendar_ref()
        try:
            self._request(
                "DELETE",
                f"{self._events_path(calendar_ref)}/{event_id}",
                "delete event",
                accept=(200, 204, 410),
            )
        except NotFoundError:
            logger.info(f"Outlook event {event_id} already deleted")

    def discover_calendars(self) -> List[CalendarDescriptor]:
        items = self._collect("/me/calendars", {"$select": CALENDAR_FIELDS}, "list calendars")
        return [
            CalendarDescriptor(
                id=item["id"],
                name=item.get("name") or "Calendar",
                primary=bool(item.get("isDefaultCalendar", False)),
                selected=bool(item.get("isDefaultCalendar", False)),
                color=item.get("hexColor") or None,
                access_role="writer" if item.get("canEdit") else "reader",
            )
            for item in items
        ]

    def refresh_token(self) -> Optional[TokenSet]:
        return self.oauth_client.refresh(self.config.refresh_token)

    def _probe(self) -> str:
        self._request("GET", "/me/calendars", "connection test", params={"$top": "1", "$select": "id"})
        return "Outlook Calendar connection successful"

    def close(self) -> None:
        if self._owns_session:
            self.session.close()
