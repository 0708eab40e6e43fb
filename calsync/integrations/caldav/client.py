"""
Low-level CalDAV client over requests with HTTP Basic auth.

The client only knows URLs and WebDAV verbs. Status codes are translated to
``CalendarProviderError`` subclasses here so the adapters above never see a
raw response they have to interpret.
"""
import logging
import time
from datetime import datetime
from typing import Callable, Iterable, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from calsync.core.constants import Provider, ServerType
from calsync.core.exceptions import (
    ConfigurationError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    UnauthorizedError,
)
from calsync.integrations.caldav import server_detector, xml_parser
from calsync.integrations.caldav.ical_parser import parse_events
from calsync.integrations.caldav.path_utils import build_full_url, extract_base_url
from calsync.integrations.http import parse_retry_after, send, with_retries
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent

logger = logging.getLogger(__name__)

PROPFIND_TIMEOUT = 10
REPORT_TIMEOUT = 15
WRITE_TIMEOUT = 60
PROPFIND_RETRIES = 2
REPORT_RETRIES = 1

_XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}
_ICS_HEADERS = {"Content-Type": "text/calendar; charset=utf-8"}


class CalDAVClient:
    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        server_type: ServerType = ServerType.GENERIC,
        provider: Provider = Provider.CALDAV,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url
        self.username = username
        self.server_type = ServerType(server_type)
        self.provider = Provider(provider)
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.session.auth = HTTPBasicAuth(username, password)
        self._sleep = sleep

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    # URLs

    @property
    def origin(self) -> str:
        return extract_base_url(self.base_url)

    @property
    def root(self) -> str:
        return server_detector.server_root(self.base_url, self.username, self.server_type)

    def discovery_url(self) -> str:
        """Collection listing the user's calendars, from the server profile."""
        return server_detector.build_discovery_url(self.root, self.username, self.server_type)

    def calendar_url(self, calendar_name: str) -> str:
        return server_detector.build_calendar_url(self.root, self.username, calendar_name, self.server_type)

    def event_url(self, calendar_name: str, uid: str) -> str:
        return server_detector.build_event_url(self.root, self.username, calendar_name, uid, self.server_type)

    def resolve(self, path_or_url: str) -> str:
        """Absolute URL for an href returned by the server."""
        return build_full_url(self.origin, path_or_url)

    # Status handling

    def _raise_for_status(self, response: requests.Response, action: str) -> None:
        code = response.status_code
        if code == 207 or 200 <= code < 300:
            return
        provider = self.provider.value
        if code in (401, 403):
            raise UnauthorizedError(
                f"CalDAV authentication failed during {action} ({code})", provider=provider
            )
        if code == 404:
            raise NotFoundError(f"CalDAV resource not found during {action}", provider=provider)
        if code == 412:
            raise ConfigurationError("Precondition failed", provider=provider)
        if code == 429:
            raise RateLimitedError(
                "CalDAV server is throttling requests",
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                provider=provider,
            )
        if code >= 500:
            raise TransientError(f"CalDAV server error during {action} ({code})", provider=provider)
        raise ConfigurationError(f"CalDAV {action} rejected ({code})", provider=provider)

    def _request(self, method: str, url: str, *, read_timeout: float, action: str, **kwargs):
        response = send(
            self.session,
            method,
            url,
            provider=self.provider.value,
            read_timeout=read_timeout,
            **kwargs,
        )
        self._raise_for_status(response, action)
        return response

    # WebDAV verbs

    def propfind(self, url: str, depth: int = 1, properties: Iterable[str] = xml_parser.DISCOVERY_PROPERTIES) -> str:
        body = xml_parser.build_propfind_body(properties)
        headers = {**_XML_HEADERS, "Depth": str(depth)}
        return with_retries(
            lambda: self._request(
                "PROPFIND", url, read_timeout=PROPFIND_TIMEOUT, action="PROPFIND",
                headers=headers, data=body.encode("utf-8"),
            ).text,
            retries=PROPFIND_RETRIES,
            sleep=self._sleep,
            label=f"PROPFIND {url}",
        )

    def report(self, url: str, start: datetime, end: datetime) -> str:
        body = xml_parser.build_calendar_query(start, end)
        headers = {**_XML_HEADERS, "Depth": "1"}
        return with_retries(
            lambda: self._request(
                "REPORT", url, read_timeout=REPORT_TIMEOUT, action="REPORT",
                headers=headers, data=body.encode("utf-8"),
            ).text,
            retries=REPORT_RETRIES,
            sleep=self._sleep,
            label=f"REPORT {url}",
        )

    def put(self, url: str, ical: str, etag: Optional[str] = None, create: bool = True) -> Optional[str]:
        """Store an event resource; returns the new ETag when the server sends one."""
        headers = dict(_ICS_HEADERS)
        if create:
            headers["If-None-Match"] = "*"
        else:
            headers["If-Match"] = f'"{etag}"' if etag else "*"
        response = self._request(
            "PUT", url, read_timeout=WRITE_TIMEOUT, action="PUT",
            headers=headers, data=ical.encode("utf-8"),
        )
        return xml_parser.clean_etag(response.headers.get("ETag"))

    def delete(self, url: str) -> None:
        try:
            self._request("DELETE", url, read_timeout=WRITE_TIMEOUT, action="DELETE")
        except NotFoundError:
            logger.info(f"CalDAV event {url} already deleted")

    # Higher level

    def discover_calendars(self) -> List[CalendarDescriptor]:
        body = self.propfind(self.discovery_url(), depth=1)
        calendars = xml_parser.parse_calendar_discovery(body)
        logger.info(f"Discovered {len(calendars)} calendars on {self.origin}")
        return calendars

    def fetch_events(self, calendar_url: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        body = self.report(calendar_url, start, end)
        events = []
        for item in xml_parser.parse_multistatus_items(body):
            if not item.calendar_data:
                continue
            events.extend(
                parse_events(
                    item.calendar_data,
                    calendar_id=calendar_url,
                    href=item.href,
                    etag=item.etag,
                )
            )
        return events

    def check_connection(self) -> str:
        self.propfind(self.discovery_url(), depth=0, properties=("resourcetype",))
        return "CalDAV connection successful"
