"""CalDAV-family adapters. Variants differ only in server profile and URL normalization."""
import logging
from datetime import datetime
from typing import List, Optional

import requests

from calsync.core.constants import Provider, ServerType
from calsync.core.exceptions import ConfigurationError
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.caldav.client import CalDAVClient
from calsync.integrations.caldav.ical_builder import build_event, generate_uid
from calsync.integrations.caldav.path_utils import normalize_url, strip_nextcloud_dav_path
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent, EventData, TokenSet

logger = logging.getLogger(__name__)


def _is_href(ref: str) -> bool:
    return ref.startswith(("/", "http://", "https://"))


class CalDAVAdapter(ProviderAdapter):
    provider = Provider.CALDAV
    server_type = ServerType.GENERIC

    def __init__(self, config: ConnectionConfig, session: Optional[requests.Session] = None):
        super().__init__(config)
        if not config.base_url or not config.username:
            raise ConfigurationError(
                "CalDAV integration is missing its server URL or username",
                provider=self.provider.value,
            )
        self.client = CalDAVClient(
            self.normalize_base_url(config.base_url),
            config.username,
            config.password or "",
            server_type=self.server_type,
            provider=self.provider,
            session=session,
        )

    @classmethod
    def normalize_base_url(cls, url: str) -> str:
        return normalize_url(url, provider=cls.provider)

    def calendar_url(self, calendar_ref: str) -> str:
        """Full collection URL for an href, full URL or bare calendar name."""
        if not _is_href(calendar_ref):
            return self.client.calendar_url(calendar_ref)
        url = self.client.resolve(calendar_ref)
        return url if url.endswith("/") else url + "/"

    def event_url(self, event_id: str, calendar_ref: Optional[str]) -> str:
        if _is_href(event_id):
            return self.client.resolve(event_id)
        ref = self._write_calendar(calendar_ref)
        if not _is_href(ref):
            return self.client.event_url(ref, event_id)
        resource = event_id if event_id.endswith(".ics") else f"{event_id}.ics"
        return self.calendar_url(ref) + resource

    def _first_calendar(self) -> Optional[str]:
        if self.config.calendar_paths:
            return self.config.calendar_paths[0]
        for entry in self.config.calendar_list:
            ref = entry.get("path") or entry.get("id")
            if ref:
                return ref
        return None

    def _write_calendar(self, calendar_ref: Optional[str]) -> str:
        ref = calendar_ref or self.default_calendar_ref() or self._first_calendar()
        if not ref:
            raise ConfigurationError(
                "No calendar configured for this integration", provider=self.provider.value
            )
        return ref

    def list_events(self, calendar_ref: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        url = self.calendar_url(calendar_ref)
        events = self.client.fetch_events(url, start, end)
        for event in events:
            event.calendar_id = calendar_ref
        return events

    def list_primary_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        ref = self._first_calendar()
        if ref is None:
            discovered = self.discover_calendars()
            if not discovered:
                return []
            ref = discovered[0].path or discovered[0].id
        return self.list_events(ref, start, end)

    def create_event(self, event: EventData, calendar_ref: Optional[str] = None) -> CalendarEvent:
        uid = event.uid or generate_uid()
        url = self.event_url(uid, calendar_ref)
        etag = self.client.put(url, build_event(event, uid=uid), create=True)
        logger.info(f"Created CalDAV event {uid} for integration {self.config.integration_id}")
        return self._written(uid, event, url, etag, calendar_ref)

    def update_event(
        self,
        event_id: str,
        event: EventData,
        calendar_ref: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> CalendarEvent:
        url = self.event_url(event_id, calendar_ref)
        uid = event.uid or event_id.rstrip("/").rsplit("/", 1)[-1].removesuffix(".ics")
        new_etag = self.client.put(url, build_event(event, uid=uid), etag=etag, create=False)
        return self._written(uid, event, url, new_etag, calendar_ref)

    def delete_event(self, event_id: str, calendar_ref: Optional[str] = None) -> None:
        self.client.delete(self.event_url(event_id, calendar_ref))

    def _written(self, uid, event: EventData, url, etag, calendar_ref) -> CalendarEvent:
        return CalendarEvent(
            id=uid,
            summary=event.summary,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            description=event.description,
            location=event.location,
            calendar_id=calendar_ref or self.default_calendar_ref(),
            etag=etag,
            href=url,
        )

    def discover_calendars(self) -> List[CalendarDescriptor]:
        return self.client.discover_calendars()

    def refresh_token(self) -> Optional[TokenSet]:
        return None

    def _probe(self) -> str:
        return self.client.check_connection()

    def close(self) -> None:
        self.client.close()


class NextcloudAdapter(CalDAVAdapter):
    provider = Provider.NEXTCLOUD
    server_type = ServerType.NEXTCLOUD

    @classmethod
    def normalize_base_url(cls, url: str) -> str:
        root = strip_nextcloud_dav_path(
            normalize_url(url, provider=cls.provider, ensure_trailing_slash=False)
        )
        return root.rstrip("/") + "/remote.php/dav/"


class OwnCloudAdapter(NextcloudAdapter):
    provider = Provider.OWNCLOUD
    server_type = ServerType.OWNCLOUD


class RadicaleAdapter(CalDAVAdapter):
    provider = Provider.RADICALE
    server_type = ServerType.RADICALE


class BaikalAdapter(CalDAVAdapter):
    provider = Provider.BAIKAL
    server_type = ServerType.BAIKAL


class SabreDAVAdapter(CalDAVAdapter):
    provider = Provider.SABREDAV
    server_type = ServerType.SABREDAV
