from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from calsync.core.constants import Provider
from calsync.core.exceptions import CalendarProviderError
from calsync.schemas.calendar import (
    CalendarDescriptor,
    CalendarEvent,
    ConnectionResult,
    EventData,
    TokenSet,
)
from calsync.utils.time import ensure_utc


@dataclass(frozen=True)
class ConnectionConfig:
    """
    Immutable snapshot of what an adapter needs from an integration.

    Adapters run on worker threads, so they get plain values rather than a
    session-bound ORM object.
    """

    provider: Provider
    integration_id: Optional[int] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    base_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    default_booking_calendar_id: Optional[str] = None
    calendar_list: Tuple[Dict[str, Any], ...] = field(default_factory=tuple)
    calendar_paths: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_integration(cls, integration) -> "ConnectionConfig":
        return cls(
            provider=Provider(integration.provider),
            integration_id=integration.id,
            access_token=integration.access_token,
            refresh_token=integration.refresh_token,
            token_expires_at=ensure_utc(integration.token_expires_at),
            base_url=integration.base_url,
            username=integration.username,
            password=integration.password,
            default_booking_calendar_id=integration.default_booking_calendar_id,
            calendar_list=tuple(integration.calendar_list or ()),
            calendar_paths=tuple(integration.calendar_paths or ()),
        )


class ProviderAdapter(ABC):
    """
    Uniform calendar contract implemented once per provider.

    Expected provider failures surface as ``CalendarProviderError``
    subclasses; nothing else escapes for an HTTP-level problem.
    """

    provider: Provider

    def __init__(self, config: ConnectionConfig):
        self.config = config

    @abstractmethod
    def list_events(
        self, calendar_ref: str, start: datetime, end: datetime
    ) -> List[CalendarEvent]:
        """Events of one calendar overlapping ``[start, end]``."""

    @abstractmethod
    def list_primary_events(self, start: datetime, end: datetime) -> List[CalendarEvent]:
        """Events of the provider's primary calendar."""

    @abstractmethod
    def create_event(
        self, event: EventData, calendar_ref: Optional[str] = None
    ) -> CalendarEvent:
        pass

    @abstractmethod
    def update_event(
        self,
        event_id: str,
        event: EventData,
        calendar_ref: Optional[str] = None,
        etag: Optional[str] = None,
    ) -> CalendarEvent:
        pass

    @abstractmethod
    def delete_event(self, event_id: str, calendar_ref: Optional[str] = None) -> None:
        """Delete an event; an event that is already gone counts as deleted."""

    @abstractmethod
    def discover_calendars(self) -> List[CalendarDescriptor]:
        pass

    @abstractmethod
    def refresh_token(self) -> Optional[TokenSet]:
        """Exchange the refresh token; ``None`` for providers without OAuth."""

    @abstractmethod
    def _probe(self) -> str:
        """Cheapest authenticated call; returns a success message."""

    def test_connection(self) -> ConnectionResult:
        """Probe the provider and report the outcome without raising."""
        try:
            message = self._probe()
        except CalendarProviderError as e:
            return ConnectionResult(ok=False, message=e.message, category=e.category)
        return ConnectionResult(ok=True, message=message)

    def default_calendar_ref(self) -> Optional[str]:
        """Calendar used for writes when the caller does not name one."""
        return self.config.default_booking_calendar_id

    def close(self) -> None:
        """Release pooled connections held by the adapter."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
