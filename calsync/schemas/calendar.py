# calsync/schemas/calendar.py
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from calsync.core.constants import ErrorCategory


class CalendarDescriptor(BaseModel):
    """One calendar as discovered on a provider; stored in ``calendar_list``."""

    id: str
    path: Optional[str] = None
    name: str = "Calendar"
    primary: bool = False
    selected: bool = False
    color: Optional[str] = None
    access_role: Optional[str] = None

    @classmethod
    def from_stored(cls, data: Dict[str, Any]) -> "CalendarDescriptor":
        """Build from a stored dict, tolerating legacy keys."""
        return cls(
            id=str(data.get("id") or data.get("path") or ""),
            path=data.get("path"),
            name=data.get("name") or data.get("display_name") or "Calendar",
            primary=bool(data.get("primary", False)),
            selected=bool(data.get("selected", False)),
            color=data.get("color"),
            access_role=data.get("access_role"),
        )


class RecurrenceRule(BaseModel):
    freq: Literal["DAILY", "WEEKLY", "MONTHLY", "YEARLY"]
    interval: int = 1
    count: Optional[int] = None
    until: Optional[datetime] = None
    by_day: List[str] = Field(default_factory=list)
    by_month: List[int] = Field(default_factory=list)


class EventData(BaseModel):
    """An event to write to a provider."""

    uid: Optional[str] = None
    summary: str
    start: datetime
    end: datetime
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None
    transparency: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    url: Optional[str] = None
    organizer_email: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    reminder_minutes: Optional[int] = None
    reminder_action: str = "DISPLAY"
    recurrence: Optional[RecurrenceRule] = None


class CalendarEvent(BaseModel):
    """An event read from a provider, normalized across providers."""

    id: str
    summary: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    description: Optional[str] = None
    location: Optional[str] = None
    calendar_id: Optional[str] = None
    etag: Optional[str] = None
    href: Optional[str] = None


class ConnectionResult(BaseModel):
    ok: bool
    message: str
    category: Optional[ErrorCategory] = None


class TokenSet(BaseModel):
    """Result of a token endpoint exchange."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime
    scope: Optional[str] = None
