# calsync/schemas/integration.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from calsync.core.constants import Provider, ServerType
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent


class Integration(BaseModel):
    """Integration as returned by the API. Credentials are never exposed."""

    id: int
    user_id: int
    name: Optional[str] = None
    provider: Provider
    base_url: Optional[str] = None
    is_active: bool
    sync_error: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    default_booking_calendar_id: Optional[str] = None
    calendar_list: List[CalendarDescriptor] = Field(default_factory=list)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("calendar_list", mode="before")
    def default_calendar_list(cls, v):
        return v or []


class CalendarSelectionUpdate(BaseModel):
    selected_calendar_ids: List[str]
    default_booking_calendar_id: Optional[str] = None


class CaldavIntegrationCreate(BaseModel):
    user_id: int
    base_url: str
    username: str
    password: str
    name: Optional[str] = None
    provider: Optional[Provider] = None


class DetectRequest(BaseModel):
    url: str
    username: Optional[str] = None
    password: Optional[str] = None
    probe: bool = False


class DetectResponse(BaseModel):
    server_type: ServerType
    discovery_path: str
    calendar_path: str
    event_path: str
    supports_oauth: bool
    supports_calendar_color: bool
    supports_calendar_order: bool
    requires_calendar_suffix: bool


class EventList(BaseModel):
    integration_id: int
    events: List[CalendarEvent]


class RefreshResponse(BaseModel):
    integration_id: int
    token_expires_at: Optional[datetime] = None


class HealthReport(BaseModel):
    user_id: int
    total: int
    healthy: int
    degraded: int
    unhealthy: int
    integrations: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
