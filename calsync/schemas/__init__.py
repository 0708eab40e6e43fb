# calsync/schemas/__init__.py
from calsync.schemas.calendar import (
    CalendarDescriptor,
    CalendarEvent,
    ConnectionResult,
    EventData,
    RecurrenceRule,
    TokenSet,
)
from calsync.schemas.integration import (
    CaldavIntegrationCreate,
    CalendarSelectionUpdate,
    DetectRequest,
    DetectResponse,
    EventList,
    HealthReport,
    Integration,
    RefreshResponse,
)
