# calsync/api/deps.py
from fastapi import Depends

from calsync.models.calendar_integration import CalendarIntegration
from calsync.services.calendar_service import CalendarService
from calsync.utils.dependencies import get_service


# Service dependencies - resolved at request time, after services are registered
def get_calendar_service():
    return get_service(CalendarService)


def get_integration(
    integration_id: int,
    calendar_service: CalendarService = Depends(get_calendar_service()),
) -> CalendarIntegration:
    """Load the integration named in the path or raise a 404."""
    return calendar_service.get_integration(integration_id)
