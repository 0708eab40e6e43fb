# calsync/api/routes/health.py
from typing import Any

from fastapi import APIRouter, Depends, Query

from calsync import schemas
from calsync.api import deps
from calsync.services.calendar_service import CalendarService

router = APIRouter()


@router.get("/integrations", response_model=schemas.HealthReport)
def integrations_health(
    user_id: int = Query(...),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    """
    Health status of every integration of a user.
    """
    integrations = calendar_service.list_integrations(user_id)
    return calendar_service.health_monitor.user_report(user_id, integrations)
