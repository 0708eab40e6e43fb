# calsync/api/routes/integrations.py
import logging
from datetime import datetime
from typing import Any, List

from fastapi import APIRouter, Depends, Query, Response, status

from calsync import schemas
from calsync.api import deps
from calsync.core.logging import log_context
from calsync.models.calendar_integration import CalendarIntegration
from calsync.services.calendar_service import CalendarService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=List[schemas.Integration])
def list_integrations(
    user_id: int = Query(...),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    """
    Integrations of a user, oldest first.
    """
    return calendar_service.list_integrations(user_id)


@router.get("/{integration_id}", response_model=schemas.Integration)
def read_integration(
    integration: CalendarIntegration = Depends(deps.get_integration),
) -> Any:
    return integration


@router.get("/{integration_id}/events", response_model=schemas.EventList)
def read_events(
    start: datetime,
    end: datetime,
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    """
    Events from every selected calendar of the integration, merged.
    """
    with log_context(integration_id=integration.id, action="list_events"):
        events = calendar_service.get_events(integration.id, start, end)
        logger.info(f"Fetched {len(events)} events for integration {integration.id}")
        return schemas.EventList(integration_id=integration.id, events=events)


@router.post("/{integration_id}/discover", response_model=List[schemas.CalendarDescriptor])
def discover_calendars(
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    with log_context(integration_id=integration.id, action="discover_calendars"):
        return calendar_service.discover_and_store(integration)


@router.put("/{integration_id}/calendars", response_model=schemas.Integration)
def update_calendars(
    *,
    selection: schemas.CalendarSelectionUpdate,
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    """
    Replace the selected calendars and optionally choose the default booking calendar.
    """
    with log_context(integration_id=integration.id, action="update_calendar_selection"):
        return calendar_service.update_calendar_selection(
            integration.id,
            selection.selected_calendar_ids,
            selection.default_booking_calendar_id,
        )


@router.post("/{integration_id}/test", response_model=schemas.ConnectionResult)
def test_connection(
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    with log_context(integration_id=integration.id, action="test_connection"):
        return calendar_service.test_connection(integration.id)


@router.post("/{integration_id}/refresh", response_model=schemas.RefreshResponse)
def refresh_token(
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    """
    Force a token refresh for an OAuth integration.
    """
    with log_context(integration_id=integration.id, action="refresh_token"):
        refreshed = calendar_service.refresh(integration.id)
        return schemas.RefreshResponse(
            integration_id=refreshed.id, token_expires_at=refreshed.expires_at
        )


@router.post("/{integration_id}/primary", response_model=schemas.Integration)
def make_primary(
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    with log_context(user_id=integration.user_id, integration_id=integration.id, action="set_primary"):
        return calendar_service.set_primary(integration.user_id, integration.id)


@router.post("/{integration_id}/toggle", response_model=schemas.Integration)
def toggle_integration(
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    with log_context(user_id=integration.user_id, integration_id=integration.id, action="toggle"):
        return calendar_service.toggle(integration.id)


@router.delete("/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_integration(
    integration: CalendarIntegration = Depends(deps.get_integration),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Response:
    with log_context(user_id=integration.user_id, integration_id=integration.id, action="delete"):
        calendar_service.delete(integration.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
