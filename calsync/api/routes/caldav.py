# calsync/api/routes/caldav.py
import logging
from typing import Any

from fastapi import APIRouter, Depends, status

from calsync import schemas
from calsync.api import deps
from calsync.core.logging import log_context
from calsync.integrations.caldav import server_detector
from calsync.services.calendar_service import CalendarService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/detect", response_model=schemas.DetectResponse)
def detect_server(
    request: schemas.DetectRequest,
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    """
    Detect the server type behind a CalDAV URL.

    With ``probe`` set and a username given, an OPTIONS request is sent and
    the response headers take part in detection.
    """
    server_type = calendar_service.detect_server(
        request.url, request.username, request.password, probe=request.probe
    )
    profile = server_detector.get_profile(server_type)
    return schemas.DetectResponse(
        server_type=server_type,
        discovery_path=profile.discovery_path,
        calendar_path=profile.calendar_path_pattern,
        event_path=profile.event_path_pattern,
        supports_oauth=profile.supports_oauth,
        supports_calendar_color=profile.supports_calendar_color,
        supports_calendar_order=profile.supports_calendar_order,
        requires_calendar_suffix=profile.requires_calendar_suffix,
    )


@router.post(
    "/integrations",
    response_model=schemas.Integration,
    status_code=status.HTTP_201_CREATED,
)
def create_caldav_integration(
    *,
    integration_in: schemas.CaldavIntegrationCreate,
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    with log_context(user_id=integration_in.user_id, action="create_caldav_integration"):
        logger.info(f"User {integration_in.user_id} connecting a CalDAV server")
        return calendar_service.create_caldav_integration(
            user_id=integration_in.user_id,
            base_url=integration_in.base_url,
            username=integration_in.username,
            password=integration_in.password,
            provider=integration_in.provider,
            name=integration_in.name,
        )
