# calsync/api/routes/google_auth.py
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse

from calsync.api import deps
from calsync.api.pages import error_page, success_page
from calsync.core.constants import Provider
from calsync.core.exceptions import BusinessException
from calsync.core.logging import log_context
from calsync.services.calendar_service import CalendarService

router = APIRouter()
logger = logging.getLogger(__name__)

PROVIDER_NAME = "Google Calendar"


@router.get("/authorize")
def authorize_google(
    user_id: int = Query(...),
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
) -> Any:
    """Start the Google OAuth flow."""
    with log_context(user_id=user_id, action="google_authorize"):
        return calendar_service.start_oauth_flow(user_id, Provider.GOOGLE)


@router.get("/callback", response_class=HTMLResponse)
def google_auth_callback(
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    calendar_service: CalendarService = Depends(deps.get_calendar_service()),
):
    """
    Public OAuth callback endpoint; exchanges the code and creates the integration.
    """
    if error:
        return error_page(PROVIDER_NAME, f"Authorization denied: {error}")
    if not code or not state:
        return error_page(PROVIDER_NAME, "Missing required parameters")

    try:
        integration = calendar_service.complete_oauth_flow(Provider.GOOGLE, state, code)
    except BusinessException as e:
        logger.error(f"Error completing Google OAuth: {e.message}")
        return error_page(PROVIDER_NAME, e.message)

    logger.info(f"Google integration {integration.id} connected for user {integration.user_id}")
    return success_page(PROVIDER_NAME)
