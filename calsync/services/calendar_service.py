import logging
import secrets
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calsync.core.config import settings
from calsync.core.constants import SERVER_TYPE_PROVIDERS, Provider
from calsync.core.exceptions import (
    CalendarProviderError,
    ConfigurationError,
    ResourceNotFoundException,
    ValidationException,
)
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.caldav import server_detector
from calsync.integrations.factory import ProviderFactory
from calsync.integrations.google.oauth import GoogleOAuthClient
from calsync.integrations.outlook.oauth import OutlookOAuthClient
from calsync.models.calendar_integration import CalendarIntegration
from calsync.repositories.calendar_integration_repository import CalendarIntegrationRepository
from calsync.repositories.profile_repository import ProfileRepository
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent, ConnectionResult, TokenSet
from calsync.services import calendar_selection
from calsync.services.health_monitor import HealthMonitor, get_health_monitor, outcome_for_result
from calsync.services.multi_calendar_fetch import MultiCalendarFetcher
from calsync.services.token_service import TokenService

logger = logging.getLogger(__name__)

# Pending OAuth authorizations: state -> (user_id, provider).
# In a multi-process deployment this belongs in a shared cache.
OAUTH_STATES: Dict[str, Tuple[int, Provider]] = {}
_oauth_states_lock = threading.Lock()

_DEFAULT_NAMES = {
    Provider.GOOGLE: "Google Calendar",
    Provider.OUTLOOK: "Outlook Calendar",
    Provider.CALDAV: "CalDAV",
    Provider.NEXTCLOUD: "Nextcloud",
    Provider.OWNCLOUD: "ownCloud",
    Provider.RADICALE: "Radicale",
    Provider.BAIKAL: "Baikal",
    Provider.SABREDAV: "SabreDAV",
}


class CalendarService:
    """Integration lifecycle: creation, discovery, selection, primary handling and events."""

    def __init__(
        self,
        db: Session,
        token_service: Optional[TokenService] = None,
        health_monitor: Optional[HealthMonitor] = None,
        fetcher: Optional[MultiCalendarFetcher] = None,
        adapter_factory: Callable[[ConnectionConfig], ProviderAdapter] = ProviderFactory.create,
        outlook_oauth: Optional[OutlookOAuthClient] = None,
    ):
        self.db = db
        self.repository = CalendarIntegrationRepository(db)
        self.profiles = ProfileRepository(db)
        self.adapter_factory = adapter_factory
        self.token_service = token_service or TokenService(db, adapter_factory=adapter_factory)
        self.health_monitor = health_monitor or get_health_monitor()
        self.fetcher = fetcher or MultiCalendarFetcher(self.health_monitor, adapter_factory=adapter_factory)
        self.outlook_oauth = outlook_oauth or OutlookOAuthClient()

    # Lookup

    def get_integration(self, integration_id: int) -> CalendarIntegration:
        integration = self.repository.get(integration_id)
        if integration is None:
            raise ResourceNotFoundException(f"Calendar integration {integration_id} not found")
        return integration

    def list_integrations(self, user_id: int) -> List[CalendarIntegration]:
        return self.repository.list_for_user(user_id)

    def adapter_for(self, integration: CalendarIntegration) -> ProviderAdapter:
        """Adapter with a valid access token."""
        integration = self.token_service.ensure_valid(integration)
        return self.adapter_factory(ConnectionConfig.from_integration(integration))

    # OAuth creation

    def start_oauth_flow(self, user_id: int, provider: Provider) -> Dict[str, Any]:
        """Start the OAuth flow for a user."""
        provider = Provider(provider)
        state = secrets.token_urlsafe(32)
        if provider == Provider.GOOGLE:
            url = GoogleOAuthClient.authorization_url(state)
        elif provider == Provider.OUTLOOK:
            url = self.outlook_oauth.authorization_url(state)
        else:
            raise ValidationException(f"{provider.value} does not use OAuth")

        with _oauth_states_lock:
            OAUTH_STATES[state] = (user_id, provider)
        return {"authorization_url": url, "state": state}

    def complete_oauth_flow(self, provider: Provider, state: str, code: str) -> CalendarIntegration:
        """Complete the OAuth flow with the received code."""
        provider = Provider(provider)
        with _oauth_states_lock:
            pending = OAUTH_STATES.pop(state, None)
        if pending is None or pending[1] != provider:
            raise ValidationException("Invalid or expired OAuth state")
        user_id = pending[0]

        if provider == Provider.GOOGLE:
            tokens = GoogleOAuthClient.exchange_code(code)
        else:
            tokens = self.outlook_oauth.exchange_code(code)
        return self.create_oauth_integration(user_id, provider, tokens)

    def create_oauth_integration(self, user_id: int, provider: Provider, tokens: TokenSet) -> CalendarIntegration:
        provider = Provider(provider)
        integration = self.repository.create(
            {
                "user_id": user_id,
                "provider": provider,
                "name": _DEFAULT_NAMES[provider],
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token,
                "token_expires_at": tokens.expires_at,
                "oauth_scope": tokens.scope,
                "is_active": True,
            }
        )
        logger.info(f"Created {provider.value} integration {integration.id} for user {user_id}")
        return self._finish_creation(integration)

    # CalDAV creation

    def detect_server(self, base_url: str, username: Optional[str] = None, password: Optional[str] = None, probe: bool = False):
        if probe and username:
            return server_detector.auto_detect(base_url, username, password or "")
        return server_detector.detect_from_url(base_url)

    def create_caldav_integration(
        self,
        user_id: int,
        base_url: str,
        username: str,
        password: str,
        provider: Optional[Provider] = None,
        name: Optional[str] = None,
    ) -> CalendarIntegration:
        """
        Create a CalDAV-family integration after a successful connection test.

        The server type is auto-detected when ``provider`` is not given.
        """
        if provider is None:
            provider = SERVER_TYPE_PROVIDERS[server_detector.auto_detect(base_url, username, password)]
        provider = Provider(provider)
        if not provider.is_caldav:
            raise ValidationException(f"{provider.value} is not a CalDAV provider")

        adapter_class = ProviderFactory.adapter_class(provider)
        normalized = adapter_class.normalize_base_url(base_url)
        config = ConnectionConfig(provider=provider, base_url=normalized, username=username, password=password)
        with self.adapter_factory(config) as adapter:
            result = adapter.test_connection()
        if not result.ok:
            raise ConfigurationError(
                f"Could not connect to the CalDAV server: {result.message}",
                provider=provider.value,
                details={"category": result.category.value if result.category else None},
            )

        integration = self.repository.create(
            {
                "user_id": user_id,
                "provider": provider,
                "name": name or _DEFAULT_NAMES[provider],
                "base_url": normalized,
                "username": username,
                "password": password,
                "is_active": True,
            }
        )
        logger.info(f"Created {provider.value} integration {integration.id} for user {user_id}")
        return self._finish_creation(integration)

    def _finish_creation(self, integration: CalendarIntegration) -> CalendarIntegration:
        try:
            self.discover_and_store(integration)
        except CalendarProviderError as e:
            logger.warning(f"Initial discovery failed for integration {integration.id}: {e.message}")
            self.repository.update(integration, {"sync_error": e.message})
        if self._needs_primary(integration.user_id):
            self.set_primary(integration.user_id, integration.id)
        return self.get_integration(integration.id)

    # Discovery and selection

    def discover_calendars(self, integration_id: int) -> List[CalendarDescriptor]:
        return self.discover_and_store(self.get_integration(integration_id))

    def discover_and_store(self, integration: CalendarIntegration) -> List[CalendarDescriptor]:
        """Run discovery, keep earlier selections and store the merged list."""
        with self.adapter_for(integration) as adapter:
            discovered = adapter.discover_calendars()
        calendars = calendar_selection.unify_discovered_with_existing(discovered, integration.calendar_list)

        default_id = integration.default_booking_calendar_id
        known_ids = {c.id for c in calendars}
        if default_id and default_id not in known_ids:
            default_id = None
        if default_id is None and self._may_hold_default(integration):
            default_id = calendar_selection.resolve_default_calendar(
                integration.provider, calendars, integration.calendar_paths
            )
            if default_id not in known_ids and calendars:
                default_id = calendars[0].id
        calendars = calendar_selection.ensure_selected(calendars, default_id)

        attrs = {"calendar_list": [c.model_dump() for c in calendars], "sync_error": None}
        if Provider(integration.provider).is_caldav:
            attrs["calendar_paths"] = [c.path for c in calendars if c.selected and c.path]
        self.repository.update(integration, attrs)
        self._assign_default(integration, default_id)
        logger.info(f"Stored {len(calendars)} calendars for integration {integration.id}")
        return calendars

    def update_calendar_selection(
        self, integration_id: int, selected_ids: List[str], default_id: Optional[str] = None
    ) -> CalendarIntegration:
        integration = self.get_integration(integration_id)
        calendars = calendar_selection.apply_selection(integration.calendar_list, selected_ids, default_id)
        attrs: Dict[str, Any] = {"calendar_list": [c.model_dump() for c in calendars]}
        if Provider(integration.provider).is_caldav:
            attrs["calendar_paths"] = [c.path for c in calendars if c.selected and c.path]
        if default_id:
            attrs["is_active"] = True
        integration = self.repository.update(integration, attrs)
        if default_id:
            self.set_primary(integration.user_id, integration.id, default_calendar_id=default_id)
        return self.get_integration(integration_id)

    # Primary and default calendars

    def _primary_id(self, user_id: int) -> Optional[int]:
        profile = self.profiles.get_by_user_id(user_id)
        return profile.primary_calendar_integration_id if profile else None

    def _needs_primary(self, user_id: int) -> bool:
        primary_id = self._primary_id(user_id)
        if primary_id is None:
            return True
        primary = self.repository.get(primary_id)
        return primary is None or not primary.is_active

    def _may_hold_default(self, integration: CalendarIntegration) -> bool:
        return self.repository.find_default_holder(integration.user_id, exclude_id=integration.id) is None

    def _assign_default(self, integration: CalendarIntegration, calendar_id: Optional[str]) -> None:
        if calendar_id == integration.default_booking_calendar_id:
            return
        try:
            self.repository.update(integration, {"default_booking_calendar_id": calendar_id})
        except IntegrityError:
            logger.warning(
                f"User {integration.user_id} already has a default booking calendar; "
                f"keeping it instead of {calendar_id}"
            )
            self.db.refresh(integration)

    def set_primary(
        self, user_id: int, integration_id: int, default_calendar_id: Optional[str] = None
    ) -> CalendarIntegration:
        integration = self.get_integration(integration_id)
        if integration.user_id != user_id:
            raise ResourceNotFoundException(f"Calendar integration {integration_id} not found")

        self.repository.clear_default_booking_calendars(user_id, except_id=integration_id)
        self.profiles.set_primary_integration(user_id, integration_id)
        self.db.refresh(integration)

        calendar_id = (
            default_calendar_id
            or integration.default_booking_calendar_id
            or calendar_selection.resolve_default_calendar(
                integration.provider, integration.calendar_list, integration.calendar_paths
            )
        )
        self._assign_default(integration, calendar_id)
        logger.info(f"Integration {integration_id} is now primary for user {user_id}")
        return integration

    def promote_next_primary(self, user_id: int, exclude_id: Optional[int] = None) -> Optional[CalendarIntegration]:
        candidate = calendar_selection.next_primary(
            self.repository.list_active_for_user(user_id),
            exclude_id=exclude_id,
            order=settings.PRIMARY_PROMOTION_ORDER,
        )
        if candidate is None:
            self.profiles.set_primary_integration(user_id, None)
            logger.info(f"User {user_id} has no active integration left to promote")
            return None
        return self.set_primary(user_id, candidate.id)

    def toggle(self, integration_id: int) -> CalendarIntegration:
        integration = self.get_integration(integration_id)
        user_id = integration.user_id
        integration = self.repository.update(integration, {"is_active": not integration.is_active})
        if not integration.is_active:
            if self._primary_id(user_id) == integration_id:
                self.promote_next_primary(user_id, exclude_id=integration_id)
        elif self._needs_primary(user_id):
            self.set_primary(user_id, integration_id)
        return self.get_integration(integration_id)

    def delete(self, integration_id: int) -> None:
        integration = self.get_integration(integration_id)
        user_id = integration.user_id
        was_primary = self._primary_id(user_id) == integration_id
        if was_primary:
            self.profiles.set_primary_integration(user_id, None)
        self.repository.delete(integration_id)
        logger.info(f"Deleted integration {integration_id} of user {user_id}")
        if was_primary:
            self.promote_next_primary(user_id, exclude_id=integration_id)

    # Provider operations

    def test_connection(self, integration_id: int) -> ConnectionResult:
        integration = self.get_integration(integration_id)
        try:
            adapter = self.adapter_for(integration)
        except CalendarProviderError as e:
            self.health_monitor.record_error(integration.provider, integration.id, e)
            return ConnectionResult(ok=False, message=e.message, category=e.category)
        with adapter:
            result = adapter.test_connection()
        self.health_monitor.record(
            integration.provider,
            integration.id,
            outcome_for_result(result.category),
            None if result.ok else result.message,
        )
        return result

    def refresh(self, integration_id: int) -> CalendarIntegration:
        integration = self.get_integration(integration_id)
        if not Provider(integration.provider).is_oauth:
            raise ValidationException("Only OAuth integrations have tokens to refresh")
        try:
            return self.token_service.refresh(integration, force=True)
        except CalendarProviderError as e:
            self.token_service.record_refresh_failure(integration, e)
            raise

    def get_events(self, integration_id: int, start: datetime, end: datetime) -> List[CalendarEvent]:
        if end <= start:
            raise ValidationException("end must be after start")
        integration = self.get_integration(integration_id)
        if not integration.is_active:
            raise ValidationException(f"Calendar integration {integration_id} is inactive")
        integration = self.token_service.ensure_valid(integration)
        return self.fetcher.fetch(ConnectionConfig.from_integration(integration), start, end)
