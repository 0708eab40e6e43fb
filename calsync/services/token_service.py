"""
OAuth access token lifecycle for Google and Outlook integrations.

All token writes go through ``TokenService.refresh`` under the refresh lock,
so concurrent callers never exchange the same refresh token twice.
"""
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from calsync.core.config import settings
from calsync.core.constants import OAUTH_PROVIDERS, ErrorCategory, Provider
from calsync.core.exceptions import (
    BusinessException,
    CalendarProviderError,
    RefreshFailedError,
    RefreshInProgressError,
    ResourceNotFoundException,
)
from calsync.core.logging import log_context
from calsync.db.base import SessionLocal
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.factory import ProviderFactory
from calsync.models.calendar_integration import CalendarIntegration
from calsync.repositories.calendar_integration_repository import CalendarIntegrationRepository
from calsync.schemas.calendar import TokenSet
from calsync.services.refresh_lock import RefreshLockCoordinator, get_refresh_lock_coordinator
from calsync.utils.time import ensure_utc, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_RETRY_SECONDS = 300

_PERMANENT_MARKERS = ("invalid_grant", "unauthorized", "invalid_client", "access_denied")
_RATE_LIMIT_MARKERS = ("rate_limited", "too_many_requests", "quota")
_RETRY_AFTER = re.compile(r"retry[_\s]after[:\s]+(\d+)", re.IGNORECASE)

_BACKOFF_SCHEDULE = {1: 1, 2: 3, 3: 10, 4: 300, 5: 900, 6: 1800, 7: 3600}

_CATEGORY_LABELS = {
    ErrorCategory.PERMANENT: "PERMANENT",
    ErrorCategory.RATE_LIMITED: "RATE_LIMITED",
    ErrorCategory.TRANSIENT: "RETRYABLE",
}


def categorize_error(message: str) -> Tuple[ErrorCategory, Optional[int]]:
    """
    Classify a refresh failure from its message.

    >>> categorize_error("unauthorized: invalid_grant")
    (<ErrorCategory.PERMANENT: 'permanent'>, None)
    >>> categorize_error("rate_limited: retry after 42")
    (<ErrorCategory.RATE_LIMITED: 'rate_limited'>, 42)
    """
    lowered = (message or "").lower()
    if any(marker in lowered for marker in _PERMANENT_MARKERS):
        return ErrorCategory.PERMANENT, None
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        match = _RETRY_AFTER.search(lowered)
        return ErrorCategory.RATE_LIMITED, int(match.group(1)) if match else DEFAULT_RATE_LIMIT_RETRY_SECONDS
    return ErrorCategory.TRANSIENT, None


def custom_backoff(attempt: int) -> int:
    """Seconds to wait before refresh job attempt ``attempt + 1``."""
    return _BACKOFF_SCHEDULE.get(attempt, 3600)


def error_message(error: Exception) -> str:
    if isinstance(error, BusinessException):
        return f"{error.code}: {error.message}"
    return str(error)


def categorize_exception(error: Exception) -> Tuple[ErrorCategory, Optional[int]]:
    """Typed provider errors keep their own category; anything else goes by message."""
    category, retry_after = categorize_error(error_message(error))
    if isinstance(error, CalendarProviderError) and error.category in (
        ErrorCategory.PERMANENT,
        ErrorCategory.RATE_LIMITED,
    ):
        category = error.category
    if category == ErrorCategory.RATE_LIMITED:
        retry_after = getattr(error, "retry_after", None) or retry_after or DEFAULT_RATE_LIMIT_RETRY_SECONDS
    return category, retry_after


@dataclass
class JobOutcome:
    action: str
    seconds: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "JobOutcome":
        return cls("ok")

    @classmethod
    def discard(cls, reason: str) -> "JobOutcome":
        return cls("discard", reason=reason)

    @classmethod
    def snooze(cls, seconds: int) -> "JobOutcome":
        return cls("snooze", seconds=seconds)

    @classmethod
    def retry(cls, seconds: int, reason: Optional[str] = None) -> "JobOutcome":
        return cls("retry", seconds=seconds, reason=reason)


@dataclass
class RefreshSweepResult:
    scheduled: Dict[Provider, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.scheduled.values())


def reconcile_in_background(integration_id: int, attrs: dict) -> threading.Thread:
    """Retry a failed token write once on a fresh session."""

    def _retry():
        db = SessionLocal()
        try:
            repo = CalendarIntegrationRepository(db)
            integration = repo.get(integration_id)
            if integration is not None:
                repo.update(integration, attrs)
                logger.info(f"Reconciled token write for integration {integration_id}")
        except SQLAlchemyError as e:
            logger.error(f"Token write reconciliation failed for integration {integration_id}: {e}")
        finally:
            db.close()

    thread = threading.Thread(target=_retry, name=f"token-reconcile-{integration_id}", daemon=True)
    thread.start()
    return thread


class TokenService:
    def __init__(
        self,
        db: Session,
        coordinator: Optional[RefreshLockCoordinator] = None,
        adapter_factory: Callable[[ConnectionConfig], ProviderAdapter] = ProviderFactory.create,
        reconcile: Callable[[int, dict], object] = reconcile_in_background,
        enqueue: Optional[Callable[[int, Provider], object]] = None,
    ):
        self.db = db
        self.repository = CalendarIntegrationRepository(db)
        self.coordinator = coordinator or get_refresh_lock_coordinator()
        self.adapter_factory = adapter_factory
        self.reconcile = reconcile
        self.enqueue = enqueue or self._refresh_inline

    @staticmethod
    def lock_key(integration: CalendarIntegration) -> Tuple[str, int]:
        return (Provider(integration.provider).value, integration.id)

    @staticmethod
    def needs_refresh(integration: CalendarIntegration, within_seconds: Optional[int] = None) -> bool:
        if not Provider(integration.provider).is_oauth:
            return False
        expires_at = ensure_utc(integration.token_expires_at)
        if expires_at is None or not integration.access_token:
            return True
        buffer = settings.TOKEN_REFRESH_BUFFER_SECONDS if within_seconds is None else within_seconds
        return expires_at <= utcnow() + timedelta(seconds=buffer)

    def ensure_valid(self, integration: CalendarIntegration) -> CalendarIntegration:
        """Integration with an access token good for at least the refresh buffer."""
        if not self.needs_refresh(integration):
            return integration
        try:
            return self.refresh(integration)
        except RefreshInProgressError:
            current = self.repository.get_fresh(integration.id)
            if current is not None and not self.needs_refresh(current):
                logger.info(f"Token for integration {integration.id} refreshed by a concurrent caller")
                return current
            raise

    def refresh(
        self,
        integration: CalendarIntegration,
        within_seconds: Optional[int] = None,
        blocking: bool = False,
        force: bool = False,
    ) -> CalendarIntegration:
        """
        Refresh under the per-integration lock.

        The row is re-read once the lock is held and the provider is only
        called if the token is still expiring.
        """
        if not Provider(integration.provider).is_oauth:
            return integration
        key = self.lock_key(integration)
        with log_context(integration_id=integration.id, provider=key[0]):
            return self.coordinator.with_lock(
                key,
                lambda: self._refresh_locked(integration.id, within_seconds, force),
                blocking=blocking,
            )

    def _refresh_locked(
        self, integration_id: int, within_seconds: Optional[int], force: bool = False
    ) -> CalendarIntegration:
        current = self.repository.get_fresh(integration_id)
        if current is None:
            raise ResourceNotFoundException(f"Integration {integration_id} not found")
        if not force and not self.needs_refresh(current, within_seconds):
            logger.debug(f"Token for integration {integration_id} already fresh")
            return current

        with self.adapter_factory(ConnectionConfig.from_integration(current)) as adapter:
            try:
                tokens = adapter.refresh_token()
            except CalendarProviderError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error refreshing token for integration {integration_id}")
                raise RefreshFailedError(
                    f"Token refresh failed unexpectedly: {e}", provider=Provider(current.provider).value
                ) from e

        if tokens is None:
            return current
        logger.info(f"Refreshed access token for integration {integration_id}")
        return self._persist_tokens(current, tokens)

    def _persist_tokens(self, integration: CalendarIntegration, tokens: TokenSet) -> CalendarIntegration:
        attrs = {
            "access_token": tokens.access_token,
            "token_expires_at": tokens.expires_at,
            "sync_error": None,
        }
        if tokens.refresh_token:
            attrs["refresh_token"] = tokens.refresh_token
        if tokens.scope:
            attrs["oauth_scope"] = tokens.scope

        try:
            return self.repository.update(integration, attrs)
        except SQLAlchemyError as e:
            logger.error(f"Failed to store refreshed token for integration {integration.id}: {e}")
            for key, value in attrs.items():
                set_committed_value(integration, key, value)
            self.reconcile(integration.id, attrs)
            return integration

    def record_refresh_failure(self, integration: CalendarIntegration, error: Exception) -> ErrorCategory:
        message = error_message(error)
        category, _ = categorize_exception(error)
        label = _CATEGORY_LABELS.get(category, "RETRYABLE")
        attrs = {"sync_error": f"{message} ({label})"}
        if category == ErrorCategory.PERMANENT:
            attrs["is_active"] = False
        self.repository.update(integration, attrs)
        logger.warning(f"Token refresh for integration {integration.id} failed: {attrs['sync_error']}")
        return category

    def refresh_expiring_tokens(self, threshold_seconds: Optional[int] = None) -> RefreshSweepResult:
        seconds = settings.TOKEN_REFRESH_THRESHOLD_SECONDS if threshold_seconds is None else threshold_seconds
        threshold = utcnow() + timedelta(seconds=seconds)
        result = RefreshSweepResult()
        for provider in (Provider.GOOGLE, Provider.OUTLOOK):
            expiring = self.repository.list_expiring_before(threshold, provider)
            for integration in expiring:
                self.enqueue(integration.id, provider)
            result.scheduled[provider] = len(expiring)
        logger.info(f"Scheduled {result.total} token refreshes")
        return result

    def _refresh_inline(self, integration_id: int, provider: Provider) -> JobOutcome:
        return self.run_refresh_job(integration_id, provider)

    def run_refresh_job(self, integration_id: int, provider: Provider, attempt: int = 1) -> JobOutcome:
        """Job entry point; the returned outcome tells the runner what to do next."""
        integration = self.repository.get(integration_id)
        if integration is None:
            return JobOutcome.discard("Integration not found")
        if Provider(integration.provider) not in OAUTH_PROVIDERS:
            return JobOutcome.discard("Integration does not use OAuth")

        try:
            self.refresh(integration, within_seconds=settings.TOKEN_REFRESH_THRESHOLD_SECONDS)
        except RefreshInProgressError:
            logger.info(f"Token refresh skipped for integration {integration_id}: already in progress")
            return JobOutcome.ok()
        except ResourceNotFoundException:
            return JobOutcome.discard("Integration not found")
        except CalendarProviderError as e:
            return self._failure_outcome(integration, e, attempt)
        return JobOutcome.ok()

    def _failure_outcome(self, integration: CalendarIntegration, error: Exception, attempt: int) -> JobOutcome:
        category = self.record_refresh_failure(integration, error)
        message = error_message(error)
        if category == ErrorCategory.PERMANENT:
            return JobOutcome.discard(f"Permanent error: {message}")
        if category == ErrorCategory.RATE_LIMITED:
            return JobOutcome.snooze(categorize_exception(error)[1])
        if attempt >= settings.TOKEN_REFRESH_MAX_ATTEMPTS:
            return JobOutcome.discard(f"Gave up after {attempt} attempts: {message}")
        return JobOutcome.retry(custom_backoff(attempt), reason=message)
