import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from calsync.core.constants import ErrorCategory, Provider
from calsync.core.exceptions import (
    RateLimitedError,
    RefreshFailedError,
    RefreshInProgressError,
    TransientError,
    UnauthorizedError,
)
from calsync.db.base import SessionLocal
from calsync.models.calendar_integration import CalendarIntegration
from calsync.services.refresh_lock import RefreshLockCoordinator
from calsync.services.token_service import (
    TokenService,
    categorize_error,
    categorize_exception,
    custom_backoff,
)
from calsync.utils.time import utcnow


@pytest.fixture
def coordinator():
    return RefreshLockCoordinator(timeout_seconds=90)


@pytest.fixture
def reconcile():
    return MagicMock()


@pytest.fixture
def token_service(db, coordinator, fake_adapter_factory, reconcile):
    return TokenService(
        db,
        coordinator=coordinator,
        adapter_factory=fake_adapter_factory,
        reconcile=reconcile,
    )


@pytest.fixture
def expiring(make_integration):
    return make_integration(token_expires_at=utcnow() + timedelta(seconds=30))


class TestErrorCategorization:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("unauthorized: invalid_grant", (ErrorCategory.PERMANENT, None)),
            ("invalid_client", (ErrorCategory.PERMANENT, None)),
            ("access_denied by user", (ErrorCategory.PERMANENT, None)),
            ("rate_limited: retry after 42", (ErrorCategory.RATE_LIMITED, 42)),
            ("quota exceeded", (ErrorCategory.RATE_LIMITED, 300)),
            ("too_many_requests retry_after: 7", (ErrorCategory.RATE_LIMITED, 7)),
            ("connection reset", (ErrorCategory.TRANSIENT, None)),
            ("", (ErrorCategory.TRANSIENT, None)),
        ],
    )
    def test_categorize_error(self, message, expected):
        assert categorize_error(message) == expected

    def test_typed_errors_keep_their_category(self):
        assert categorize_exception(UnauthorizedError("Token revoked")) == (ErrorCategory.PERMANENT, None)
        assert categorize_exception(RateLimitedError("Slow down", retry_after=12)) == (
            ErrorCategory.RATE_LIMITED,
            12,
        )
        assert categorize_exception(TransientError("503")) == (ErrorCategory.TRANSIENT, None)

    @pytest.mark.parametrize(
        "attempt,seconds",
        [(1, 1), (2, 3), (3, 10), (4, 300), (5, 900), (6, 1800), (7, 3600), (8, 3600), (20, 3600)],
    )
    def test_custom_backoff(self, attempt, seconds):
        assert custom_backoff(attempt) == seconds


class TestNeedsRefresh:
    def test_token_inside_buffer(self, expiring):
        assert TokenService.needs_refresh(expiring) is True

    def test_fresh_token(self, make_integration):
        assert TokenService.needs_refresh(make_integration()) is False

    def test_missing_expiry(self, make_integration):
        assert TokenService.needs_refresh(make_integration(token_expires_at=None)) is True

    def test_caldav_never_refreshes(self, make_integration):
        integration = make_integration(provider=Provider.NEXTCLOUD, access_token=None, token_expires_at=None)
        assert TokenService.needs_refresh(integration) is False


class TestRefresh:
    """
    Token refresh under the per-integration lock
    """

    def test_ensure_valid_skips_fresh_token(self, token_service, make_integration, fake_adapter_factory):
        integration = make_integration()
        assert token_service.ensure_valid(integration) is integration
        assert fake_adapter_factory.created == []

    def test_ensure_valid_refreshes_and_persists(
        self, token_service, expiring, fake_adapter_factory, sample_tokens, db
    ):
        fake_adapter_factory.options["tokens"] = sample_tokens
        refreshed = token_service.ensure_valid(expiring)

        assert refreshed.access_token == "new-access-token"
        assert refreshed.refresh_token == "new-refresh-token"
        db.expire_all()
        stored = db.get(CalendarIntegration, expiring.id)
        assert stored.access_token == "new-access-token"
        assert stored.sync_error is None

    def test_double_check_avoids_second_exchange(
        self, token_service, make_integration, fake_adapter_factory, sample_tokens
    ):
        """A caller holding a stale copy does not refresh a token someone else already renewed"""
        fake_adapter_factory.options["tokens"] = sample_tokens
        integration = make_integration()
        token_service.refresh(integration)
        assert fake_adapter_factory.created == []

    def test_force_refresh(self, token_service, make_integration, fake_adapter_factory, sample_tokens):
        fake_adapter_factory.options["tokens"] = sample_tokens
        refreshed = token_service.refresh(make_integration(), force=True)
        assert refreshed.access_token == "new-access-token"
        assert len(fake_adapter_factory.created) == 1
        assert fake_adapter_factory.created[0].closed

    def test_caldav_refresh_is_noop(self, token_service, make_integration, fake_adapter_factory):
        integration = make_integration(provider=Provider.RADICALE, access_token=None)
        assert token_service.refresh(integration, force=True) is integration
        assert fake_adapter_factory.created == []

    def test_busy_lock_raises_when_still_stale(self, token_service, expiring, coordinator):
        coordinator.put_lock(TokenService.lock_key(expiring), 0, threading.current_thread())
        coordinator.timeout_seconds = 10**12
        with pytest.raises(RefreshInProgressError):
            token_service.ensure_valid(expiring)

    def test_busy_lock_returns_concurrently_refreshed_row(self, token_service, expiring, coordinator, db):
        coordinator.put_lock(TokenService.lock_key(expiring), 0, threading.current_thread())
        coordinator.timeout_seconds = 10**12

        other = SessionLocal()
        try:
            row = other.get(CalendarIntegration, expiring.id)
            row.access_token = "from-other-worker"
            row.token_expires_at = utcnow() + timedelta(hours=1)
            other.commit()
        finally:
            other.close()

        current = token_service.ensure_valid(expiring)
        assert current.access_token == "from-other-worker"

    def test_unexpected_error_is_wrapped_and_lock_released(
        self, token_service, expiring, fake_adapter_factory, coordinator
    ):
        fake_adapter_factory.options["tokens"] = KeyError("expires_in")
        with pytest.raises(RefreshFailedError):
            token_service.refresh(expiring)
        assert coordinator.get_lock(TokenService.lock_key(expiring)) is None

    def test_provider_error_propagates(self, token_service, expiring, fake_adapter_factory):
        fake_adapter_factory.options["tokens"] = UnauthorizedError("invalid_grant")
        with pytest.raises(UnauthorizedError):
            token_service.refresh(expiring)
        assert fake_adapter_factory.created[0].closed

    def test_failed_write_keeps_tokens_in_memory(
        self, token_service, expiring, fake_adapter_factory, sample_tokens, reconcile
    ):
        fake_adapter_factory.options["tokens"] = sample_tokens
        with patch.object(
            token_service.repository, "update", side_effect=OperationalError("UPDATE", {}, Exception("locked"))
        ):
            refreshed = token_service.refresh(expiring)

        assert refreshed.access_token == "new-access-token"
        reconcile.assert_called_once()
        integration_id, attrs = reconcile.call_args[0]
        assert integration_id == expiring.id
        assert attrs["access_token"] == "new-access-token"


class TestRefreshJobs:
    def test_permanent_failure_deactivates(self, token_service, expiring, fake_adapter_factory):
        fake_adapter_factory.options["tokens"] = UnauthorizedError("Token has been revoked")
        outcome = token_service.run_refresh_job(expiring.id, Provider.GOOGLE)

        assert outcome.action == "discard"
        assert expiring.is_active is False
        assert expiring.sync_error == "unauthorized: Token has been revoked (PERMANENT)"

    def test_rate_limited_snoozes(self, token_service, expiring, fake_adapter_factory):
        fake_adapter_factory.options["tokens"] = RateLimitedError("Too many requests", retry_after=120)
        outcome = token_service.run_refresh_job(expiring.id, Provider.GOOGLE)

        assert outcome.action == "snooze"
        assert outcome.seconds == 120
        assert expiring.is_active is True
        assert expiring.sync_error.endswith("(RATE_LIMITED)")

    def test_transient_failure_retries_with_backoff(self, token_service, expiring, fake_adapter_factory):
        fake_adapter_factory.options["tokens"] = TransientError("Service unavailable")
        outcome = token_service.run_refresh_job(expiring.id, Provider.GOOGLE, attempt=3)

        assert outcome.action == "retry"
        assert outcome.seconds == 10
        assert expiring.sync_error.endswith("(RETRYABLE)")

    def test_gives_up_after_max_attempts(self, token_service, expiring, fake_adapter_factory):
        fake_adapter_factory.options["tokens"] = TransientError("Service unavailable")
        outcome = token_service.run_refresh_job(expiring.id, Provider.GOOGLE, attempt=8)
        assert outcome.action == "discard"

    def test_missing_integration_is_discarded(self, token_service, db):
        outcome = token_service.run_refresh_job(999, Provider.GOOGLE)
        assert outcome.action == "discard"

    def test_success(self, token_service, expiring, fake_adapter_factory, sample_tokens):
        fake_adapter_factory.options["tokens"] = sample_tokens
        assert token_service.run_refresh_job(expiring.id, Provider.GOOGLE).action == "ok"

    def test_sweep_enqueues_expiring_oauth_integrations(self, db, make_integration, coordinator):
        soon = utcnow() + timedelta(minutes=30)
        google = make_integration(token_expires_at=soon)
        outlook = make_integration(provider=Provider.OUTLOOK, token_expires_at=soon)
        make_integration(token_expires_at=utcnow() + timedelta(hours=5))
        make_integration(token_expires_at=soon, is_active=False)

        enqueue = MagicMock()
        service = TokenService(db, coordinator=coordinator, enqueue=enqueue)
        result = service.refresh_expiring_tokens()

        assert result.scheduled == {Provider.GOOGLE: 1, Provider.OUTLOOK: 1}
        assert result.total == 2
        enqueue.assert_any_call(google.id, Provider.GOOGLE)
        enqueue.assert_any_call(outlook.id, Provider.OUTLOOK)
