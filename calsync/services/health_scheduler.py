import logging
import random
import threading
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from calsync.core.config import settings
from calsync.core.exceptions import CalendarProviderError, RefreshInProgressError
from calsync.core.logging import log_context
from calsync.db.base import SessionLocal
from calsync.integrations.base import ConnectionConfig
from calsync.repositories.calendar_integration_repository import CalendarIntegrationRepository
from calsync.services.health_monitor import (
    HealthMonitor,
    due_for_check,
    scheduled_at_with_jitter,
)
from calsync.services.token_service import TokenService
from calsync.utils.time import utcnow

logger = logging.getLogger(__name__)


class HealthScheduler:
    """
    Periodically health-checks active integrations that are due.

    Each pass opens its own database session; OAuth tokens are made valid
    before probing so an expired access token does not count as a failure.
    """

    def __init__(
        self,
        monitor: HealthMonitor,
        session_factory: Callable[[], Session] = SessionLocal,
        token_service_factory: Callable[[Session], TokenService] = TokenService,
        interval_seconds: Optional[float] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.monitor = monitor
        self.session_factory = session_factory
        self.token_service_factory = token_service_factory
        self.interval_seconds = (
            settings.HEALTH_CHECK_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._rng = rng or random.Random()
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def due_integrations(self, integrations: Iterable, now: Optional[datetime] = None) -> List:
        now = now or self._clock()
        return [
            integration
            for integration in integrations
            if due_for_check(self.monitor.get_state(integration.provider, integration.id), now)
        ]

    def run_once(self, integrations: Optional[Iterable] = None, force: bool = False) -> Dict[int, datetime]:
        """
        Check every due integration once.

        Returns the next scheduled check time per checked integration id.
        """
        db = self.session_factory()
        try:
            if integrations is None:
                integrations = CalendarIntegrationRepository(db).list_active()
            integrations = list(integrations)
            targets = integrations if force else self.due_integrations(integrations)
            logger.debug(f"Health check pass: {len(targets)} of {len(integrations)} integrations due")

            tokens = self.token_service_factory(db)
            scheduled = {}
            for integration in targets:
                with log_context(integration_id=integration.id):
                    self._check(tokens, integration)
                state = self.monitor.get_state(integration.provider, integration.id)
                scheduled[integration.id] = scheduled_at_with_jitter(
                    state.last_check or self._clock(), state.backoff_ms, rng=self._rng
                )
            return scheduled
        finally:
            db.close()

    def _check(self, tokens: TokenService, integration) -> None:
        try:
            integration = tokens.ensure_valid(integration)
        except RefreshInProgressError:
            logger.info(f"Skipping health check of integration {integration.id}: token refresh in progress")
            return
        except CalendarProviderError as e:
            self.monitor.record_error(integration.provider, integration.id, e)
            return
        self.monitor.check(ConnectionConfig.from_integration(integration))

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Health check pass failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="health-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Health scheduler started (interval {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Health scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
