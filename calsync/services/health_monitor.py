"""
Integration health tracking.

State is kept in process memory per ``(provider, integration_id)``. The pure
functions at module level hold the rules; ``HealthMonitor`` applies them
atomically per key and reacts to transitions.
"""
import logging
import random
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from calsync.core.config import settings
from calsync.core.constants import (
    ErrorCategory,
    ErrorClass,
    HealthOutcome,
    HealthStatus,
    Provider,
    Transition,
)
from calsync.core.exceptions import CalendarProviderError
from calsync.db.base import SessionLocal
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.factory import ProviderFactory
from calsync.repositories.calendar_integration_repository import CalendarIntegrationRepository
from calsync.schemas.integration import HealthReport
from calsync.utils.time import utcnow

logger = logging.getLogger(__name__)

HealthKey = Tuple[str, int]


@dataclass(frozen=True)
class HealthState:
    failures: int = 0
    successes: int = 0
    status: HealthStatus = HealthStatus.HEALTHY
    backoff_ms: int = settings.HEALTH_MIN_BACKOFF_MS
    last_check: Optional[datetime] = None
    last_error_class: Optional[ErrorClass] = None

    def as_dict(self) -> dict:
        return {
            "failures": self.failures,
            "successes": self.successes,
            "status": self.status.value,
            "backoff_ms": self.backoff_ms,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_error_class": self.last_error_class.value if self.last_error_class else None,
        }


@dataclass(frozen=True)
class TransitionResult:
    kind: Transition
    previous: Optional[HealthStatus]
    current: HealthStatus


def initial_state() -> HealthState:
    return HealthState(backoff_ms=settings.HEALTH_MIN_BACKOFF_MS)


def derive_status(failures: int, successes: int) -> HealthStatus:
    if failures >= settings.HEALTH_UNHEALTHY_THRESHOLD:
        return HealthStatus.UNHEALTHY
    if failures > 0:
        return HealthStatus.DEGRADED
    if successes >= settings.HEALTH_RECOVERY_THRESHOLD:
        return HealthStatus.HEALTHY
    return HealthStatus.DEGRADED


def next_backoff(current_ms: int) -> int:
    """Double the backoff, kept within the configured bounds."""
    doubled = max(current_ms, settings.HEALTH_MIN_BACKOFF_MS) * 2
    return min(doubled, settings.HEALTH_MAX_BACKOFF_MS)


def update(state: HealthState, outcome: HealthOutcome, now: Optional[datetime] = None) -> HealthState:
    now = now or utcnow()
    outcome = HealthOutcome(outcome)
    if outcome == HealthOutcome.SUCCESS:
        successes = state.successes + 1
        return HealthState(
            failures=0,
            successes=successes,
            status=derive_status(0, successes),
            backoff_ms=settings.HEALTH_MIN_BACKOFF_MS,
            last_check=now,
            last_error_class=None,
        )
    if outcome == HealthOutcome.TRANSIENT_ERROR:
        # Transient failures only slow down checking
        return replace(
            state,
            backoff_ms=next_backoff(state.backoff_ms),
            last_check=now,
            last_error_class=ErrorClass.TRANSIENT,
        )
    failures = state.failures + 1
    return HealthState(
        failures=failures,
        successes=0,
        status=derive_status(failures, 0),
        backoff_ms=settings.HEALTH_MIN_BACKOFF_MS,
        last_check=now,
        last_error_class=ErrorClass.HARD,
    )


def classify_transition(previous: HealthState, new: HealthState) -> TransitionResult:
    if previous.last_check is None:
        if new.status == HealthStatus.UNHEALTHY:
            return TransitionResult(Transition.INITIAL_FAILURE, None, new.status)
        return TransitionResult(Transition.NO_CHANGE, None, new.status)
    old, current = previous.status, new.status
    if current == HealthStatus.UNHEALTHY and old != HealthStatus.UNHEALTHY:
        kind = Transition.BECAME_UNHEALTHY
    elif old == HealthStatus.UNHEALTHY and current == HealthStatus.HEALTHY:
        kind = Transition.BECAME_HEALTHY
    elif old == HealthStatus.HEALTHY and current == HealthStatus.DEGRADED:
        kind = Transition.BECAME_DEGRADED
    else:
        kind = Transition.NO_CHANGE
    return TransitionResult(kind, old, current)


def due_for_check(state: HealthState, now: Optional[datetime] = None) -> bool:
    if state.last_check is None:
        return True
    now = now or utcnow()
    return state.last_check + timedelta(milliseconds=state.backoff_ms) <= now


def scheduled_at_with_jitter(
    now: datetime,
    backoff_ms: int,
    jitter_ms: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> datetime:
    jitter_ms = settings.HEALTH_JITTER_MS if jitter_ms is None else jitter_ms
    offset = (rng or random).randint(-jitter_ms, jitter_ms) if jitter_ms else 0
    return now + timedelta(milliseconds=backoff_ms + offset)


def outcome_for_result(category: Optional[ErrorCategory]) -> HealthOutcome:
    """Health outcome of a connection test result category."""
    if category is None:
        return HealthOutcome.SUCCESS
    if category in (ErrorCategory.PERMANENT, ErrorCategory.CONFIGURATION):
        return HealthOutcome.HARD_ERROR
    return HealthOutcome.TRANSIENT_ERROR


def deactivate_integration(integration_id: int, message: str) -> None:
    """Mark an integration inactive on its own session."""
    db = SessionLocal()
    try:
        repo = CalendarIntegrationRepository(db)
        integration = repo.get(integration_id)
        if integration is not None:
            repo.update(integration, {"is_active": False, "sync_error": message})
            logger.warning(f"Deactivated unhealthy integration {integration_id}: {message}")
    except SQLAlchemyError as e:
        logger.error(f"Failed to deactivate integration {integration_id}: {e}")
    finally:
        db.close()


class HealthMonitor:
    def __init__(
        self,
        adapter_factory: Callable[[ConnectionConfig], ProviderAdapter] = ProviderFactory.create,
        on_unhealthy: Callable[[int, str], None] = deactivate_integration,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.adapter_factory = adapter_factory
        self.on_unhealthy = on_unhealthy
        self._clock = clock
        self._states: Dict[HealthKey, HealthState] = {}
        self._key_locks: Dict[HealthKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @staticmethod
    def key(provider, integration_id: int) -> HealthKey:
        return (Provider(provider).value, integration_id)

    def _lock_for(self, key: HealthKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get_state(self, provider, integration_id: int) -> HealthState:
        with self._registry_lock:
            return self._states.get(self.key(provider, integration_id), initial_state())

    def record(
        self,
        provider,
        integration_id: int,
        outcome: HealthOutcome,
        message: Optional[str] = None,
    ) -> TransitionResult:
        key = self.key(provider, integration_id)
        with self._lock_for(key):
            previous = self.get_state(provider, integration_id)
            new = update(previous, outcome, self._clock())
            with self._registry_lock:
                self._states[key] = new
            transition = classify_transition(previous, new)

        self._handle_transition(key, transition, message)
        return transition

    def record_error(self, provider, integration_id: int, error: CalendarProviderError) -> TransitionResult:
        return self.record(provider, integration_id, error.health_outcome, error.message)

    def _handle_transition(self, key: HealthKey, transition: TransitionResult, message: Optional[str]) -> None:
        provider, integration_id = key
        if transition.kind in (Transition.INITIAL_FAILURE, Transition.BECAME_UNHEALTHY):
            logger.warning(
                f"Integration {integration_id} ({provider}) is unhealthy: {message or 'repeated failures'}"
            )
            self.on_unhealthy(integration_id, message or "Integration failed repeated health checks")
        elif transition.kind == Transition.BECAME_HEALTHY:
            logger.info(f"Integration {integration_id} ({provider}) recovered")
        elif transition.kind == Transition.BECAME_DEGRADED:
            logger.info(f"Integration {integration_id} ({provider}) is degraded")

    def check(self, config: ConnectionConfig) -> TransitionResult:
        """Probe one integration and record the outcome."""
        try:
            with self.adapter_factory(config) as adapter:
                result = adapter.test_connection()
        except CalendarProviderError as e:
            return self.record_error(config.provider, config.integration_id, e)
        return self.record(
            config.provider,
            config.integration_id,
            outcome_for_result(result.category),
            None if result.ok else result.message,
        )

    def user_report(self, user_id: int, integrations: Iterable) -> HealthReport:
        counts = {status: 0 for status in HealthStatus}
        details = {}
        for integration in integrations:
            state = self.get_state(integration.provider, integration.id)
            counts[state.status] += 1
            details[str(integration.id)] = {
                "provider": Provider(integration.provider).value,
                "is_active": integration.is_active,
                **state.as_dict(),
            }
        return HealthReport(
            user_id=user_id,
            total=len(details),
            healthy=counts[HealthStatus.HEALTHY],
            degraded=counts[HealthStatus.DEGRADED],
            unhealthy=counts[HealthStatus.UNHEALTHY],
            integrations=details,
        )

    def reset(self) -> None:
        with self._registry_lock:
            self._states.clear()
            self._key_locks.clear()


_default_monitor: Optional[HealthMonitor] = None
_default_lock = threading.Lock()


def get_health_monitor() -> HealthMonitor:
    global _default_monitor
    with _default_lock:
        if _default_monitor is None:
            _default_monitor = HealthMonitor()
        return _default_monitor
