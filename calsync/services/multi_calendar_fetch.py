"""Concurrent event fetch across an integration's selected calendars."""
import logging
import math
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, List, Optional

from calsync.core.config import settings
from calsync.core.constants import PROVIDER_FALLBACK_CALENDAR, HealthOutcome, Provider
from calsync.core.exceptions import CalendarProviderError
from calsync.integrations.base import ConnectionConfig, ProviderAdapter
from calsync.integrations.factory import ProviderFactory
from calsync.schemas.calendar import CalendarDescriptor, CalendarEvent
from calsync.services.calendar_selection import selected_calendars
from calsync.services.health_monitor import HealthMonitor

logger = logging.getLogger(__name__)


def merge_events(batches: List[List[CalendarEvent]]) -> List[CalendarEvent]:
    """Flatten batches, keeping the first event seen for each id."""
    seen = set()
    merged = []
    for batch in batches:
        for event in batch:
            if event.id in seen:
                continue
            seen.add(event.id)
            merged.append(event)
    return merged


class _CalendarFetch:
    """One calendar's fetch; the worker stamps when it actually starts and ends."""

    def __init__(self, calendar: CalendarDescriptor, start_by: float):
        self.calendar = calendar
        # Queued fetches time out if no worker picks them up by then
        self.start_by = start_by
        self.started_at: Optional[float] = None
        self.finished_at: Optional[float] = None
        self.future = None
        self.events: Optional[List[CalendarEvent]] = None

    def deadline(self, timeout: float) -> float:
        if self.started_at is None:
            return self.start_by
        return self.started_at + timeout

    def overran(self, timeout: float) -> bool:
        return (
            self.started_at is not None
            and self.finished_at is not None
            and self.finished_at - self.started_at > timeout
        )


class MultiCalendarFetcher:
    def __init__(
        self,
        health_monitor: Optional[HealthMonitor] = None,
        adapter_factory: Callable[[ConnectionConfig], ProviderAdapter] = ProviderFactory.create,
        max_concurrency: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.health_monitor = health_monitor
        self.adapter_factory = adapter_factory
        self.max_concurrency = max_concurrency or settings.MAX_CALENDAR_FETCH_CONCURRENCY
        self.timeout = settings.CALENDAR_FETCH_TIMEOUT if timeout is None else timeout

    def fetch(self, config: ConnectionConfig, start: datetime, end: datetime) -> List[CalendarEvent]:
        """
        Events from every selected calendar, or from the primary calendar when
        nothing is selected. Calendars that fail are left out.

        Every fetch gets ``timeout`` seconds from the moment a worker picks it
        up, so fetches queued behind the concurrency bound are not charged for
        the wait. A fetch that runs past its deadline is dropped even if it
        completes later.
        """
        calendars = selected_calendars(config.calendar_list)
        if not calendars:
            return self._fetch_primary(config, start, end)

        workers = min(len(calendars), self.max_concurrency)
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="calendar-fetch")
        rounds = math.ceil(len(calendars) / workers)
        start_by = time.monotonic() + self.timeout * rounds
        fetches = [_CalendarFetch(calendar, start_by) for calendar in calendars]
        try:
            for item in fetches:
                item.future = executor.submit(self._run, item, config, start, end)
            pending = list(fetches)
            while pending:
                pending = self._expire(config, pending)
                if not pending:
                    break
                done, _ = wait(
                    [item.future for item in pending],
                    timeout=self._next_wait(pending),
                    return_when=FIRST_COMPLETED,
                )
                for item in [item for item in pending if item.future in done]:
                    pending.remove(item)
                    item.events = self._result(config, item)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        # Keep the selection order so duplicates resolve the same way every time
        batches = [item.events for item in fetches if item.events is not None]
        if not batches:
            logger.warning(f"All calendar fetches failed for integration {config.integration_id}")
        return merge_events(batches)

    def _run(
        self, item: _CalendarFetch, config: ConnectionConfig, start: datetime, end: datetime
    ) -> List[CalendarEvent]:
        item.started_at = time.monotonic()
        try:
            return self._fetch_calendar(config, item.calendar, start, end)
        finally:
            item.finished_at = time.monotonic()

    def _fetch_calendar(
        self, config: ConnectionConfig, calendar: CalendarDescriptor, start: datetime, end: datetime
    ) -> List[CalendarEvent]:
        adapter = self.adapter_factory(config)
        ref = calendar.path if config.provider.is_caldav and calendar.path else calendar.id
        try:
            return adapter.list_events(ref, start, end)
        finally:
            adapter.close()

    def _next_wait(self, pending: List[_CalendarFetch]) -> float:
        now = time.monotonic()
        nearest = min(item.deadline(self.timeout) for item in pending)
        # Capped so a fetch starting during the wait is checked before its deadline
        return max(0.0, min(nearest - now, self.timeout))

    def _expire(self, config: ConnectionConfig, pending: List[_CalendarFetch]) -> List[_CalendarFetch]:
        now = time.monotonic()
        still_pending = []
        for item in pending:
            deadline = item.deadline(self.timeout)
            if item.future.done() or now < deadline:
                still_pending.append(item)
                continue
            item.future.cancel()
            self._timed_out(config, item)
        return still_pending

    def _timed_out(self, config: ConnectionConfig, item: _CalendarFetch) -> None:
        logger.warning(
            f"Fetching calendar {item.calendar.id} of integration {config.integration_id} "
            f"timed out after {self.timeout}s"
        )
        self._report(config, HealthOutcome.TRANSIENT_ERROR, "Calendar fetch timed out")

    def _result(self, config: ConnectionConfig, item: _CalendarFetch) -> Optional[List[CalendarEvent]]:
        calendar_id = item.calendar.id
        try:
            events = item.future.result()
        except CalendarProviderError as e:
            logger.warning(
                f"Fetching calendar {calendar_id} of integration {config.integration_id} failed: {e.message}"
            )
            self._report(config, e.health_outcome, e.message)
            return None
        except Exception as e:
            logger.exception(
                f"Unexpected error fetching calendar {calendar_id} of integration {config.integration_id}"
            )
            self._report(config, HealthOutcome.TRANSIENT_ERROR, str(e))
            return None
        if item.overran(self.timeout):
            self._timed_out(config, item)
            return None
        return events

    def _fetch_primary(self, config: ConnectionConfig, start: datetime, end: datetime) -> List[CalendarEvent]:
        adapter = None
        try:
            adapter = self.adapter_factory(config)
            if config.provider == Provider.GOOGLE:
                ref = config.default_booking_calendar_id or PROVIDER_FALLBACK_CALENDAR[Provider.GOOGLE]
                return adapter.list_events(ref, start, end)
            if config.provider.is_caldav and config.calendar_paths:
                return adapter.list_events(config.calendar_paths[0], start, end)
            return adapter.list_primary_events(start, end)
        except CalendarProviderError as e:
            logger.warning(f"Primary calendar fetch failed for integration {config.integration_id}: {e.message}")
            self._report(config, e.health_outcome, e.message)
            return []
        except Exception as e:
            logger.exception(f"Unexpected error fetching primary calendar of integration {config.integration_id}")
            self._report(config, HealthOutcome.TRANSIENT_ERROR, str(e))
            return []
        finally:
            if adapter is not None:
                adapter.close()

    def _report(self, config: ConnectionConfig, outcome: HealthOutcome, message: str) -> None:
        if self.health_monitor is None or config.integration_id is None:
            return
        self.health_monitor.record(config.provider, config.integration_id, outcome, message)
