"""Reads VEVENTs out of iCalendar documents returned by CalDAV servers."""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional

from icalendar import Calendar

from calsync.schemas.calendar import CalendarEvent
from calsync.utils.time import ensure_utc

logger = logging.getLogger(__name__)


def _to_utc(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    return None


def _text(component, name: str) -> Optional[str]:
    value = component.get(name)
    return str(value) if value is not None else None


def parse_events(
    ical_text: str,
    calendar_id: Optional[str] = None,
    href: Optional[str] = None,
    etag: Optional[str] = None,
) -> List[CalendarEvent]:
    """
    Events in a VCALENDAR document.

    Components lacking UID, SUMMARY or DTSTART are skipped. A missing DTEND is
    derived from DURATION, or equals DTSTART when neither is present.
    """
    if not ical_text or "BEGIN:VCALENDAR" not in ical_text:
        logger.warning("Ignoring calendar data without a VCALENDAR block")
        return []
    try:
        calendar = Calendar.from_ical(ical_text)
    except ValueError as e:
        logger.error(f"Failed to parse iCal content: {e}")
        return []

    events = []
    for component in calendar.walk("VEVENT"):
        uid = _text(component, "UID")
        summary = _text(component, "SUMMARY")
        if "DTSTART" not in component or not uid or summary is None:
            logger.debug(f"Skipping event with missing required fields (uid={uid})")
            continue

        raw_start = component.decoded("DTSTART")
        start = _to_utc(raw_start)
        all_day = isinstance(raw_start, date) and not isinstance(raw_start, datetime)

        if "DTEND" in component:
            end = _to_utc(component.decoded("DTEND"))
        elif "DURATION" in component:
            duration = component.decoded("DURATION")
            end = start + duration if isinstance(duration, timedelta) else start
        else:
            end = start

        events.append(
            CalendarEvent(
                id=uid,
                summary=summary,
                description=_text(component, "DESCRIPTION"),
                location=_text(component, "LOCATION"),
                start=start,
                end=end,
                all_day=all_day,
                calendar_id=calendar_id,
                href=href,
                etag=etag,
            )
        )
    return events
