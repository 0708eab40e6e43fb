"""RFC 5545 documents for events written to CalDAV servers."""
import secrets
from datetime import datetime, timedelta
from typing import Optional

from icalendar import Alarm, Calendar, Event, vRecur

from calsync.core.constants import ICAL_PRODID
from calsync.schemas.calendar import EventData, RecurrenceRule
from calsync.utils.time import ensure_utc, utcnow


def generate_uid(domain: str = "calsync.local") -> str:
    return f"{secrets.token_hex(16)}@{domain}"


def build_recurrence(rule: Optional[RecurrenceRule]) -> Optional[vRecur]:
    if rule is None:
        return None
    recur = vRecur(freq=rule.freq)
    if rule.interval and rule.interval > 1:
        recur["interval"] = rule.interval
    if rule.count:
        recur["count"] = rule.count
    if rule.until:
        recur["until"] = ensure_utc(rule.until)
    if rule.by_day:
        recur["byday"] = list(rule.by_day)
    if rule.by_month:
        recur["bymonth"] = list(rule.by_month)
    return recur


def build_rrule(rule: Optional[RecurrenceRule]) -> Optional[str]:
    """
    >>> build_rrule(RecurrenceRule(freq="WEEKLY", by_day=["MO", "WE", "FR"]))
    'RRULE:FREQ=WEEKLY;BYDAY=MO,WE,FR'
    """
    recur = build_recurrence(rule)
    if recur is None:
        return None
    return "RRULE:" + recur.to_ical().decode("utf-8")


def _event_time(value: datetime, all_day: bool):
    value = ensure_utc(value)
    return value.date() if all_day else value


def build_event(event: EventData, uid: Optional[str] = None, dtstamp: Optional[datetime] = None) -> str:
    """Full VCALENDAR document with a single VEVENT, folded and CRLF separated."""
    cal = Calendar()
    cal.add("prodid", ICAL_PRODID)
    cal.add("version", "2.0")
    cal.add("calscale", "GREGORIAN")
    cal.add("method", "PUBLISH")

    vevent = Event()
    vevent.add("uid", uid or event.uid or generate_uid())
    vevent.add("dtstamp", ensure_utc(dtstamp or utcnow()))
    vevent.add("dtstart", _event_time(event.start, event.all_day))
    vevent.add("dtend", _event_time(event.end, event.all_day))
    vevent.add("summary", event.summary)

    if event.description is not None:
        vevent.add("description", event.description)
    if event.location is not None:
        vevent.add("location", event.location)
    if event.status:
        vevent.add("status", event.status)
    if event.transparency:
        vevent.add("transp", event.transparency)
    if event.categories:
        vevent.add("categories", list(event.categories))
    if event.url:
        vevent.add("url", event.url)
    if event.organizer_email:
        vevent.add("organizer", f"mailto:{event.organizer_email}")

    recurrence = build_recurrence(event.recurrence)
    if recurrence is not None:
        vevent.add("rrule", recurrence)

    for email in event.attendees:
        vevent.add(
            "attendee",
            f"mailto:{email}",
            parameters={"ROLE": "REQ-PARTICIPANT", "PARTSTAT": "NEEDS-ACTION"},
        )

    if event.reminder_minutes is not None:
        alarm = Alarm()
        alarm.add("action", event.reminder_action)
        alarm.add("description", "Reminder")
        alarm.add("trigger", timedelta(minutes=-event.reminder_minutes))
        vevent.add_component(alarm)

    cal.add_component(vevent)
    return cal.to_ical().decode("utf-8")
