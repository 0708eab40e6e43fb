"""Pure rules for calendar selection, default calendars and primary promotion."""
from typing import Any, Dict, Iterable, List, Optional, Sequence

from calsync.core.constants import PROVIDER_FALLBACK_CALENDAR, Provider
from calsync.core.exceptions import InvalidDefaultCalendarError
from calsync.schemas.calendar import CalendarDescriptor


def as_descriptors(calendar_list: Optional[Iterable[Any]]) -> List[CalendarDescriptor]:
    descriptors = []
    for entry in calendar_list or []:
        if isinstance(entry, CalendarDescriptor):
            descriptors.append(entry)
        elif isinstance(entry, dict):
            descriptors.append(CalendarDescriptor.from_stored(entry))
    return descriptors


def selected_calendars(calendar_list: Optional[Iterable[Any]]) -> List[CalendarDescriptor]:
    """Selected calendars that have a usable id."""
    return [c for c in as_descriptors(calendar_list) if c.selected and c.id]


def resolve_default_calendar(
    provider: Provider,
    calendar_list: Optional[Iterable[Any]],
    calendar_paths: Optional[Sequence[str]] = None,
) -> Optional[str]:
    """
    Calendar to use for bookings when none was chosen explicitly.

    Order: the provider's primary calendar, a selected calendar, the first
    discovered calendar, the provider fallback, the first raw CalDAV path.
    """
    calendars = [c for c in as_descriptors(calendar_list) if c.id]
    for candidates in (
        [c for c in calendars if c.primary],
        [c for c in calendars if c.selected],
        calendars,
    ):
        if candidates:
            return candidates[0].id
    fallback = PROVIDER_FALLBACK_CALENDAR.get(Provider(provider))
    if fallback:
        return fallback
    if calendar_paths:
        return calendar_paths[0]
    return None


def unify_discovered_with_existing(
    discovered: Iterable[CalendarDescriptor], existing: Optional[Iterable[Any]]
) -> List[CalendarDescriptor]:
    """
    Carry ``selected`` flags over from the stored list, matched by path or id.

    Calendars not seen before keep the flag discovery gave them.
    """
    previous: Dict[str, bool] = {}
    for calendar in as_descriptors(existing):
        if calendar.path:
            previous[calendar.path] = calendar.selected
        if calendar.id:
            previous[calendar.id] = calendar.selected

    unified = []
    for calendar in discovered:
        if calendar.path in previous:
            selected = previous[calendar.path]
        elif calendar.id in previous:
            selected = previous[calendar.id]
        else:
            selected = calendar.selected
        unified.append(calendar.model_copy(update={"selected": selected}))
    return unified


def apply_selection(
    calendar_list: Optional[Iterable[Any]],
    selected_ids: Sequence[str],
    default_id: Optional[str] = None,
) -> List[CalendarDescriptor]:
    """Mark exactly ``selected_ids`` as selected; the default must be one of them."""
    if default_id and default_id not in selected_ids:
        raise InvalidDefaultCalendarError(
            "Default booking calendar must be one of the selected calendars",
            details={"default_booking_calendar_id": default_id},
        )
    wanted = set(selected_ids)
    return [
        calendar.model_copy(update={"selected": calendar.id in wanted})
        for calendar in as_descriptors(calendar_list)
    ]


def ensure_selected(calendars: List[CalendarDescriptor], calendar_id: Optional[str]) -> List[CalendarDescriptor]:
    """Select ``calendar_id`` so the default booking calendar is always fetched."""
    if not calendar_id:
        return calendars
    return [
        c.model_copy(update={"selected": True}) if c.id == calendar_id else c
        for c in calendars
    ]


def next_primary(integrations: Sequence[Any], exclude_id: Optional[int] = None, order: str = "oldest"):
    """
    Active integration to promote when the primary goes away.

    ``integrations`` must be ordered oldest first; ``order="newest"`` picks
    from the other end.
    """
    candidates = [i for i in integrations if i.is_active and i.id != exclude_id]
    if not candidates:
        return None
    return candidates[-1] if order == "newest" else candidates[0]
