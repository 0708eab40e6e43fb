"""
WebDAV/CalDAV request bodies and multistatus parsing.

Parsing matches on local element names so servers that pick different
namespace prefixes (or nest namespaces) are handled the same way.
"""
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from calsync.core.exceptions import TransientError
from calsync.integrations.caldav.path_utils import extract_calendar_name_from_path
from calsync.schemas.calendar import CalendarDescriptor
from calsync.utils.time import to_ical_utc

logger = logging.getLogger(__name__)

MAX_XML_BYTES = 10_000_000

_PROP_ELEMENTS = {
    "displayname": "<d:displayname/>",
    "resourcetype": "<d:resourcetype/>",
    "calendar_color": '<apple:calendar-color xmlns:apple="http://apple.com/ns/ical/"/>',
    "calendar_order": '<apple:calendar-order xmlns:apple="http://apple.com/ns/ical/"/>',
    "calendar_home_set": "<c:calendar-home-set/>",
    "current_user_principal": "<d:current-user-principal/>",
    "getetag": "<d:getetag/>",
}

DISCOVERY_PROPERTIES = ("displayname", "resourcetype", "calendar_color", "calendar_home_set")


@dataclass
class MultistatusItem:
    href: str
    etag: Optional[str]
    calendar_data: Optional[str]


def build_propfind_body(properties: Iterable[str] = DISCOVERY_PROPERTIES) -> str:
    props = "\n    ".join(_PROP_ELEMENTS.get(p, f"<d:{p}/>") for p in properties)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">\n'
        "  <d:prop>\n"
        f"    {props}\n"
        "  </d:prop>\n"
        "</d:propfind>\n"
    )


def build_calendar_query(start: datetime, end: datetime) -> str:
    """calendar-query REPORT body selecting VEVENTs overlapping the range."""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">\n'
        "  <d:prop>\n"
        "    <d:getetag/>\n"
        "    <c:calendar-data/>\n"
        "  </d:prop>\n"
        "  <c:filter>\n"
        '    <c:comp-filter name="VCALENDAR">\n'
        '      <c:comp-filter name="VEVENT">\n'
        f'        <c:time-range start="{to_ical_utc(start)}" end="{to_ical_utc(end)}"/>\n'
        "      </c:comp-filter>\n"
        "    </c:comp-filter>\n"
        "  </c:filter>\n"
        "</c:calendar-query>\n"
    )


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1]


def _children(element: ET.Element, name: str) -> Iterator[ET.Element]:
    return (child for child in element if _local(child.tag) == name)


def _find(element: ET.Element, name: str) -> Optional[ET.Element]:
    """First descendant with local name ``name``."""
    for child in element.iter():
        if child is not element and _local(child.tag) == name:
            return child
    return None


def _text(element: Optional[ET.Element]) -> str:
    if element is None or element.text is None:
        return ""
    return element.text.strip()


def parse_xml(body: str) -> ET.Element:
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    if len(body.encode("utf-8")) > MAX_XML_BYTES:
        raise TransientError("XML document too large")
    if "<!DOCTYPE" in body or "<!ENTITY" in body:
        raise TransientError("XML document type declarations are not accepted")
    try:
        return ET.fromstring(body.strip())
    except ET.ParseError as e:
        logger.error(f"XML parsing error: {e}")
        raise TransientError("Failed to parse CalDAV response") from e


def name_from_href(href: str) -> str:
    """Readable calendar name from its collection href."""
    name = extract_calendar_name_from_path(href)
    for suffix in (".ics", ".cal"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    return name.replace("_", " ").capitalize()


def clean_etag(etag: Optional[str]) -> Optional[str]:
    if not etag:
        return None
    etag = etag.strip()
    if etag.startswith("W/"):
        etag = etag[2:]
    return etag.strip('"') or None


def parse_calendar_discovery(body: str, selected_default: bool = False) -> List[CalendarDescriptor]:
    """
    Calendars listed in a PROPFIND multistatus.

    A response is a calendar only if its ``resourcetype`` contains a
    ``calendar`` element; the home collection and principals are skipped.
    """
    root = parse_xml(body)
    calendars = []
    for response in root.iter():
        if _local(response.tag) != "response":
            continue
        href = _text(next(_children(response, "href"), None))
        resourcetype = _find(response, "resourcetype")
        if not href or resourcetype is None:
            continue
        if not any(_local(child.tag) == "calendar" for child in resourcetype):
            continue

        display_name = _text(_find(response, "displayname"))
        color = _text(_find(response, "calendar-color")) or None
        calendars.append(
            CalendarDescriptor(
                id=href,
                path=href,
                name=display_name or name_from_href(href),
                color=color,
                selected=selected_default,
            )
        )
    return calendars


def parse_multistatus_items(body: str) -> List[MultistatusItem]:
    """href, ETag and raw iCalendar text of each REPORT response entry."""
    if not body or not body.strip():
        return []
    root = parse_xml(body)
    items = []
    for response in root.iter():
        if _local(response.tag) != "response":
            continue
        href = _text(next(_children(response, "href"), None))
        calendar_data = _find(response, "calendar-data")
        items.append(
            MultistatusItem(
                href=href,
                etag=clean_etag(_text(_find(response, "getetag"))),
                calendar_data=calendar_data.text if calendar_data is not None else None,
            )
        )
    return items
