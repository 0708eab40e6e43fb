"""
CalDAV server classification.

Maps a base URL (and, when available, response headers) to one of the known
server dialects and its URL templates. Everything here except
``auto_detect`` is pure.
"""
import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

import requests
from requests.auth import HTTPBasicAuth

from calsync.core.constants import ServerType

logger = logging.getLogger(__name__)

PROBE_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class ServerProfile:
    type: ServerType
    discovery_path: str
    calendar_path_pattern: str
    event_path_pattern: str
    supports_oauth: bool
    supports_calendar_color: bool
    supports_calendar_order: bool
    requires_calendar_suffix: bool
    # Path segments that mark where a pasted DAV URL leaves the install root
    root_markers: Tuple[str, ...] = ()


def _dav_profile(server_type, prefix, oauth, color, order, suffix=False, markers=()) -> ServerProfile:
    return ServerProfile(
        type=server_type,
        discovery_path=f"{prefix}/{{username}}/",
        calendar_path_pattern=f"{prefix}/{{username}}/{{calendar}}/",
        event_path_pattern=f"{prefix}/{{username}}/{{calendar}}/{{uid}}.ics",
        supports_oauth=oauth,
        supports_calendar_color=color,
        supports_calendar_order=order,
        requires_calendar_suffix=suffix,
        root_markers=markers,
    )


PROFILES = {
    ServerType.RADICALE: _dav_profile(ServerType.RADICALE, "", False, True, False, suffix=True),
    ServerType.NEXTCLOUD: _dav_profile(
        ServerType.NEXTCLOUD, "/remote.php/dav/calendars", True, True, True, markers=("/remote.php/", "/index.php/")
    ),
    ServerType.OWNCLOUD: _dav_profile(
        ServerType.OWNCLOUD, "/remote.php/dav/calendars", True, True, True, markers=("/remote.php/", "/index.php/")
    ),
    ServerType.BAIKAL: _dav_profile(
        ServerType.BAIKAL, "/cal.php/calendars", False, True, False, markers=("/cal.php/", "/dav.php/")
    ),
    ServerType.SABREDAV: _dav_profile(ServerType.SABREDAV, "/calendars", False, True, False, markers=("/calendars/",)),
    ServerType.GENERIC: _dav_profile(ServerType.GENERIC, "/calendars", False, False, False, markers=("/calendars/",)),
}

# (server type, substrings of the lowercased URL), most specific first
_URL_RULES = (
    (ServerType.RADICALE, ("radicale", ":5232")),
    (ServerType.NEXTCLOUD, ("nextcloud", "/remote.php/dav", "/remote.php/webdav")),
    (ServerType.OWNCLOUD, ("owncloud",)),
    (ServerType.BAIKAL, ("baikal", "/cal.php")),
    (ServerType.SABREDAV, ("sabre", "/server.php")),
)

_SERVER_HEADER_TOKENS = (
    ("radicale", ServerType.RADICALE),
    ("nextcloud", ServerType.NEXTCLOUD),
    ("owncloud", ServerType.OWNCLOUD),
    ("baikal", ServerType.BAIKAL),
    ("sabre", ServerType.SABREDAV),
)


def detect_from_url(url: str) -> ServerType:
    """
    Classify a CalDAV base URL.

    >>> detect_from_url("https://cal.example.com:5232")
    <ServerType.RADICALE: 'radicale'>
    >>> detect_from_url("https://x.com/remote.php/dav")
    <ServerType.NEXTCLOUD: 'nextcloud'>
    """
    url_lower = (url or "").lower()
    for server_type, needles in _URL_RULES:
        if any(needle in url_lower for needle in needles):
            return server_type
    return ServerType.GENERIC


def detect_from_headers(headers: Optional[Mapping[str, str]]) -> Optional[ServerType]:
    """Classify from response headers; ``None`` when nothing identifies the server."""
    if not headers:
        return None
    lowered = {str(k).lower(): str(v).lower() for k, v in dict(headers).items()}

    server = lowered.get("server", "")
    for token, server_type in _SERVER_HEADER_TOKENS:
        if token in server:
            return server_type

    powered_by = lowered.get("x-powered-by", "")
    if "nextcloud" in powered_by:
        return ServerType.NEXTCLOUD
    if "owncloud" in powered_by:
        return ServerType.OWNCLOUD

    if "calendar-access" in lowered.get("dav", ""):
        return ServerType.GENERIC
    return None


def detect(url: str, headers: Optional[Mapping[str, str]] = None) -> ServerType:
    """Headers win when they name a specific server, otherwise the URL decides."""
    from_headers = detect_from_headers(headers)
    if from_headers is not None and from_headers != ServerType.GENERIC:
        return from_headers
    return detect_from_url(url)


def get_profile(server_type: ServerType) -> ServerProfile:
    return PROFILES.get(ServerType(server_type), PROFILES[ServerType.GENERIC])


def server_root(base_url: str, username: str, server_type: ServerType) -> str:
    """
    Install root the profile paths are appended to.

    A base URL pasted with the DAV path (or a calendar path) still attached is
    cut back at the first profile marker, so subdirectory installs survive.

    >>> server_root("https://x.com/nextcloud/remote.php/dav/", "alice", ServerType.NEXTCLOUD)
    'https://x.com/nextcloud'
    >>> server_root("https://r.example.com:5232/alice/", "alice", ServerType.RADICALE)
    'https://r.example.com:5232'
    """
    url = base_url.rstrip("/")
    profile = get_profile(server_type)
    for marker in profile.root_markers:
        index = (url + "/").find(marker)
        if index != -1:
            return url[:index]
    if not profile.root_markers and url.endswith(f"/{username}"):
        return url[: -len(username) - 1]
    return url


def build_discovery_url(base_url: str, username: str, server_type: ServerType) -> str:
    path = get_profile(server_type).discovery_path.replace("{username}", username)
    return f"{base_url.rstrip('/')}{path}"


def build_calendar_url(
    base_url: str, username: str, calendar_name: str, server_type: ServerType
) -> str:
    path = (
        get_profile(server_type)
        .calendar_path_pattern.replace("{username}", username)
        .replace("{calendar}", calendar_name)
    )
    return f"{base_url.rstrip('/')}{path}"


def build_event_url(
    base_url: str, username: str, calendar_name: str, uid: str, server_type: ServerType
) -> str:
    resource = uid if uid.endswith(".ics") else f"{uid}.ics"
    path = (
        get_profile(server_type)
        .event_path_pattern.replace("{username}", username)
        .replace("{calendar}", calendar_name)
        .replace("{uid}.ics", resource)
    )
    return f"{base_url.rstrip('/')}{path}"


def auto_detect(
    base_url: str,
    username: str,
    password: str,
    session: Optional[requests.Session] = None,
) -> ServerType:
    """
    URL heuristics first; a generic result is refined with an OPTIONS probe.

    Probe failures are not errors here, the caller simply gets ``generic``.
    """
    server_type = detect_from_url(base_url)
    if server_type != ServerType.GENERIC:
        return server_type

    http = session or requests.Session()
    try:
        response = http.request(
            "OPTIONS",
            base_url,
            auth=HTTPBasicAuth(username, password),
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except requests.RequestException as e:
        logger.info(f"CalDAV probe of {base_url} failed, assuming generic server: {e}")
        return ServerType.GENERIC

    return detect_from_headers(response.headers) or ServerType.GENERIC
