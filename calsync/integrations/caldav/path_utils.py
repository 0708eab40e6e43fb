"""URL and path helpers shared by the CalDAV-family adapters."""
from urllib.parse import urlparse

from calsync.core.constants import Provider


def ensure_scheme(url: str) -> str:
    """Add ``https://`` unless the URL already names a scheme."""
    if url.startswith("http://") or url.startswith("https://"):
        return url
    if url.startswith("//"):
        return "https:" + url
    return "https://" + url


def extract_base_url(full_url: str) -> str:
    """
    Scheme, host and non-default port of a URL.

    >>> extract_base_url("https://example.com:5232/caldav/user/calendar/")
    'https://example.com:5232'
    """
    parsed = urlparse(ensure_scheme(full_url))
    port = f":{parsed.port}" if parsed.port and parsed.port not in (80, 443) else ""
    return f"{parsed.scheme}://{parsed.hostname}{port}"


def _add_provider_path(url: str, provider: Provider) -> str:
    if provider not in (Provider.NEXTCLOUD, Provider.OWNCLOUD):
        return url
    if "/remote.php/dav" in url:
        return url
    for web_path in ("/index.php", "/apps/"):
        index = url.find(web_path)
        if index != -1:
            # Keep any subdirectory the instance is installed under
            return url[:index] + "/remote.php/dav"
    if urlparse(url).path in ("", "/"):
        return extract_base_url(url) + "/remote.php/dav"
    return url


def normalize_url(
    url: str,
    provider: Provider = Provider.CALDAV,
    ensure_trailing_slash: bool = True,
) -> str:
    """
    >>> normalize_url("https://example.com/caldav")
    'https://example.com/caldav/'
    >>> normalize_url("example.com", provider=Provider.NEXTCLOUD)
    'https://example.com/remote.php/dav/'
    >>> normalize_url("radicale.example.com:5232", provider=Provider.RADICALE)
    'https://radicale.example.com:5232'
    """
    url = _add_provider_path(ensure_scheme(url.strip()), Provider(provider))
    if ensure_trailing_slash:
        path = urlparse(url).path
        if path and not path.endswith("/"):
            url += "/"
    return url


def strip_nextcloud_dav_path(url: str) -> str:
    """Cut everything from ``/remote.php/dav`` on, leaving the server root."""
    index = url.find("/remote.php/")
    if index == -1:
        return url.rstrip("/")
    return url[:index]


def build_full_url(base_url: str, calendar_path: str) -> str:
    """Join a base URL and an absolute or relative calendar path."""
    if calendar_path.startswith("http://") or calendar_path.startswith("https://"):
        return calendar_path
    path = calendar_path if calendar_path.startswith("/") else "/" + calendar_path
    return base_url.rstrip("/") + path


def extract_calendar_name_from_path(path: str) -> str:
    """
    Calendar slug from a collection path.

    Handles ``/remote.php/dav/calendars/<user>/<name>/``,
    ``/calendars/<user>/<name>/`` and plain ``/<user>/<name>/`` layouts.
    """
    segments = [s for s in urlparse(path or "").path.split("/") if s]
    if "calendars" in segments:
        index = segments.index("calendars")
        if len(segments) > index + 2:
            return segments[index + 2]
    if segments:
        return segments[-1]
    return "calendar"
