import pytest

from calsync.core.constants import Provider
from calsync.integrations.caldav import path_utils


class TestUrlNormalization:
    def test_adds_scheme_and_trailing_slash(self):
        assert path_utils.normalize_url("example.com/caldav") == "https://example.com/caldav/"

    def test_keeps_http_scheme(self):
        assert path_utils.normalize_url("http://example.com/dav/") == "http://example.com/dav/"

    def test_nextcloud_root_gets_dav_path(self):
        assert path_utils.normalize_url("https://cloud.example.com", Provider.NEXTCLOUD) == (
            "https://cloud.example.com/remote.php/dav/"
        )

    def test_nextcloud_web_ui_url(self):
        url = "https://cloud.example.com/index.php/apps/calendar"
        assert path_utils.normalize_url(url, Provider.NEXTCLOUD) == "https://cloud.example.com/remote.php/dav/"

    def test_nextcloud_web_ui_url_in_subdirectory(self):
        url = "https://example.com/cloud/index.php/apps/calendar"
        assert path_utils.normalize_url(url, Provider.NEXTCLOUD) == "https://example.com/cloud/remote.php/dav/"

    def test_strip_nextcloud_dav_path(self):
        url = "https://cloud.example.com/remote.php/dav/calendars/alice/"
        assert path_utils.strip_nextcloud_dav_path(url) == "https://cloud.example.com"

    def test_extract_base_url_keeps_custom_port(self):
        assert path_utils.extract_base_url("https://x.com:8443/a/b") == "https://x.com:8443"
        assert path_utils.extract_base_url("https://x.com:443/a/b") == "https://x.com"


class TestCalendarPaths:
    def test_build_full_url(self):
        assert path_utils.build_full_url("https://x.com/", "cal/home/") == "https://x.com/cal/home/"
        assert path_utils.build_full_url("https://x.com", "https://y.com/c/") == "https://y.com/c/"

    @pytest.mark.parametrize(
        "path,expected",
        [
            ("/remote.php/dav/calendars/alice/work/", "work"),
            ("/calendars/bob/home/", "home"),
            ("/carol/personal/", "personal"),
            ("", "calendar"),
        ],
    )
    def test_extract_calendar_name(self, path, expected):
        assert path_utils.extract_calendar_name_from_path(path) == expected
