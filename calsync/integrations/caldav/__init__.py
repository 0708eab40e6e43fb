from calsync.integrations.caldav.client import CalDAVClient
from calsync.integrations.caldav.providers import (
    BaikalAdapter,
    CalDAVAdapter,
    NextcloudAdapter,
    OwnCloudAdapter,
    RadicaleAdapter,
    SabreDAVAdapter,
)

__all__ = [
    "BaikalAdapter",
    "CalDAVAdapter",
    "CalDAVClient",
    "NextcloudAdapter",
    "OwnCloudAdapter",
    "RadicaleAdapter",
    "SabreDAVAdapter",
]
