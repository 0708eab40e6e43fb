# calsync/core/constants.py
import enum


class Provider(str, enum.Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"
    CALDAV = "caldav"
    NEXTCLOUD = "nextcloud"
    OWNCLOUD = "owncloud"
    RADICALE = "radicale"
    BAIKAL = "baikal"
    SABREDAV = "sabredav"

    @property
    def is_oauth(self) -> bool:
        return self in OAUTH_PROVIDERS

    @property
    def is_caldav(self) -> bool:
        return self in CALDAV_PROVIDERS


OAUTH_PROVIDERS = frozenset({Provider.GOOGLE, Provider.OUTLOOK})
CALDAV_PROVIDERS = frozenset(
    {
        Provider.CALDAV,
        Provider.NEXTCLOUD,
        Provider.OWNCLOUD,
        Provider.RADICALE,
        Provider.BAIKAL,
        Provider.SABREDAV,
    }
)


class ServerType(str, enum.Enum):
    RADICALE = "radicale"
    NEXTCLOUD = "nextcloud"
    OWNCLOUD = "owncloud"
    BAIKAL = "baikal"
    SABREDAV = "sabredav"
    GENERIC = "generic"


# Detected CalDAV server type -> provider stored on the integration
SERVER_TYPE_PROVIDERS = {
    ServerType.RADICALE: Provider.RADICALE,
    ServerType.NEXTCLOUD: Provider.NEXTCLOUD,
    ServerType.OWNCLOUD: Provider.OWNCLOUD,
    ServerType.BAIKAL: Provider.BAIKAL,
    ServerType.SABREDAV: Provider.SABREDAV,
    ServerType.GENERIC: Provider.CALDAV,
}


class ErrorCategory(str, enum.Enum):
    """How a failure should be handled by callers and job runners."""

    PERMANENT = "permanent"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    CONFIGURATION = "configuration"
    REFRESH_IN_PROGRESS = "refresh_in_progress"


class HealthStatus(str, enum.Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ErrorClass(str, enum.Enum):
    TRANSIENT = "transient"
    HARD = "hard"


class HealthOutcome(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT_ERROR = "transient_error"
    HARD_ERROR = "hard_error"


class Transition(str, enum.Enum):
    INITIAL_FAILURE = "initial_failure"
    BECAME_UNHEALTHY = "became_unhealthy"
    BECAME_HEALTHY = "became_healthy"
    BECAME_DEGRADED = "became_degraded"
    NO_CHANGE = "no_change"


# Fallback calendar reference per OAuth provider when nothing was discovered
PROVIDER_FALLBACK_CALENDAR = {
    Provider.GOOGLE: "primary",
    Provider.OUTLOOK: "default",
}

GOOGLE_CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_EVENT_ID_LENGTH = 32

OUTLOOK_GRAPH_URL = "https://graph.microsoft.com/v1.0"
OUTLOOK_AUTHORIZE_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
OUTLOOK_TOKEN_URL = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
OUTLOOK_SCOPE = (
    "https://graph.microsoft.com/Calendars.ReadWrite "
    "https://graph.microsoft.com/User.Read offline_access openid profile"
)

ICAL_PRODID = "-//calsync//Calendar Sync//EN"
