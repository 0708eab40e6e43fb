from calsync.integrations.google.calendar import GoogleCalendarAdapter
from calsync.integrations.google.oauth import GoogleOAuthClient

__all__ = ["GoogleCalendarAdapter", "GoogleOAuthClient"]
