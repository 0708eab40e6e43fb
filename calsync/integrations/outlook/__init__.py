from calsync.integrations.outlook.calendar import OutlookCalendarAdapter
from calsync.integrations.outlook.oauth import OutlookOAuthClient

__all__ = ["OutlookCalendarAdapter", "OutlookOAuthClient"]
