# calsync/models/__init__.py
from calsync.models.calendar_integration import CalendarIntegration
from calsync.models.profile import Profile
