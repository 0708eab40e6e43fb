from calsync.db.base import Base
from calsync.core.constants import Provider
from calsync.models.types import EncryptedString
from calsync.utils.time import ensure_utc, utcnow

from sqlalchemy import Column, DateTime, Integer, String, Boolean, JSON, Text, Enum, Index, text


class CalendarIntegration(Base):
    """
    A user's connection to one calendar provider account or CalDAV server.

    Tokens and the CalDAV password are encrypted at rest. ``calendar_list``
    holds the discovered calendars as dicts with ``id``, ``path``, ``name``,
    ``primary``, ``selected`` and ``color`` keys.
    """
    __tablename__ = "calendar_integrations"
    __table_args__ = (
        # At most one integration per user carries a default booking calendar
        Index(
            "uq_calendar_integrations_default_booking",
            "user_id",
            unique=True,
            sqlite_where=text("default_booking_calendar_id IS NOT NULL"),
            postgresql_where=text("default_booking_calendar_id IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, index=True, nullable=False)
    name = Column(String, nullable=True)
    provider = Column(Enum(Provider), nullable=False)

    # CalDAV family
    base_url = Column(String, nullable=True)
    username = Column(String, nullable=True)
    password = Column(EncryptedString, nullable=True)

    # OAuth family
    access_token = Column(EncryptedString, nullable=True)
    refresh_token = Column(EncryptedString, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    oauth_scope = Column(String, nullable=True)

    calendar_list = Column(JSON, nullable=True)
    calendar_paths = Column(JSON, nullable=True)
    default_booking_calendar_id = Column(String, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def expires_at(self):
        return ensure_utc(self.token_expires_at)

    def __repr__(self) -> str:
        # Credentials never appear in the repr
        return (
            f"<CalendarIntegration id={self.id} user_id={self.user_id} "
            f"provider={getattr(self.provider, 'value', self.provider)} active={self.is_active}>"
        )
