from calsync.db.base import Base

from sqlalchemy import Column, ForeignKey, Integer


class Profile(Base):
    """
    Per-user scheduling profile. Owns the pointer to the primary calendar
    integration so integrations never reference each other.
    """
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, index=True, nullable=False)
    primary_calendar_integration_id = Column(
        Integer,
        ForeignKey("calendar_integrations.id", ondelete="SET NULL"),
        nullable=True,
    )
