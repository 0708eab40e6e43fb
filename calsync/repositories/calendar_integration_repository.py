from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from calsync.core.constants import Provider
from calsync.models.calendar_integration import CalendarIntegration
from calsync.repositories.base_repository import BaseRepository


class CalendarIntegrationRepository(BaseRepository[CalendarIntegration]):
    """Repository for calendar integrations."""

    def __init__(self, db: Session):
        super().__init__(CalendarIntegration, db)

    def get_fresh(self, integration_id: int) -> Optional[CalendarIntegration]:
        """Re-read a row from the database, bypassing the session's identity map."""
        return (
            self.db.query(CalendarIntegration)
            .populate_existing()
            .filter(CalendarIntegration.id == integration_id)
            .first()
        )

    def list_for_user(self, user_id: int) -> List[CalendarIntegration]:
        """All integrations of a user, oldest first."""
        return (
            self.db.query(CalendarIntegration)
            .filter(CalendarIntegration.user_id == user_id)
            .order_by(CalendarIntegration.created_at.asc(), CalendarIntegration.id.asc())
            .all()
        )

    def list_active_for_user(self, user_id: int) -> List[CalendarIntegration]:
        return [i for i in self.list_for_user(user_id) if i.is_active]

    def list_active(self) -> List[CalendarIntegration]:
        return (
            self.db.query(CalendarIntegration)
            .filter(CalendarIntegration.is_active == True)  # noqa: E712
            .order_by(CalendarIntegration.id.asc())
            .all()
        )

    def list_expiring_before(
        self, threshold: datetime, provider: Provider
    ) -> List[CalendarIntegration]:
        """Active OAuth integrations whose access token expires before ``threshold``."""
        return (
            self.db.query(CalendarIntegration)
            .filter(
                CalendarIntegration.provider == provider,
                CalendarIntegration.is_active == True,  # noqa: E712
                CalendarIntegration.refresh_token.isnot(None),
                CalendarIntegration.token_expires_at.isnot(None),
                CalendarIntegration.token_expires_at < threshold,
            )
            .all()
        )

    def find_default_holder(
        self, user_id: int, exclude_id: Optional[int] = None
    ) -> Optional[CalendarIntegration]:
        """The integration of ``user_id`` currently holding a default booking calendar."""
        query = self.db.query(CalendarIntegration).filter(
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.default_booking_calendar_id.isnot(None),
        )
        if exclude_id is not None:
            query = query.filter(CalendarIntegration.id != exclude_id)
        return query.first()

    def clear_default_booking_calendars(self, user_id: int, except_id: int) -> int:
        """Clear the default booking calendar on every other integration of the user."""
        count = (
            self.db.query(CalendarIntegration)
            .filter(
                CalendarIntegration.user_id == user_id,
                CalendarIntegration.id != except_id,
                CalendarIntegration.default_booking_calendar_id.isnot(None),
            )
            .update(
                {CalendarIntegration.default_booking_calendar_id: None},
                synchronize_session="fetch",
            )
        )
        self.db.commit()
        return count
