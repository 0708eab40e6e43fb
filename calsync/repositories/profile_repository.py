from typing import Optional

from sqlalchemy.orm import Session

from calsync.models.profile import Profile
from calsync.repositories.base_repository import BaseRepository


class ProfileRepository(BaseRepository[Profile]):
    """Repository for user profiles."""

    def __init__(self, db: Session):
        super().__init__(Profile, db)

    def get_by_user_id(self, user_id: int) -> Optional[Profile]:
        return self.get_by(user_id=user_id)

    def get_or_create(self, user_id: int) -> Profile:
        profile = self.get_by_user_id(user_id)
        if profile is None:
            profile = self.create({"user_id": user_id})
        return profile

    def set_primary_integration(
        self, user_id: int, integration_id: Optional[int]
    ) -> Profile:
        profile = self.get_or_create(user_id)
        profile.primary_calendar_integration_id = integration_id
        return self.save(profile)
