"""Onboarding profiles for students and teachers."""
from typing import List, Optional

from smartassist.core.errors import ValidationError
from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import Table
from smartassist.domain.user import Profile, UserType

logger = get_logger(__name__)


class ProfileService:

    def __init__(self, store):
        self.store = store

    async def create(self, user_id: str, name: str, user_type: UserType,
                     student_id: Optional[str] = None) -> Profile:
        """Create the one profile a user gets at onboarding.

        Raises:
            ValidationError: If the name is blank
            ConflictError: If the user already has a profile
        """
        if not name or not name.strip():
            raise ValidationError("Name is required")
        profile = Profile(
            user_id=user_id,
            name=name.strip(),
            user_type=user_type,
            student_id=student_id,
        )
        row = await self.store.insert(Table.PROFILES, profile.model_dump())
        logger.info(f"Profile created for {user_id}", extra={"user_id": user_id})
        return Profile.model_validate(row)

    async def get(self, user_id: str) -> Optional[Profile]:
        """Return the user's profile, or None before onboarding."""
        row = await self.store.select_one(Table.PROFILES, {"user_id": user_id}, required=False)
        return Profile.model_validate(row) if row else None

    async def all(self) -> List[Profile]:
        rows = await self.store.select(Table.PROFILES, order_by="created_at")
        return [Profile.model_validate(row) for row in rows]

    async def students(self) -> List[Profile]:
        rows = await self.store.select(
            Table.PROFILES, {"user_type": UserType.STUDENT.value}, order_by="created_at"
        )
        return [Profile.model_validate(row) for row in rows]
