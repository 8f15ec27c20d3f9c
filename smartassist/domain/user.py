"""Domain models for identities and profiles."""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import uuid
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class UserType(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"


class AuthUser(BaseModel):
    """Identity issued by the identity provider.

    Attributes:
        id: Opaque user identifier; doubles as ``student_id`` on owned rows
        user_type: Role claimed by the token
        name: Display name, when the provider knows it
    """
    id: str
    user_type: UserType = UserType.STUDENT
    name: Optional[str] = None

    @property
    def is_teacher(self) -> bool:
        return self.user_type == UserType.TEACHER


class TokenData(BaseModel):
    """JWT token payload data."""
    sub: str  # User ID
    user_type: UserType
    name: Optional[str] = None
    exp: datetime
    iat: Optional[datetime] = None


class Profile(BaseModel):
    """Onboarding record for a student or a teacher.

    ``user_type`` is fixed at creation; nothing in the engine changes it.
    """
    id: str = Field(default_factory=new_id)
    user_id: str
    name: str
    user_type: UserType
    student_id: Optional[str] = None  # school-issued roll number, display only
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "user_id": "0b6c2f4e-0d0b-4c57-9a0e-3f2f8b1f2c11",
                "name": "Alice Johnson",
                "user_type": "student",
                "student_id": "S001"
            }
        }


class ProfileCreate(BaseModel):
    """Onboarding request body."""
    name: str
    user_type: UserType
    student_id: Optional[str] = None
