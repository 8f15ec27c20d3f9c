"""Domain models for tutorials and the rows a student owns."""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from smartassist.domain.user import new_id, utcnow


class Tutorial(BaseModel):
    """Static tutorial content. Read-only for the engine."""
    id: str = Field(default_factory=new_id)
    tutorial_id: str
    title: str
    steps: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    @property
    def last_step(self) -> int:
        return max(len(self.steps) - 1, 0)


class Progress(BaseModel):
    """A student's position within one tutorial.

    One row per ``(student_id, tutorial_id)``; ``tutorial_id`` references
    ``Tutorial.id``.
    """
    id: str = Field(default_factory=new_id)
    student_id: str
    tutorial_id: str
    current_step: int = Field(default=0, ge=0)
    completed_steps: List[int] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def completion(self, tutorial: Optional[Tutorial]) -> Optional[float]:
        """Fraction of the tutorial reached, counting the current step."""
        if tutorial is None or not tutorial.steps:
            return None
        return (self.current_step + 1) / len(tutorial.steps)


class CodeSnapshot(BaseModel):
    """Append-only capture of a student's editor buffer."""
    id: str = Field(default_factory=new_id)
    student_id: str
    code: str
    is_submission: bool = False
    session_id: Optional[str] = None
    tutorial_id: Optional[str] = None
    step_number: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)


class StudentSession(BaseModel):
    """A bounded interval of active student engagement."""
    id: str = Field(default_factory=new_id)
    student_id: str
    session_start: datetime = Field(default_factory=utcnow)
    session_end: Optional[datetime] = None
    is_active: bool = True
    last_activity: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class HelpStatus(str, Enum):
    PENDING = "pending"
    RESPONDED = "responded"


class HelpRequest(BaseModel):
    """A student's question and, once answered, the teacher's response."""
    id: str = Field(default_factory=new_id)
    student_id: str
    teacher_id: Optional[str] = None
    message: str
    response: Optional[str] = None
    status: HelpStatus = HelpStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        use_enum_values = True

    @property
    def is_pending(self) -> bool:
        return self.response is None


class ErrorLog(BaseModel):
    """Client-side error reported by a student's editor."""
    id: str = Field(default_factory=new_id)
    student_id: str
    error_message: str
    error_stack: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    resolved: bool = False
    created_at: datetime = Field(default_factory=utcnow)
