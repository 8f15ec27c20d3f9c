"""Domain models for change signals and the teacher dashboard."""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field

from smartassist.domain.student import CodeSnapshot, HelpRequest, Progress, Tutorial
from smartassist.domain.user import Profile, utcnow


class Table(str, Enum):
    PROFILES = "profiles"
    TUTORIALS = "tutorials"
    PROGRESS = "student_progress"
    CODE_LOGS = "code_logs"
    SESSIONS = "student_sessions"
    HELP_REQUESTS = "help_requests"
    ERROR_LOGS = "error_logs"


class ChangeKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class ChangeEvent(BaseModel):
    """Signal that a row changed.

    Not a consistent payload: listeners re-read the authoritative state.
    Without ``row_id`` or ``student_id`` it means any row in the table may
    have changed.
    """
    table: str
    event: ChangeKind = ChangeKind.INSERT
    row_id: Optional[str] = None
    student_id: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)

    class Config:
        use_enum_values = True


class CompositeRecord(BaseModel):
    """Teacher-facing join of one student's profile, progress and activity."""
    student: Profile
    progress: Optional[Progress] = None
    tutorial: Optional[Tutorial] = None
    latest_code: Optional[CodeSnapshot] = None
    help_requests: List[HelpRequest] = Field(default_factory=list)

    @property
    def completion(self) -> Optional[float]:
        if self.progress is None:
            return None
        return self.progress.completion(self.tutorial)

    @property
    def pending_help(self) -> int:
        return sum(1 for req in self.help_requests if req.is_pending)


class DashboardSummary(BaseModel):
    """Headline numbers derived from the composite view."""
    total_students: int = 0
    active_coders: int = 0
    pending_help: int = 0
    average_completion: Optional[float] = None  # fraction in [0, 1]


class DashboardView(BaseModel):
    """Filtered composite rows plus the summary over the unfiltered set."""
    records: List[CompositeRecord] = Field(default_factory=list)
    summary: DashboardSummary = Field(default_factory=DashboardSummary)
    last_updated: Optional[datetime] = None
    stale: bool = False
