"""Progress tracking through tutorial steps.

Every write goes through an upsert on ``(student_id, tutorial_id)`` so a
student never ends up with two progress rows for one tutorial, even when
two tabs initialize at the same moment.
"""
from typing import Callable, List, Optional
from datetime import datetime

from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import Table
from smartassist.domain.student import Progress, Tutorial
from smartassist.domain.user import utcnow
from smartassist.infrastructure.store import TableStore, UNIQUE_KEYS
from smartassist.services.tutorials import TutorialCatalog

logger = get_logger(__name__)

PROGRESS_KEY = UNIQUE_KEYS[Table.PROGRESS.value]


class ProgressTracker:
    """Moves a student's current step forward and back, with persistence.

    Returned ``Progress`` objects always reflect an acknowledged write; a
    failed write raises ``PersistenceError`` and the caller keeps whatever
    it held before.
    """

    def __init__(self, store: TableStore, tutorials: TutorialCatalog,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.tutorials = tutorials
        self.clock = clock

    async def get(self, student_id: str, tutorial_id: str) -> Optional[Progress]:
        row = await self.store.select_one(
            Table.PROGRESS,
            {"student_id": student_id, "tutorial_id": tutorial_id},
            required=False,
        )
        return Progress.model_validate(row) if row else None

    async def all(self) -> List[Progress]:
        """Every progress row, most recently touched first."""
        rows = await self.store.select(Table.PROGRESS, order_by="updated_at", descending=True)
        return [Progress.model_validate(row) for row in rows]

    async def for_student(self, student_id: str) -> List[Progress]:
        rows = await self.store.select(
            Table.PROGRESS, {"student_id": student_id}, order_by="updated_at", descending=True
        )
        return [Progress.model_validate(row) for row in rows]

    async def ensure_initialized(self, student_id: str, tutorial_id: str) -> Progress:
        """Create progress at step 0 unless the student already has some.

        Raises:
            NotFoundError: If the tutorial does not exist
        """
        await self.tutorials.get(tutorial_id)
        now = self.clock()
        fresh = Progress(
            student_id=student_id,
            tutorial_id=tutorial_id,
            current_step=0,
            started_at=now,
            updated_at=now,
        )
        row = await self.store.upsert(
            Table.PROGRESS, fresh.model_dump(), on_conflict=PROGRESS_KEY, ignore_duplicates=True
        )
        return Progress.model_validate(row)

    async def advance(self, student_id: str, tutorial_id: str) -> Progress:
        """Move one step forward; a no-op on the last step."""
        return await self._move(student_id, tutorial_id, +1)

    async def retreat(self, student_id: str, tutorial_id: str) -> Progress:
        """Move one step back; a no-op on step 0."""
        return await self._move(student_id, tutorial_id, -1)

    async def _move(self, student_id: str, tutorial_id: str, delta: int) -> Progress:
        tutorial: Tutorial = await self.tutorials.get(tutorial_id)
        current = await self.get(student_id, tutorial_id)
        if current is None:
            current = await self.ensure_initialized(student_id, tutorial_id)

        target = current.current_step + delta
        if target < 0 or target >= tutorial.total_steps:
            logger.debug(
                f"Step {target} out of range for {tutorial.tutorial_id}, keeping {current.current_step}",
                extra={"student_id": student_id, "tutorial_id": tutorial_id}
            )
            return current

        completed = set(current.completed_steps)
        if delta > 0:
            completed.add(current.current_step)

        row = await self.store.upsert(
            Table.PROGRESS,
            {
                "id": current.id,
                "student_id": student_id,
                "tutorial_id": tutorial_id,
                "current_step": target,
                "completed_steps": sorted(completed),
                "updated_at": self.clock(),
            },
            on_conflict=PROGRESS_KEY,
        )
        logger.info(
            f"Progress moved to step {target + 1} of {tutorial.total_steps}",
            extra={"student_id": student_id, "tutorial_id": tutorial_id}
        )
        return Progress.model_validate(row)
