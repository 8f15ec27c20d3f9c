"""Code snapshot capture: explicit submissions and timed auto-save.

Snapshots are append-only. Auto-save never interrupts the student: a blank
buffer is skipped silently and write failures are only logged. Submission
is the loud path: a blank buffer is a ``ValidationError`` and store
failures propagate.
"""
import asyncio
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from smartassist.core.config import settings
from smartassist.core.errors import ValidationError
from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import Table
from smartassist.domain.student import CodeSnapshot
from smartassist.domain.user import utcnow
from smartassist.infrastructure.store import TableStore
from smartassist.services.scheduler import PeriodicTask

logger = get_logger(__name__)


def latest_by_student(snapshots: Iterable[CodeSnapshot]) -> Dict[str, CodeSnapshot]:
    """Map each student to their snapshot with the greatest timestamp."""
    latest: Dict[str, CodeSnapshot] = {}
    for snap in snapshots:
        current = latest.get(snap.student_id)
        if current is None or snap.timestamp > current.timestamp:
            latest[snap.student_id] = snap
    return latest


class CodeSnapshotRecorder:

    def __init__(self, store: TableStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    async def capture(
        self,
        student_id: str,
        code: str,
        is_submission: bool = False,
        tutorial_id: Optional[str] = None,
        step_number: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> CodeSnapshot:
        """Append one snapshot row. No deduplication."""
        snap = CodeSnapshot(
            student_id=student_id,
            code=code,
            is_submission=is_submission,
            tutorial_id=tutorial_id,
            step_number=step_number,
            session_id=session_id,
            timestamp=self.clock(),
        )
        row = await self.store.insert(Table.CODE_LOGS, snap.model_dump())
        return CodeSnapshot.model_validate(row)

    async def submit(
        self,
        student_id: str,
        code: str,
        tutorial_id: Optional[str] = None,
        step_number: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> CodeSnapshot:
        """Record an explicit submission.

        Raises:
            ValidationError: If the code is blank; nothing is written
        """
        if not code or not code.strip():
            raise ValidationError("Please write some code before submitting")
        snap = await self.capture(
            student_id, code, is_submission=True,
            tutorial_id=tutorial_id, step_number=step_number, session_id=session_id,
        )
        logger.info(
            "Code submitted",
            extra={"student_id": student_id, "session_id": session_id, "tutorial_id": tutorial_id}
        )
        return snap

    async def history(self, student_id: Optional[str] = None,
                      limit: Optional[int] = None) -> List[CodeSnapshot]:
        """Newest-first snapshots, for one student or everyone."""
        filters = {"student_id": student_id} if student_id else None
        rows = await self.store.select(
            Table.CODE_LOGS, filters, order_by="timestamp", descending=True,
            limit=limit or settings.code_history_limit,
        )
        return [CodeSnapshot.model_validate(row) for row in rows]

    async def latest_per_student(self) -> Dict[str, CodeSnapshot]:
        rows = await self.store.select(Table.CODE_LOGS, order_by="timestamp", descending=True)
        return latest_by_student(CodeSnapshot.model_validate(row) for row in rows)


class EditorBuffer:
    """Live editor state shared between the student and the auto-saver.

    ``tutorial_id`` and ``step_number`` follow the student's navigation so
    each snapshot is tagged with where they were when it was taken.
    """

    def __init__(self, text: str = "", tutorial_id: Optional[str] = None,
                 step_number: Optional[int] = None):
        self.text = text
        self.tutorial_id = tutorial_id
        self.step_number = step_number

    def set(self, text: str) -> None:
        self.text = text

    @property
    def is_blank(self) -> bool:
        return not self.text.strip()


class AutoSaver:
    """Capture the editor buffer on a fixed cadence.

    Each tick reads ``buffer`` as it is at fire time. ``saving`` is the
    in-progress indicator for the UI.
    """

    def __init__(
        self,
        recorder: CodeSnapshotRecorder,
        student_id: str,
        buffer: EditorBuffer,
        session_id: Optional[str] = None,
        interval: Optional[float] = None,
    ):
        self.recorder = recorder
        self.student_id = student_id
        self.buffer = buffer
        self.session_id = session_id
        self.saving = False
        self.saved_count = 0
        self._task = PeriodicTask(
            interval or settings.autosave_interval_seconds,
            self.tick,
            name=f"autosave:{student_id}",
        )
        self.logger = get_logger(__name__, {"student_id": student_id})

    @property
    def running(self) -> bool:
        return self._task.running

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()
        self.saving = False

    async def tick(self) -> Optional[CodeSnapshot]:
        """Save the buffer once if it has content. Never raises."""
        if self.buffer.is_blank:
            return None
        self.saving = True
        try:
            snap = await self.recorder.capture(
                self.student_id,
                self.buffer.text,
                is_submission=False,
                tutorial_id=self.buffer.tutorial_id,
                step_number=self.buffer.step_number,
                session_id=self.session_id,
            )
            self.saved_count += 1
            return snap
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.warning(f"Auto-save failed: {exc}", extra={"session_id": self.session_id})
            return None
        finally:
            self.saving = False
