"""Student work-session lifecycle: open, heartbeat, close.

A session moves NONE -> ACTIVE -> CLOSED. The session id travels in an
explicit ``SessionHandle`` that callers pass to snapshot capture and to
``close``. Closing must happen on every exit path, so ``active()`` wraps the
lifecycle in an async context manager. Stale sessions are never expired
here; reporting tools must tolerate a session left active by a crashed
client.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional

from smartassist.core.config import settings
from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import Table
from smartassist.domain.student import StudentSession
from smartassist.domain.user import utcnow
from smartassist.infrastructure.store import TableStore
from smartassist.services.scheduler import PeriodicTask

logger = get_logger(__name__)


class SessionState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    CLOSED = "closed"


class SessionHandle:
    """Client-side view of one session row."""

    def __init__(self, student_id: str, session_id: Optional[str] = None):
        self.student_id = student_id
        self.session_id = session_id
        self.state = SessionState.ACTIVE if session_id else SessionState.NONE

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def __repr__(self) -> str:
        return f"SessionHandle(student_id={self.student_id!r}, session_id={self.session_id!r}, state={self.state.value})"


class SessionManager:

    def __init__(self, store: TableStore, clock: Callable[[], datetime] = utcnow,
                 exclusive: Optional[bool] = None):
        self.store = store
        self.clock = clock
        self.exclusive = settings.exclusive_sessions if exclusive is None else exclusive

    async def open(self, student_id: str) -> SessionHandle:
        """Insert an active session row for ``student_id``.

        With exclusive sessions enabled, the student's other active sessions
        are closed first, so a new tab takes over from the old one.
        """
        now = self.clock()
        if self.exclusive:
            superseded = await self.store.update(
                Table.SESSIONS,
                {"student_id": student_id, "is_active": True},
                {"is_active": False, "session_end": now},
            )
            if superseded:
                logger.info(
                    f"Closed {len(superseded)} superseded session(s)",
                    extra={"student_id": student_id}
                )
        session = StudentSession(
            student_id=student_id,
            session_start=now,
            last_activity=now,
            created_at=now,
        )
        row = await self.store.insert(Table.SESSIONS, session.model_dump())
        logger.info("Session opened", extra={"student_id": student_id, "session_id": row["id"]})
        return SessionHandle(student_id, row["id"])

    async def heartbeat(self, handle: SessionHandle) -> int:
        """Refresh ``last_activity`` on the student's active sessions.

        Returns the number of rows touched; zero once the handle is closed.
        """
        if not handle.is_active:
            return 0
        updated = await self.store.update(
            Table.SESSIONS,
            {"student_id": handle.student_id, "is_active": True},
            {"last_activity": self.clock()},
        )
        return len(updated)

    async def close(self, handle: SessionHandle) -> bool:
        """Mark the session ended. Never raises.

        A failure leaves a dangling active row, which is logged and accepted
        so that sign-out always completes. A row that was already ended,
        e.g. superseded by a newer exclusive session, keeps its end time.
        """
        if not handle.is_active:
            return False
        handle.state = SessionState.CLOSED
        try:
            await self.store.update(
                Table.SESSIONS,
                {"id": handle.session_id, "is_active": True},
                {"is_active": False, "session_end": self.clock()},
            )
        except Exception as exc:
            logger.error(
                f"Failed to close session: {exc}",
                extra={"student_id": handle.student_id, "session_id": handle.session_id}
            )
            return False
        logger.info("Session closed", extra={"student_id": handle.student_id, "session_id": handle.session_id})
        return True

    async def get(self, session_id: str) -> Optional[StudentSession]:
        row = await self.store.select_one(Table.SESSIONS, {"id": session_id}, required=False)
        return StudentSession.model_validate(row) if row else None

    async def active_sessions(self, student_id: Optional[str] = None) -> List[StudentSession]:
        filters = {"is_active": True}
        if student_id:
            filters["student_id"] = student_id
        rows = await self.store.select(Table.SESSIONS, filters, order_by="session_start", descending=True)
        return [StudentSession.model_validate(row) for row in rows]

    def heartbeat_task(self, handle: SessionHandle, interval: Optional[float] = None) -> PeriodicTask:
        """Periodic task that heartbeats ``handle`` until stopped."""
        async def beat() -> None:
            await self.heartbeat(handle)

        return PeriodicTask(
            interval or settings.heartbeat_interval_seconds,
            beat,
            name=f"heartbeat:{handle.session_id}",
        )

    @asynccontextmanager
    async def active(self, student_id: str, heartbeat: bool = True) -> AsyncIterator[SessionHandle]:
        """Open a session for the duration of the block.

        The session is closed however the block exits, cancellation included.

        Example:
            >>> async with sessions.active("S1") as handle:
            ...     await recorder.submit("S1", code, session_id=handle.session_id)
        """
        handle = await self.open(student_id)
        beat = self.heartbeat_task(handle) if heartbeat else None
        if beat:
            beat.start()
        try:
            yield handle
        finally:
            if beat:
                beat.stop()
            await self.close(handle)
