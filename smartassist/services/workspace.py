"""Client-side engine for one student's working session.

Ties the pieces together the way the student page uses them: a session is
opened on entry, heartbeats and auto-save run while the student works, the
session id is threaded into every snapshot, and everything is released on
exit, whether that is an explicit ``aclose``, leaving an ``async with``
block, or the identity provider reporting a sign-out.
"""
import asyncio
from typing import Coroutine, List, Optional, Set

from smartassist.core.auth import IdentityProvider
from smartassist.core.logging import get_logger
from smartassist.domain.dashboard import ChangeEvent
from smartassist.domain.student import CodeSnapshot, HelpRequest, Progress, Tutorial
from smartassist.services.dispatcher import ChangeDispatcher, Subscription
from smartassist.services.help_requests import HelpRequestChannel
from smartassist.services.progress import ProgressTracker
from smartassist.services.scheduler import PeriodicTask
from smartassist.services.sessions import SessionHandle, SessionManager
from smartassist.services.snapshots import AutoSaver, CodeSnapshotRecorder, EditorBuffer
from smartassist.services.tutorials import TutorialCatalog


class StudentWorkspace:

    def __init__(
        self,
        identity: IdentityProvider,
        tutorials: TutorialCatalog,
        progress: ProgressTracker,
        recorder: CodeSnapshotRecorder,
        sessions: SessionManager,
        help_requests: HelpRequestChannel,
        dispatcher: Optional[ChangeDispatcher] = None,
        autosave_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
    ):
        self.identity = identity
        self.student_id = identity.require_user().id
        self.tutorials = tutorials
        self.progress_tracker = progress
        self.recorder = recorder
        self.sessions = sessions
        self.help_channel = help_requests
        self.dispatcher = dispatcher
        self.autosave_interval = autosave_interval
        self.heartbeat_interval = heartbeat_interval

        self.buffer = EditorBuffer()
        self.tutorial: Optional[Tutorial] = None
        self.progress: Optional[Progress] = None
        self.help_history: List[HelpRequest] = []
        self.session: Optional[SessionHandle] = None

        self._autosaver: Optional[AutoSaver] = None
        self._heartbeat: Optional[PeriodicTask] = None
        self._subscription: Optional[Subscription] = None
        self._unwatch_auth = None
        self._closing: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False
        self.logger = get_logger(__name__, {"student_id": self.student_id})

    @property
    def autosaving(self) -> bool:
        return bool(self._autosaver and self._autosaver.saving)

    @property
    def current_step(self) -> Optional[int]:
        return self.progress.current_step if self.progress else None

    @property
    def total_steps(self) -> Optional[int]:
        return self.tutorial.total_steps if self.tutorial else None

    async def start(self, tutorial_id: Optional[str] = None) -> "StudentWorkspace":
        """Open the session and start background work.

        ``tutorial_id`` defaults to the first tutorial in the catalog.
        """
        self.session = await self.sessions.open(self.student_id)
        try:
            await self.select_tutorial(tutorial_id)
            await self.reload_help()
        except BaseException:
            await self.aclose()
            raise

        self._autosaver = AutoSaver(
            self.recorder, self.student_id, self.buffer,
            session_id=self.session.session_id, interval=self.autosave_interval,
        )
        self._autosaver.start()
        self._heartbeat = self.sessions.heartbeat_task(self.session, self.heartbeat_interval)
        self._heartbeat.start()

        if self.dispatcher is not None:
            self._subscription = self.dispatcher.subscribe_self(self.student_id, self._on_change)
        self._unwatch_auth = self.identity.on_auth_change(self._on_auth_change)
        self.logger.info("Workspace started", extra={"session_id": self.session.session_id})
        return self

    async def select_tutorial(self, tutorial_id: Optional[str] = None) -> Optional[Progress]:
        if tutorial_id is None:
            catalog = await self.tutorials.all()
            if not catalog:
                return None
            tutorial_id = catalog[0].id
        tutorial = await self.tutorials.get(tutorial_id)
        progress = await self.progress_tracker.ensure_initialized(self.student_id, tutorial_id)
        self.tutorial = tutorial
        self._set_progress(progress)
        return progress

    def _set_progress(self, progress: Progress) -> None:
        self.progress = progress
        self.buffer.tutorial_id = progress.tutorial_id
        self.buffer.step_number = progress.current_step

    async def next_step(self) -> Optional[Progress]:
        if self.progress is None:
            return None
        self._set_progress(await self.progress_tracker.advance(self.student_id, self.progress.tutorial_id))
        return self.progress

    async def previous_step(self) -> Optional[Progress]:
        if self.progress is None:
            return None
        self._set_progress(await self.progress_tracker.retreat(self.student_id, self.progress.tutorial_id))
        return self.progress

    async def submit(self) -> CodeSnapshot:
        return await self.recorder.submit(
            self.student_id,
            self.buffer.text,
            tutorial_id=self.buffer.tutorial_id,
            step_number=self.buffer.step_number,
            session_id=self.session.session_id if self.session else None,
        )

    async def ask_for_help(self, message: str) -> HelpRequest:
        request = await self.help_channel.create(self.student_id, message)
        await self.reload_help()
        return request

    async def reload_help(self) -> List[HelpRequest]:
        self.help_history = await self.help_channel.for_student(self.student_id)
        return self.help_history

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_change(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._spawn(self._catch_up(event))

    async def _catch_up(self, event: ChangeEvent) -> None:
        try:
            if event.table == "help_requests":
                await self.reload_help()
            elif self.progress is not None:
                latest = await self.progress_tracker.get(self.student_id, self.progress.tutorial_id)
                if latest is not None and not self._closed:
                    self._set_progress(latest)
        except Exception as exc:
            self.logger.warning(f"Could not catch up after {event.table} change: {exc}")

    def _on_auth_change(self, user) -> None:
        if (user is None or user.id != self.student_id) and self._closing is None:
            self._closing = self._spawn(self.aclose())

    def _stop_background(self) -> None:
        if self._autosaver is not None:
            self._autosaver.stop()
        if self._heartbeat is not None:
            self._heartbeat.stop()
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._unwatch_auth is not None:
            self._unwatch_auth()
            self._unwatch_auth = None

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        for task in pending:
            # A sign-out close already in flight is left to finish
            if task is not self._closing:
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Stop background work, then close the session.

        Pending catch-ups are cancelled and awaited first, so nothing touches
        the workspace after this returns.
        """
        self._closed = True
        self._stop_background()
        await self._cancel_tasks()
        if self.session is not None:
            await self.sessions.close(self.session)
            self.logger.info("Workspace closed", extra={"session_id": self.session.session_id})

    async def sign_out(self) -> None:
        """Close the workspace, then drop the identity."""
        await self.aclose()
        self.identity.sign_out()

    async def __aenter__(self) -> "StudentWorkspace":
        return await self.start()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()
