"""Teacher dashboard: one composite record per student, rebuilt wholesale.

The join itself (``build_composite``) and the derived numbers
(``summarize``, ``filter_records``) are pure functions over already
fetched collections. ``TeacherDashboard`` owns the fetching and the
triggers: initial mount, teacher-scope change signals, manual refresh and
optional polling all go through ``request_refresh``, which coalesces bursts
into at most one follow-up rebuild.
"""
import asyncio
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Union

from smartassist.core.config import settings
from smartassist.core.logging import get_logger, LogTimer
from smartassist.domain.dashboard import (
    ChangeEvent, CompositeRecord, DashboardSummary, DashboardView
)
from smartassist.domain.student import CodeSnapshot, HelpRequest, Progress, Tutorial
from smartassist.domain.user import Profile, UserType, utcnow
from smartassist.services.dispatcher import ChangeDispatcher, Subscription
from smartassist.services.scheduler import PeriodicTask

logger = get_logger(__name__)

ALL = "all"


def build_composite(
    profiles: Iterable[Profile],
    tutorials: Iterable[Tutorial],
    progress: Iterable[Progress],
    latest_code: Mapping[str, CodeSnapshot],
    help_requests: Iterable[HelpRequest],
) -> List[CompositeRecord]:
    """Join the five collections into one record per student profile.

    Students are identified by ``Profile.user_id``. When a student has
    progress in several tutorials, the first row in ``progress`` wins, so
    pass it most recently updated first. Help requests keep their input
    order.
    """
    tutorials_by_id = {tutorial.id: tutorial for tutorial in tutorials}

    progress_by_student: Dict[str, Progress] = {}
    for row in progress:
        progress_by_student.setdefault(row.student_id, row)

    help_by_student: Dict[str, List[HelpRequest]] = {}
    for request in help_requests:
        help_by_student.setdefault(request.student_id, []).append(request)

    records = []
    for profile in profiles:
        if profile.user_type != UserType.STUDENT:
            continue
        student_progress = progress_by_student.get(profile.user_id)
        tutorial = tutorials_by_id.get(student_progress.tutorial_id) if student_progress else None
        records.append(CompositeRecord(
            student=profile,
            progress=student_progress,
            tutorial=tutorial,
            latest_code=latest_code.get(profile.user_id),
            help_requests=help_by_student.get(profile.user_id, []),
        ))
    return records


def summarize(records: Iterable[CompositeRecord]) -> DashboardSummary:
    """Headline numbers for the dashboard.

    Average completion only counts students whose progress resolves to a
    tutorial; everyone else is left out of the denominator rather than
    counted as 0%.
    """
    records = list(records)
    completions = [r.completion for r in records if r.completion is not None]
    return DashboardSummary(
        total_students=len(records),
        active_coders=sum(1 for r in records if r.latest_code is not None),
        pending_help=sum(r.pending_help for r in records),
        average_completion=sum(completions) / len(completions) if completions else None,
    )


def filter_records(
    records: Iterable[CompositeRecord],
    tutorial_id: str = ALL,
    step: Union[str, int] = ALL,
) -> List[CompositeRecord]:
    """Keep records on an exact tutorial and/or current step; ``"all"`` disables a filter."""
    result = []
    for record in records:
        if tutorial_id != ALL and (record.progress is None or record.progress.tutorial_id != tutorial_id):
            continue
        if str(step) != ALL and (record.progress is None or str(record.progress.current_step) != str(step)):
            continue
        result.append(record)
    return result


class TeacherDashboard:
    """Live composite view over every student.

    A failed rebuild is logged and the previous view stays visible.
    """

    def __init__(
        self,
        profiles,
        tutorials,
        progress,
        snapshots,
        help_requests,
        dispatcher: ChangeDispatcher,
        debounce: Optional[float] = None,
        poll_interval: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.profiles = profiles
        self.tutorials = tutorials
        self.progress = progress
        self.snapshots = snapshots
        self.help_requests = help_requests
        self.dispatcher = dispatcher
        self.debounce = settings.dashboard_debounce_seconds if debounce is None else debounce
        self.poll_interval = settings.dashboard_poll_seconds if poll_interval is None else poll_interval
        self.clock = clock

        self.records: List[CompositeRecord] = []
        self.summary = DashboardSummary()
        self.last_updated: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.rebuild_count = 0

        self._lock = asyncio.Lock()
        self._dirty = False
        self._runner: Optional[asyncio.Task] = None
        self._subscription: Optional[Subscription] = None
        self._poller: Optional[PeriodicTask] = None

    async def rebuild(self) -> bool:
        """Re-fetch everything and recompute the view. Returns success."""
        async with self._lock:
            try:
                with LogTimer(logger, "dashboard_rebuild"):
                    profiles, tutorials, progress, latest_code, help_requests = await asyncio.gather(
                        self.profiles.students(),
                        self.tutorials.all(),
                        self.progress.all(),
                        self.snapshots.latest_per_student(),
                        self.help_requests.all(),
                    )
            except Exception as exc:
                self.last_error = str(exc)
                logger.error(f"Dashboard rebuild failed, keeping previous view: {exc}")
                return False

            self.records = build_composite(profiles, tutorials, progress, latest_code, help_requests)
            self.summary = summarize(self.records)
            self.last_updated = self.clock()
            self.last_error = None
            self.rebuild_count += 1
            return True

    def request_refresh(self, reason: str = "manual") -> asyncio.Task:
        """Schedule a rebuild, merging with one already pending."""
        self._dirty = True
        logger.debug(f"Dashboard refresh requested ({reason})")
        if self._runner is None or self._runner.done():
            self._runner = asyncio.get_running_loop().create_task(self._drain(), name="dashboard-refresh")
        return self._runner

    async def refresh(self) -> bool:
        """Manual refresh: request one and wait until the view is current."""
        await self.request_refresh("manual")
        return self.last_error is None

    async def _drain(self) -> None:
        while self._dirty:
            if self.debounce > 0:
                await asyncio.sleep(self.debounce)
            self._dirty = False
            await self.rebuild()

    def _on_change(self, event: ChangeEvent) -> None:
        self.request_refresh(f"change:{event.table}")

    async def start(self) -> None:
        """Subscribe to teacher-scope signals and build the initial view."""
        if self._subscription is None:
            self._subscription = self.dispatcher.subscribe_teacher(self._on_change)
        if self.poll_interval and self._poller is None:
            async def poll() -> None:
                self.request_refresh("poll")

            self._poller = PeriodicTask(self.poll_interval, poll, name="dashboard-poll")
            self._poller.start()
        await self.refresh()
        logger.info(f"Dashboard started with {len(self.records)} students")

    def stop(self) -> None:
        """Release the subscription and timers. Synchronous."""
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        if self._poller is not None:
            self._poller.stop()
            self._poller = None
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
        self._runner = None
        self._dirty = False

    def view(self, tutorial_id: str = ALL, step: Union[str, int] = ALL) -> DashboardView:
        return DashboardView(
            records=filter_records(self.records, tutorial_id, step),
            summary=self.summary,
            last_updated=self.last_updated,
            stale=self.last_error is not None,
        )
