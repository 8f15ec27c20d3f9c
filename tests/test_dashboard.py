"""Unit tests for the teacher dashboard."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from smartassist.core.errors import PersistenceError
from smartassist.domain.dashboard import Table
from smartassist.domain.student import CodeSnapshot, HelpRequest, Progress
from smartassist.services.dashboard import (
    TeacherDashboard, build_composite, filter_records, summarize
)

T0 = datetime(2024, 9, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def composite(student_profiles, js_variables, js_functions):
    """S1 on step 2 of TUT001 with code and a pending question; S2 with nothing."""
    progress = [Progress(student_id="S1", tutorial_id=js_variables.id, current_step=2)]
    latest_code = {"S1": CodeSnapshot(student_id="S1", code="let x = 1;", timestamp=T0)}
    help_requests = [
        HelpRequest(student_id="S1", message="stuck on step 3"),
        HelpRequest(student_id="S1", message="old one", response="answered", teacher_id="T1"),
    ]
    return build_composite(student_profiles, [js_variables, js_functions], progress, latest_code, help_requests)


@pytest.fixture
def dashboard(store, student_profiles, profiles, catalog, tracker, recorder, help_channel, dispatcher):
    store.load(Table.PROFILES, [p.model_dump() for p in student_profiles])
    return TeacherDashboard(
        profiles, catalog, tracker, recorder, help_channel, dispatcher,
        debounce=0, poll_interval=0,
    )


class TestBuildComposite:
    """Test the pure join."""

    def test_one_record_per_student(self, composite):
        assert [r.student.user_id for r in composite] == ["S1", "S2"]

    def test_joins_progress_and_tutorial(self, composite, js_variables):
        s1, s2 = composite

        assert s1.tutorial.id == js_variables.id
        assert s1.completion == 0.75
        assert s1.latest_code.code == "let x = 1;"
        assert s1.pending_help == 1
        assert s2.progress is None
        assert s2.completion is None
        assert s2.help_requests == []

    def test_first_progress_row_wins(self, student_profiles, js_variables, js_functions):
        progress = [
            Progress(student_id="S1", tutorial_id=js_functions.id, current_step=4),
            Progress(student_id="S1", tutorial_id=js_variables.id, current_step=0),
        ]

        records = build_composite(student_profiles, [js_variables, js_functions], progress, {}, [])

        assert records[0].tutorial.id == js_functions.id
        assert records[0].completion == 1.0

    def test_unknown_tutorial_has_no_completion(self, student_profiles):
        progress = [Progress(student_id="S1", tutorial_id="deleted", current_step=1)]

        records = build_composite(student_profiles, [], progress, {}, [])

        assert records[0].tutorial is None
        assert records[0].completion is None


class TestSummarize:

    def test_summary_numbers(self, composite):
        summary = summarize(composite)

        assert summary.total_students == 2
        assert summary.active_coders == 1
        assert summary.pending_help == 1
        assert summary.average_completion == 0.75

    def test_empty(self):
        summary = summarize([])

        assert summary.total_students == 0
        assert summary.average_completion is None


class TestFilterRecords:

    def test_all_keeps_everything(self, composite):
        assert len(filter_records(composite)) == 2

    def test_filter_by_tutorial(self, composite, js_variables, js_functions):
        assert [r.student.user_id for r in filter_records(composite, tutorial_id=js_variables.id)] == ["S1"]
        assert filter_records(composite, tutorial_id=js_functions.id) == []

    def test_filter_by_step(self, composite):
        assert len(filter_records(composite, step=2)) == 1
        assert len(filter_records(composite, step="2")) == 1
        assert filter_records(composite, step="1") == []


@pytest.mark.anyio
class TestTeacherDashboard:
    """Test the live view."""

    async def test_rebuild_builds_view(self, dashboard, tracker, recorder, js_variables):
        await tracker.advance("S1", js_variables.id)
        await tracker.advance("S1", js_variables.id)
        await recorder.capture("S1", "let x;")

        assert await dashboard.rebuild() is True

        view = dashboard.view()
        assert view.summary.total_students == 2
        assert view.summary.active_coders == 1
        assert view.summary.average_completion == 0.75
        assert view.stale is False
        assert view.last_updated is not None

    async def test_view_filters_but_summary_does_not(self, dashboard, tracker, js_variables, js_functions):
        await tracker.ensure_initialized("S1", js_variables.id)
        await tracker.ensure_initialized("S2", js_functions.id)
        await dashboard.rebuild()

        view = dashboard.view(tutorial_id=js_functions.id)

        assert [r.student.user_id for r in view.records] == ["S2"]
        assert view.summary.total_students == 2

    async def test_failed_rebuild_keeps_previous_view(self, dashboard, profiles, monkeypatch):
        await dashboard.rebuild()
        before = dashboard.records

        async def broken():
            raise PersistenceError("store unavailable")

        monkeypatch.setattr(profiles, "students", broken)

        assert await dashboard.rebuild() is False
        assert dashboard.records is before
        assert dashboard.view().stale is True
        assert dashboard.last_error == "store unavailable"

    async def test_burst_of_requests_coalesces(self, dashboard):
        dashboard.debounce = 0.05

        tasks = [dashboard.request_refresh(f"burst-{i}") for i in range(5)]
        await tasks[0]

        assert all(task is tasks[0] for task in tasks)
        assert dashboard.rebuild_count == 1

    async def test_change_signal_triggers_rebuild(self, dashboard, help_channel, channel):
        await dashboard.start()
        assert dashboard.rebuild_count == 1

        await help_channel.create("S1", "help please")
        await dashboard.request_refresh("test")

        assert dashboard.summary.pending_help == 1
        assert dashboard.rebuild_count == 2

        dashboard.stop()
        assert channel.listener_count == 0

    async def test_polling_refreshes(self, dashboard):
        dashboard.poll_interval = 0.02

        await dashboard.start()
        await asyncio.sleep(0.15)
        dashboard.stop()

        assert dashboard.rebuild_count > 1

    async def test_refresh_reports_failure(self, dashboard, help_channel, monkeypatch):
        async def broken():
            raise PersistenceError("store unavailable")

        monkeypatch.setattr(help_channel, "all", broken)

        assert await dashboard.refresh() is False
        assert dashboard.records == []
