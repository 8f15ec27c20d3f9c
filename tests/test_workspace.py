"""Tests for the student workspace lifecycle."""
import asyncio

import pytest

from smartassist.core.auth import IdentityProvider
from smartassist.core.errors import AuthRequiredError
from smartassist.domain.dashboard import ChangeEvent
from smartassist.services.workspace import StudentWorkspace


pytestmark = pytest.mark.anyio


@pytest.fixture
def identity(student_user):
    return IdentityProvider(student_user)


@pytest.fixture
def workspace(identity, catalog, tracker, recorder, sessions, help_channel, dispatcher):
    return StudentWorkspace(
        identity, catalog, tracker, recorder, sessions, help_channel, dispatcher,
        autosave_interval=60, heartbeat_interval=60,
    )


async def test_requires_signed_in_user(catalog, tracker, recorder, sessions, help_channel):
    with pytest.raises(AuthRequiredError):
        StudentWorkspace(IdentityProvider(), catalog, tracker, recorder, sessions, help_channel)


async def test_start_opens_session_on_first_tutorial(workspace, sessions, js_variables):
    await workspace.start()

    assert workspace.tutorial.id == js_variables.id
    assert workspace.current_step == 0
    assert workspace.total_steps == 4
    assert workspace.autosaving is False
    assert [s.id for s in await sessions.active_sessions("S1")] == [workspace.session.session_id]

    await workspace.aclose()
    assert await sessions.active_sessions("S1") == []


async def test_navigation_retags_buffer(workspace, js_variables):
    await workspace.start(js_variables.id)

    await workspace.next_step()
    await workspace.next_step()
    await workspace.previous_step()

    assert workspace.current_step == 1
    assert workspace.buffer.step_number == 1
    assert workspace.buffer.tutorial_id == js_variables.id
    await workspace.aclose()


async def test_submit_threads_session_id(workspace, js_variables):
    async with workspace:
        workspace.buffer.set("console.log('hi');")
        snap = await workspace.submit()

        assert snap.session_id == workspace.session.session_id
        assert snap.tutorial_id == js_variables.id
        assert snap.step_number == 0


async def test_ask_for_help_refreshes_history(workspace):
    async with workspace:
        await workspace.ask_for_help("What is a const?")

        assert [r.message for r in workspace.help_history] == ["What is a const?"]


async def test_teacher_response_is_picked_up(workspace, help_channel):
    async with workspace:
        request = await workspace.ask_for_help("stuck")

        await help_channel.respond(request.id, "T1", "Look at line 3")
        await asyncio.sleep(0.01)

        assert workspace.help_history[0].response == "Look at line 3"


async def test_sign_out_closes_workspace(workspace, identity, sessions, channel):
    await workspace.start()

    identity.sign_out()
    await workspace._closing

    assert await sessions.active_sessions("S1") == []
    assert channel.listener_count == 0
    assert workspace._autosaver.running is False


async def test_exit_on_error_still_closes_session(workspace, sessions):
    with pytest.raises(RuntimeError):
        async with workspace:
            raise RuntimeError("editor crashed")

    assert await sessions.active_sessions("S1") == []


async def test_close_cancels_pending_catch_up(workspace, tracker, channel, js_variables, monkeypatch):
    await workspace.start(js_variables.id)
    step_before = workspace.current_step
    reading = asyncio.Event()

    async def stalled_get(*args, **kwargs):
        reading.set()
        await asyncio.Event().wait()

    monkeypatch.setattr(tracker, "get", stalled_get)
    await channel.publish(ChangeEvent(table="student_progress", student_id="S1", row_id=workspace.progress.id))
    await reading.wait()
    pending = set(workspace._tasks)

    await workspace.aclose()

    assert len(pending) == 1
    assert all(task.cancelled() for task in pending)
    assert workspace.current_step == step_before


async def test_changes_after_close_are_ignored(workspace, channel, js_variables):
    await workspace.start(js_variables.id)
    await workspace.aclose()

    workspace._on_change(ChangeEvent(table="help_requests", student_id="S1", row_id="h1"))

    assert workspace._tasks == set()


async def test_cancelled_block_still_closes_session(workspace, sessions):
    entered = asyncio.Event()

    async def work():
        async with workspace:
            entered.set()
            await asyncio.Event().wait()

    task = asyncio.create_task(work())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert await sessions.active_sessions("S1") == []
    session = await sessions.get(workspace.session.session_id)
    assert session.session_end is not None
