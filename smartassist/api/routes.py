"""Async FastAPI routes for the SmartAssist student & teacher clients.

- Student endpoints: profile, progress navigation, code capture, sessions, help
- Teacher endpoints: live dashboard, help responses, code and error history
- WebSocket change feed scoped to the caller
"""
import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from smartassist.core.auth import (
    get_current_user, require_student, require_teacher, user_from_token
)
from smartassist.core.errors import NotFoundError, SmartAssistError, ValidationError
from smartassist.core.logging import get_logger, LogTimer
from smartassist.domain.user import AuthUser, ProfileCreate
from smartassist.services.dispatcher import SignalBuffer, self_scope, teacher_scope
from smartassist.services.engine import Engine
from smartassist.services.sessions import SessionHandle, SessionState

logger = get_logger(__name__)
router = APIRouter()


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


class CodeRequest(BaseModel):
    """Code capture payload. Submissions are the default."""
    code: str
    is_submission: bool = True
    tutorial_id: Optional[str] = None
    step_number: Optional[int] = None
    session_id: Optional[str] = None


class HelpRequestCreate(BaseModel):
    message: str


class HelpResponseBody(BaseModel):
    response: str
    expected_updated_at: Optional[datetime] = None


class ErrorReport(BaseModel):
    message: str
    stack: Optional[str] = None
    context: Dict[str, Any] = {}


# -----------------
# IDENTITY & PROFILES
# -----------------

@router.get("/auth/me", response_model=AuthUser)
async def get_current_user_info(current_user: AuthUser = Depends(get_current_user)):
    """Identity resolved from the bearer token."""
    return current_user


@router.post("/profiles", status_code=201)
async def create_profile(
    body: ProfileCreate,
    user: AuthUser = Depends(get_current_user),
    engine: Engine = Depends(get_engine),
):
    """Onboard the signed-in user. The user type must match the token."""
    if body.user_type != user.user_type:
        raise ValidationError("Profile type does not match the signed-in account")
    profile = await engine.profiles.create(user.id, body.name, body.user_type, body.student_id)
    return profile.model_dump(mode="json")


@router.get("/profiles/me")
async def get_my_profile(user: AuthUser = Depends(get_current_user), engine: Engine = Depends(get_engine)):
    profile = await engine.profiles.get(user.id)
    if profile is None:
        raise NotFoundError("Profile not created yet")
    return profile.model_dump(mode="json")


# -----------------
# TUTORIALS & PROGRESS
# -----------------

@router.get("/tutorials")
async def list_tutorials(user: AuthUser = Depends(get_current_user), engine: Engine = Depends(get_engine)):
    return [t.model_dump(mode="json") for t in await engine.tutorials.all()]


@router.get("/tutorials/{tutorial_id}")
async def get_tutorial(tutorial_id: str, user: AuthUser = Depends(get_current_user),
                       engine: Engine = Depends(get_engine)):
    return (await engine.tutorials.get(tutorial_id)).model_dump(mode="json")


def _progress_payload(progress, tutorial) -> dict:
    return {
        "progress": progress.model_dump(mode="json") if progress else None,
        "current_step": progress.current_step if progress else None,
        "total_steps": tutorial.total_steps,
    }


@router.get("/progress/{tutorial_id}")
async def get_progress(tutorial_id: str, user: AuthUser = Depends(require_student),
                       engine: Engine = Depends(get_engine)):
    tutorial = await engine.tutorials.get(tutorial_id)
    progress = await engine.progress.get(user.id, tutorial_id)
    return _progress_payload(progress, tutorial)


@router.post("/progress/{tutorial_id}")
async def init_progress(tutorial_id: str, user: AuthUser = Depends(require_student),
                        engine: Engine = Depends(get_engine)):
    """Start the tutorial at step 0 unless already started."""
    tutorial = await engine.tutorials.get(tutorial_id)
    progress = await engine.progress.ensure_initialized(user.id, tutorial_id)
    return _progress_payload(progress, tutorial)


@router.post("/progress/{tutorial_id}/advance")
async def advance_progress(tutorial_id: str, user: AuthUser = Depends(require_student),
                           engine: Engine = Depends(get_engine)):
    tutorial = await engine.tutorials.get(tutorial_id)
    progress = await engine.progress.advance(user.id, tutorial_id)
    return _progress_payload(progress, tutorial)


@router.post("/progress/{tutorial_id}/retreat")
async def retreat_progress(tutorial_id: str, user: AuthUser = Depends(require_student),
                           engine: Engine = Depends(get_engine)):
    tutorial = await engine.tutorials.get(tutorial_id)
    progress = await engine.progress.retreat(user.id, tutorial_id)
    return _progress_payload(progress, tutorial)


# -----------------
# CODE SNAPSHOTS
# -----------------

@router.post("/code", status_code=201)
async def capture_code(body: CodeRequest, user: AuthUser = Depends(require_student),
                       engine: Engine = Depends(get_engine)):
    """Submit code, or store an auto-save snapshot with ``is_submission=false``."""
    if body.is_submission:
        snap = await engine.snapshots.submit(
            user.id, body.code, tutorial_id=body.tutorial_id,
            step_number=body.step_number, session_id=body.session_id,
        )
    elif body.code.strip():
        snap = await engine.snapshots.capture(
            user.id, body.code, is_submission=False, tutorial_id=body.tutorial_id,
            step_number=body.step_number, session_id=body.session_id,
        )
    else:
        return {"saved": False}
    return {"saved": True, "snapshot": snap.model_dump(mode="json")}


@router.get("/code/history")
async def my_code_history(limit: Optional[int] = Query(default=None, ge=1, le=500),
                          user: AuthUser = Depends(require_student),
                          engine: Engine = Depends(get_engine)):
    return [s.model_dump(mode="json") for s in await engine.snapshots.history(user.id, limit)]


# -----------------
# SESSIONS
# -----------------

async def _owned_handle(engine: Engine, user: AuthUser, session_id: str) -> SessionHandle:
    session = await engine.sessions.get(session_id)
    if session is None or session.student_id != user.id:
        raise NotFoundError("Session not found", detail=session_id)
    handle = SessionHandle(user.id, session_id)
    if not session.is_active:
        handle.state = SessionState.CLOSED
    return handle


@router.post("/sessions", status_code=201)
async def open_session(user: AuthUser = Depends(require_student), engine: Engine = Depends(get_engine)):
    handle = await engine.sessions.open(user.id)
    return {"session_id": handle.session_id, "state": handle.state.value}


@router.post("/sessions/{session_id}/heartbeat")
async def heartbeat_session(session_id: str, user: AuthUser = Depends(require_student),
                            engine: Engine = Depends(get_engine)):
    handle = await _owned_handle(engine, user, session_id)
    touched = await engine.sessions.heartbeat(handle)
    return {"session_id": session_id, "state": handle.state.value, "touched": touched}


@router.post("/sessions/{session_id}/close")
async def close_session(session_id: str, user: AuthUser = Depends(require_student),
                        engine: Engine = Depends(get_engine)):
    """Close a session. Always answers 200 so logout never blocks on it."""
    handle = await _owned_handle(engine, user, session_id)
    closed = await engine.sessions.close(handle)
    return {"session_id": session_id, "closed": closed}


# -----------------
# HELP REQUESTS
# -----------------

@router.post("/help-requests", status_code=201)
async def create_help_request(body: HelpRequestCreate, user: AuthUser = Depends(require_student),
                              engine: Engine = Depends(get_engine)):
    request = await engine.help_requests.create(user.id, body.message)
    return request.model_dump(mode="json")


@router.get("/help-requests")
async def my_help_requests(user: AuthUser = Depends(require_student), engine: Engine = Depends(get_engine)):
    return [r.model_dump(mode="json") for r in await engine.help_requests.for_student(user.id)]


@router.post("/help-requests/{request_id}/respond")
async def respond_to_help_request(request_id: str, body: HelpResponseBody,
                                  user: AuthUser = Depends(require_teacher),
                                  engine: Engine = Depends(get_engine)):
    request = await engine.help_requests.respond(
        request_id, user.id, body.response, expected_updated_at=body.expected_updated_at
    )
    return request.model_dump(mode="json")


# -----------------
# ERROR REPORTS
# -----------------

@router.post("/errors", status_code=202)
async def report_error(body: ErrorReport, user: AuthUser = Depends(get_current_user),
                       engine: Engine = Depends(get_engine)):
    entry = await engine.errors.log(user.id, body.message, body.stack, body.context)
    return {"logged": entry is not None}


# -----------------
# TEACHER DASHBOARD
# -----------------

def _dashboard_payload(engine: Engine, tutorial_id: str, step: str) -> dict:
    view = engine.dashboard.view(tutorial_id, step)
    payload = view.model_dump(mode="json")
    for record, row in zip(view.records, payload["records"]):
        row["completion"] = record.completion
        row["pending_help"] = record.pending_help
    return payload


@router.get("/teacher/dashboard")
async def teacher_dashboard(tutorial_id: str = "all", step: str = "all",
                            user: AuthUser = Depends(require_teacher),
                            engine: Engine = Depends(get_engine)):
    """Latest composite view, filtered by tutorial and current step."""
    return _dashboard_payload(engine, tutorial_id, step)


@router.post("/teacher/dashboard/refresh")
async def refresh_dashboard(tutorial_id: str = "all", step: str = "all",
                            user: AuthUser = Depends(require_teacher),
                            engine: Engine = Depends(get_engine)):
    with LogTimer(logger, "manual_dashboard_refresh"):
        await engine.dashboard.refresh()
    return _dashboard_payload(engine, tutorial_id, step)


@router.get("/teacher/code-logs")
async def teacher_code_logs(student_id: Optional[str] = None,
                            limit: Optional[int] = Query(default=None, ge=1, le=500),
                            user: AuthUser = Depends(require_teacher),
                            engine: Engine = Depends(get_engine)):
    return [s.model_dump(mode="json") for s in await engine.snapshots.history(student_id, limit)]


@router.get("/teacher/errors")
async def teacher_errors(student_id: Optional[str] = None, user: AuthUser = Depends(require_teacher),
                         engine: Engine = Depends(get_engine)):
    return [e.model_dump(mode="json") for e in await engine.errors.list(student_id)]


# -----------------
# CHANGE FEED
# -----------------

@router.websocket("/ws/changes")
async def change_feed(websocket: WebSocket, token: str = Query(default="")):
    """Push change signals to the caller: own rows for students, everything for teachers."""
    try:
        user = user_from_token(token)
    except SmartAssistError:
        await websocket.close(code=4401)
        return

    engine: Engine = websocket.app.state.engine
    scope = teacher_scope() if user.is_teacher else self_scope(user.id)
    buffer = SignalBuffer(scope, maxsize=engine.config.change_feed_buffer)

    async def forward() -> None:
        while True:
            event = await buffer.get()
            await websocket.send_json(event.model_dump(mode="json"))

    subscription = engine.dispatcher.subscribe(scope, buffer.offer)
    sender: Optional[asyncio.Task] = None
    try:
        await websocket.accept()
        sender = asyncio.create_task(forward(), name=f"change-feed:{user.id}")
        # Inbound frames are ignored; reading only detects the disconnect
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Change feed disconnected", extra={"user_id": user.id})
    finally:
        subscription.close()
        if sender is not None:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
