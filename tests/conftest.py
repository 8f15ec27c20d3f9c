"""Pytest configuration and shared fixtures."""
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("NOTIFY_BACKEND", "local")
os.environ.setdefault("DASHBOARD_DEBOUNCE_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

from smartassist.core.auth import create_access_token
from smartassist.domain.dashboard import Table
from smartassist.domain.student import Tutorial
from smartassist.domain.user import AuthUser, Profile, UserType
from smartassist.infrastructure.notifications import LocalNotificationChannel
from smartassist.infrastructure.store import MemoryTableStore
from smartassist.services.dispatcher import ChangeDispatcher
from smartassist.services.help_requests import HelpRequestChannel
from smartassist.services.profiles import ProfileService
from smartassist.services.progress import ProgressTracker
from smartassist.services.sessions import SessionManager
from smartassist.services.snapshots import CodeSnapshotRecorder
from smartassist.services.tutorials import TutorialCatalog

T0 = datetime(2024, 9, 2, 9, 0, tzinfo=timezone.utc)


class Clock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def js_variables():
    """TUT001: four steps."""
    return Tutorial(
        id="tut-js-variables",
        tutorial_id="TUT001",
        title="Introduction to JavaScript Variables",
        steps=["Variables", "Types", "Arithmetic", "Challenge"],
        created_at=T0,
        updated_at=T0,
    )


@pytest.fixture
def js_functions():
    """TUT002: five steps."""
    return Tutorial(
        id="tut-js-functions",
        tutorial_id="TUT002",
        title="JavaScript Functions and Loops",
        steps=["Functions", "Arrow functions", "For loops", "Arrays", "Challenge"],
        created_at=T0 + timedelta(minutes=1),
        updated_at=T0 + timedelta(minutes=1),
    )


@pytest.fixture
def channel():
    return LocalNotificationChannel()


@pytest.fixture
def store(channel, js_variables, js_functions):
    """Memory store with both tutorials loaded and the channel attached."""
    store = MemoryTableStore(channel)
    store.load(Table.TUTORIALS, [js_variables.model_dump(), js_functions.model_dump()])
    return store


@pytest.fixture
def catalog(store):
    return TutorialCatalog(store)


@pytest.fixture
def tracker(store, catalog, clock):
    return ProgressTracker(store, catalog, clock=clock)


@pytest.fixture
def recorder(store, clock):
    return CodeSnapshotRecorder(store, clock=clock)


@pytest.fixture
def sessions(store, clock):
    return SessionManager(store, clock=clock, exclusive=True)


@pytest.fixture
def help_channel(store, clock):
    return HelpRequestChannel(store, clock=clock)


@pytest.fixture
def profiles(store):
    return ProfileService(store)


@pytest.fixture
def dispatcher(channel):
    return ChangeDispatcher(channel)


@pytest.fixture
def student_profiles():
    return [
        Profile(user_id="S1", name="Alice Johnson", user_type=UserType.STUDENT, created_at=T0),
        Profile(user_id="S2", name="Bob Smith", user_type=UserType.STUDENT, created_at=T0),
        Profile(user_id="T1", name="Ms. Rivera", user_type=UserType.TEACHER, created_at=T0),
    ]


@pytest.fixture
def student_user():
    return AuthUser(id="S1", user_type=UserType.STUDENT, name="Alice Johnson")


@pytest.fixture
def teacher_user():
    return AuthUser(id="T1", user_type=UserType.TEACHER, name="Ms. Rivera")


@pytest.fixture
def student_token(student_user):
    return create_access_token(student_user)


@pytest.fixture
def teacher_token(teacher_user):
    return create_access_token(teacher_user)


@pytest.fixture
def test_client():
    """FastAPI test client with the lifespan running (fresh engine per test)."""
    from main import app
    with TestClient(app) as client:
        yield client


@pytest.fixture
def student_headers(student_token):
    return {"Authorization": f"Bearer {student_token}"}


@pytest.fixture
def teacher_headers(teacher_token):
    return {"Authorization": f"Bearer {teacher_token}"}
