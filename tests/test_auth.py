"""Unit tests for authentication and authorization."""
import asyncio
from datetime import timedelta

import jwt
import pytest
from fastapi.security import HTTPAuthorizationCredentials

from smartassist.core.auth import (
    ALGORITHM,
    SECRET_KEY,
    IdentityProvider,
    create_access_token,
    decode_token,
    get_current_user,
    require_teacher,
    user_from_token,
)
from smartassist.core.errors import AuthRequiredError, PermissionDeniedError
from smartassist.domain.user import UserType


class TestJWTTokens:
    """Test JWT token creation and validation."""

    def test_create_access_token(self, student_user):
        token = create_access_token(student_user)

        assert isinstance(token, str)
        assert len(token) > 50  # JWT tokens are long

    def test_decode_valid_token(self, teacher_user):
        token_data = decode_token(create_access_token(teacher_user))

        assert token_data.sub == teacher_user.id
        assert token_data.user_type == UserType.TEACHER
        assert token_data.name == teacher_user.name

    def test_decode_expired_token(self, student_user):
        expired_token = create_access_token(student_user, expires_delta=timedelta(hours=-1))

        with pytest.raises(AuthRequiredError) as exc_info:
            decode_token(expired_token)

        assert exc_info.value.status_code == 401

    def test_decode_invalid_token(self):
        with pytest.raises(AuthRequiredError) as exc_info:
            decode_token("not.a.valid.jwt.token")

        assert exc_info.value.status_code == 401

    def test_token_contains_required_claims(self, student_user):
        payload = jwt.decode(create_access_token(student_user), SECRET_KEY, algorithms=[ALGORITHM])

        assert payload["sub"] == "S1"
        assert payload["user_type"] == "student"
        assert "exp" in payload
        assert "iat" in payload

    def test_user_from_token(self, teacher_token):
        user = user_from_token(teacher_token)

        assert user.id == "T1"
        assert user.is_teacher


class TestIdentityProvider:
    """Test the client-side identity."""

    def test_require_user_without_sign_in(self):
        with pytest.raises(AuthRequiredError):
            IdentityProvider().require_user()

    def test_sign_in_and_out_notify_listeners(self, student_token):
        identity = IdentityProvider()
        seen = []
        identity.on_auth_change(seen.append)

        identity.sign_in(student_token)
        identity.sign_out()

        assert [u.id if u else None for u in seen] == ["S1", None]
        assert identity.current_user() is None

    def test_unsubscribe_stops_notifications(self, student_user):
        identity = IdentityProvider(student_user)
        seen = []
        unsubscribe = identity.on_auth_change(seen.append)

        unsubscribe()
        identity.sign_out()

        assert seen == []

    def test_sign_out_twice_notifies_once(self, student_user):
        identity = IdentityProvider(student_user)
        seen = []
        identity.on_auth_change(seen.append)

        identity.sign_out()
        identity.sign_out()

        assert seen == [None]


class TestDependencies:
    """Test the FastAPI auth dependencies."""

    def test_missing_credentials(self):
        with pytest.raises(AuthRequiredError):
            asyncio.run(get_current_user(None))

    def test_bearer_resolves_user(self, student_token):
        credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=student_token)

        user = asyncio.run(get_current_user(credentials))

        assert user.id == "S1"

    def test_require_teacher_rejects_student(self, student_user):
        with pytest.raises(PermissionDeniedError) as exc_info:
            asyncio.run(require_teacher(student_user))

        assert exc_info.value.status_code == 403

    def test_require_teacher_accepts_teacher(self, teacher_user):
        assert asyncio.run(require_teacher(teacher_user)) is teacher_user
