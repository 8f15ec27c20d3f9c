"""Identity for the SmartAssist engine.

Bearer tokens are JWTs carrying the user id (``sub``) and the user type.
``IdentityProvider`` is the client-side view of the signed-in user, with
change callbacks so a student workspace can tear itself down on sign-out.
The FastAPI dependencies resolve the same identity for HTTP requests.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from smartassist.core.config import settings, DEV_JWT_SECRET
from smartassist.core.errors import AuthRequiredError, PermissionDeniedError
from smartassist.core.logging import get_logger
from smartassist.domain.user import AuthUser, TokenData, UserType

logger = get_logger(__name__)

# JWT Configuration from settings
SECRET_KEY = settings.jwt_secret_key
ALGORITHM = settings.jwt_algorithm
ACCESS_TOKEN_EXPIRE_MINUTES = settings.access_token_expire_minutes

# Production security check
if settings.environment == "production":
    if SECRET_KEY == DEV_JWT_SECRET:
        raise ValueError("JWT_SECRET_KEY must be set to a secure value in production!")
    if len(SECRET_KEY) < 32:
        logger.warning("JWT_SECRET_KEY should be at least 32 characters for security")

security = HTTPBearer(auto_error=False)

AuthListener = Callable[[Optional[AuthUser]], None]


def create_access_token(
    user: AuthUser,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create a JWT access token for ``user``.

    Example:
        >>> token = create_access_token(AuthUser(id="S1", user_type="student"))
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    expire = now + expires_delta

    payload = {
        "sub": user.id,
        "user_type": UserType(user.user_type).value,
        "name": user.name,
        "exp": expire,
        "iat": now,
    }

    token = jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)

    logger.debug(
        f"Access token created for user {user.id}",
        extra={"user_id": user.id, "expires_at": expire.isoformat()}
    )

    return token


def decode_token(token: str) -> TokenData:
    """Decode and validate a JWT.

    Raises:
        AuthRequiredError: If the token is invalid or expired
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])

        return TokenData(
            sub=payload.get("sub"),
            user_type=payload.get("user_type", UserType.STUDENT.value),
            name=payload.get("name"),
            exp=datetime.fromtimestamp(payload.get("exp"), tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc) if payload.get("iat") else None,
        )

    except jwt.ExpiredSignatureError:
        logger.warning("Expired token attempted")
        raise AuthRequiredError("Token has expired")

    except (jwt.InvalidTokenError, ValueError) as e:
        logger.warning(f"Invalid token attempted: {e}")
        raise AuthRequiredError("Invalid authentication token")


def user_from_token(token: str) -> AuthUser:
    data = decode_token(token)
    return AuthUser(id=data.sub, user_type=data.user_type, name=data.name)


class IdentityProvider:
    """Signed-in identity of one client, with auth-change notifications."""

    def __init__(self, user: Optional[AuthUser] = None):
        self._user = user
        self._listeners: List[AuthListener] = []

    def current_user(self) -> Optional[AuthUser]:
        return self._user

    def require_user(self) -> AuthUser:
        if self._user is None:
            raise AuthRequiredError("Sign in required")
        return self._user

    def sign_in(self, token: str) -> AuthUser:
        self._user = user_from_token(token)
        logger.info("User signed in", extra={"user_id": self._user.id})
        self._notify()
        return self._user

    def sign_out(self) -> None:
        if self._user is None:
            return
        logger.info("User signed out", extra={"user_id": self._user.id})
        self._user = None
        self._notify()

    def on_auth_change(self, callback: AuthListener) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self._user)
            except Exception as exc:
                logger.error(f"Auth listener failed: {exc}", exc_info=True)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> AuthUser:
    """FastAPI dependency resolving the bearer token to an identity.

    Raises:
        AuthRequiredError: If no valid token is present
    """
    if credentials is None:
        raise AuthRequiredError("Sign in required")

    user = user_from_token(credentials.credentials)
    logger.debug(f"User authenticated: {user.id}", extra={"user_id": user.id})
    return user


def require_user_type(user_type: UserType):
    """Dependency factory restricting a route to one user type.

    Example:
        >>> @router.get("/teacher/dashboard")
        >>> async def dashboard(user: AuthUser = Depends(require_user_type(UserType.TEACHER))):
        ...     ...
    """
    async def checker(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if user.user_type != user_type:
            logger.warning(
                f"Insufficient permissions for {user.id}",
                extra={"user_id": user.id, "required_type": user_type.value}
            )
            raise PermissionDeniedError(f"Only {user_type.value}s may do this")
        return user

    return checker


require_teacher = require_user_type(UserType.TEACHER)
require_student = require_user_type(UserType.STUDENT)
