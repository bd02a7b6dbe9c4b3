"""Authentication utilities for the AgroTrust escrow backend.

Users authenticate with Supabase Auth; the backend only verifies the access
token and looks up the caller's role in ``profiles``.
"""

from datetime import datetime, timedelta, timezone
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from agrotrust.escrow import Actor, ForbiddenError, UnauthorizedError

from .config import Settings, get_settings
from .logging_config import get_logger

logger = get_logger("agrotrust.auth")

# Supabase access tokens carry this audience
TOKEN_AUDIENCE = "authenticated"

# Bearer token scheme
security = HTTPBearer(auto_error=False)


def create_access_token(
    user_id: str,
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """Create an access token shaped like Supabase's (used by tests and scripts)."""
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(hours=1))
    to_encode = {
        "sub": user_id,
        "aud": TOKEN_AUDIENCE,
        "role": "authenticated",
        "exp": expire,
        "iat": now,
    }
    return jwt.encode(to_encode, settings.supabase_jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate an access token."""
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=TOKEN_AUDIENCE,
        )
    except JWTError:
        raise UnauthorizedError("Invalid or expired session.")


class AuthContext:
    """Authenticated caller: user id and marketplace role."""

    def __init__(self, user_id: str, role: str = "buyer", email: str | None = None):
        self.user_id = user_id
        self.role = role
        self.email = email

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.user_id, role=self.role)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> AuthContext:
    """Resolve the bearer token to (user_id, role)."""
    if not credentials or not credentials.credentials:
        raise UnauthorizedError("Missing Authorization Bearer token.")

    payload = decode_token(credentials.credentials, settings)
    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token payload.")

    # Import here so tests can patch app.database.get_profile
    from . import database

    profile = await database.get_profile(database.get_supabase_client(settings), user_id)
    if not profile:
        logger.warning(f"Authenticated user {user_id} has no profile")
        raise ForbiddenError("Profile not found.")

    return AuthContext(
        user_id=user_id,
        role=profile.get("role") or "buyer",
        email=profile.get("email"),
    )


# Type alias for dependency injection
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
