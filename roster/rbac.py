"""
roster/rbac.py
Actor resolution and access guards for the rank service.

Tokens are issued by the surrounding platform; this module only verifies them.
Admin guards run as FastAPI dependencies so a non-admin caller is rejected
before the route handler performs any read.
"""
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from roster.config import feature_flags
from roster.database import get_db
from roster.errors import ErrorCode, ForbiddenError, UnauthorizedError
from roster.orm.user import User

logger = logging.getLogger(__name__)

# ================= CONFIG =================

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30

bearer_scheme = HTTPBearer(auto_error=False)

# ================= TOKEN UTILS =================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token; `sub` must carry the user id."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "type": "access"
    })
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    """Decode and validate JWT token"""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None


# ================= AUTH DEPENDENCIES =================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Resolve the acting user from the bearer access token.
    Raises 401 if the token is missing, invalid, expired or names an unknown user.
    """
    if credentials is None:
        raise UnauthorizedError()

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access":
        raise UnauthorizedError("Invalid or expired token", code=ErrorCode.AUTH_INVALID)

    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        raise UnauthorizedError("Invalid or expired token", code=ErrorCode.AUTH_INVALID)

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise UnauthorizedError("Invalid or expired token", code=ErrorCode.AUTH_INVALID)

    return user


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Dependency: only admins may continue."""
    if not current_user.is_admin:
        logger.warning(f"Access denied: user {current_user.id} attempted an admin-only operation")
        raise ForbiddenError("This action requires an administrator", code=ErrorCode.ADMIN_REQUIRED)
    return current_user


async def require_self_or_admin(
    user_id: int,
    current_user: User = Depends(get_current_user),
) -> User:
    """Dependency for /users/{user_id}/... routes: admins, or the user themselves."""
    if not current_user.is_admin and current_user.id != user_id:
        logger.warning(f"Access denied: user {current_user.id} requested data of user {user_id}")
        raise ForbiddenError(
            "You may only access your own rank data",
            code=ErrorCode.OWNERSHIP_VIOLATION,
        )
    return current_user


def ensure_self_or_admin(current_user: User, user_id: int) -> None:
    """Inline variant used when the target user id comes from a request body."""
    if not current_user.is_admin and current_user.id != user_id:
        logger.warning(f"Access denied: user {current_user.id} acted on user {user_id}")
        raise ForbiddenError(
            "You may only act on your own rank",
            code=ErrorCode.OWNERSHIP_VIOLATION,
        )


# ================= BOT TOKEN =================

async def verify_bot_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """
    Dependency for the bot promotion endpoints.
    The bot authenticates with the static BOT_API_TOKEN instead of a user JWT.
    """
    if not feature_flags.FEATURE_BOT_PROMOTIONS:
        raise ForbiddenError("Bot promotion endpoints are disabled", code=ErrorCode.FEATURE_DISABLED)

    expected = os.getenv("BOT_API_TOKEN")
    if not expected:
        raise ForbiddenError("Bot API token is not configured", code=ErrorCode.FEATURE_DISABLED)

    if credentials is None or not hmac.compare_digest(credentials.credentials, expected):
        logger.warning("Rejected bot request with missing or invalid token")
        raise UnauthorizedError("Invalid bot token", code=ErrorCode.AUTH_INVALID)

    return "bot"
