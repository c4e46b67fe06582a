"""Cookie sessions carrying a signed user id."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from calsync.config import get_session_secret, get_settings
from calsync.database import get_database

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"


class SessionData(BaseModel):
    """Claims of a session token."""
    user_id: int
    email: str
    exp: datetime


class User(BaseModel):
    """The signed-in user; timezone drives event normalization."""
    id: int
    email: str
    display_name: Optional[str] = None
    timezone: str = "UTC"


def create_session_token(user_id: int, email: str) -> str:
    """Sign a token valid for SESSION_EXPIRE_DAYS."""
    settings = get_settings()
    expire = datetime.utcnow() + timedelta(days=settings.session_expire_days)
    data = {"user_id": user_id, "email": email, "exp": expire}
    return jwt.encode(data, get_session_secret(), algorithm=ALGORITHM)


def verify_session_token(token: str) -> Optional[SessionData]:
    """Decoded claims, or None for a bad or expired token."""
    try:
        payload = jwt.decode(token, get_session_secret(), algorithms=[ALGORITHM])
        return SessionData(**payload)
    except JWTError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


async def get_user_by_id(user_id: int) -> Optional[User]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
    row = await cursor.fetchone()
    if not row:
        return None
    return User(
        id=row["id"],
        email=row["email"],
        display_name=row["display_name"],
        timezone=row["timezone"] or "UTC",
    )


async def get_current_user_optional(request: Request) -> Optional[User]:
    """Current user from the session cookie, or None."""
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        return None

    session = verify_session_token(token)
    if not session:
        return None

    return await get_user_by_id(session.user_id)


async def get_current_user(request: Request) -> User:
    """Dependency for authenticated routes; 401 without a valid session."""
    user = await get_current_user_optional(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
