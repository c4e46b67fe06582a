"""Google Calendar connection (OAuth2 authorization-code flow)."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urljoin

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse

from calsync.auth.google import (
    build_auth_url,
    exchange_code_for_tokens,
    get_user_info,
    store_connection_tokens,
)
from calsync.auth.session import User, get_current_user
from calsync.config import get_settings, google_oauth_configured
from calsync.database import get_database, log_sync_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

CALLBACK_PATH = "/auth/google/callback"
DEFAULT_NEXT_URL = "/settings"


async def store_oauth_state(state: str, user_id: int, next_url: Optional[str] = None) -> None:
    """Store OAuth state in database with TTL."""
    settings = get_settings()
    db = await get_database()
    expires_at = datetime.utcnow() + timedelta(minutes=settings.oauth_state_ttl_minutes)
    await db.execute(
        """INSERT INTO oauth_states (state, user_id, next_url, expires_at)
           VALUES (?, ?, ?, ?)""",
        (state, user_id, next_url, expires_at.isoformat())
    )
    await db.commit()


async def consume_oauth_state(state: Optional[str]) -> Optional[dict]:
    """Retrieve and delete an unexpired OAuth state (one-time use)."""
    if not state:
        return None

    db = await get_database()
    cursor = await db.execute(
        """SELECT user_id, next_url FROM oauth_states
           WHERE state = ? AND expires_at > ?""",
        (state, datetime.utcnow().isoformat())
    )
    row = await cursor.fetchone()
    await db.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
    await db.commit()

    if not row:
        return None
    return {"user_id": row["user_id"], "next": row["next_url"] or DEFAULT_NEXT_URL}


async def cleanup_expired_oauth_states() -> None:
    db = await get_database()
    await db.execute(
        "DELETE FROM oauth_states WHERE expires_at < ?",
        (datetime.utcnow().isoformat(),)
    )
    await db.commit()


def get_redirect_uri(path: str) -> str:
    """Build absolute redirect URI."""
    return urljoin(get_settings().public_url, path)


@router.get("/google/connect")
async def connect_google(next: Optional[str] = None, user: User = Depends(get_current_user)):
    """Start the OAuth flow for the current user's Google Calendar."""
    if not google_oauth_configured():
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Google OAuth is not configured"
        )

    state = secrets.token_urlsafe(32)
    await store_oauth_state(state, user.id, next_url=next or DEFAULT_NEXT_URL)
    await cleanup_expired_oauth_states()

    auth_url = build_auth_url(
        client_id=get_settings().google_client_id,
        redirect_uri=get_redirect_uri(CALLBACK_PATH),
        state=state,
    )
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/google/callback")
async def google_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    """Exchange the code, store the tokens and create the remote source."""
    if error:
        logger.error(f"OAuth error: {error} - {error_description}")
        return RedirectResponse(
            url=f"{DEFAULT_NEXT_URL}?error={error}",
            status_code=status.HTTP_302_FOUND
        )

    state_data = await consume_oauth_state(state)
    if not state_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired state parameter"
        )
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code"
        )

    user_id = state_data["user_id"]
    next_url = state_data["next"]

    try:
        tokens = await exchange_code_for_tokens(code, get_redirect_uri(CALLBACK_PATH))
        access_token = tokens["access_token"]

        email = None
        try:
            email = (await get_user_info(access_token)).get("email")
        except ValueError as e:
            logger.warning(f"Could not read account email for user {user_id}: {e}")

        connection_id = await store_connection_tokens(
            user_id=user_id,
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_in=tokens.get("expires_in"),
            email=email,
        )

        from calsync.sync.engine import get_or_create_remote_source
        source = await get_or_create_remote_source(user_id, connection_id)
        await log_sync_event(user_id, source["id"], "connect", "success", email)

    except Exception as e:
        logger.exception(f"OAuth callback error for user {user_id}: {e}")
        return RedirectResponse(
            url=f"{next_url}?error=callback_failed",
            status_code=status.HTTP_302_FOUND
        )

    logger.info(f"Connected Google Calendar for user {user_id}")
    return RedirectResponse(url=f"{next_url}?google=connected", status_code=status.HTTP_302_FOUND)
