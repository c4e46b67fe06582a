"""Google OAuth helpers and access-token management."""

import logging
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from calsync.config import get_settings
from calsync.database import get_database, get_write_lock
from calsync.encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

CALENDAR_SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar.readonly",
]


def build_auth_url(
    client_id: str,
    redirect_uri: str,
    state: str,
    scopes: Optional[list[str]] = None,
) -> str:
    """Build Google OAuth authorization URL."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes or CALENDAR_SCOPES),
        "access_type": "offline",
        "state": state,
        "prompt": "consent",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code_for_tokens(code: str, redirect_uri: str) -> dict:
    """Exchange authorization code for tokens."""
    settings = get_settings()

    async with httpx.AsyncClient(timeout=settings.fetch_timeout_seconds) as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": settings.google_client_id,
                "client_secret": settings.google_client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )

        if response.status_code != 200:
            logger.error(f"Token exchange failed: {response.text}")
            raise ValueError(f"Token exchange failed: {response.text}")

        return response.json()


async def refresh_access_token(refresh_token: str, client_id: str, client_secret: str) -> dict:
    """Exchange a refresh token for a new access token."""
    settings = get_settings()

    async with httpx.AsyncClient(timeout=settings.fetch_timeout_seconds) as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            },
        )

        if response.status_code != 200:
            raise ValueError(f"Token refresh failed ({response.status_code}): {response.text}")

        return response.json()


async def get_user_info(access_token: str) -> dict:
    """Get the account's profile (email) from Google."""
    settings = get_settings()

    async with httpx.AsyncClient(timeout=settings.fetch_timeout_seconds) as client:
        response = await client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )

        if response.status_code != 200:
            logger.warning(f"Failed to get user info: {response.text}")
            raise ValueError(f"Failed to get user info: {response.text}")

        return response.json()


async def store_connection_tokens(
    user_id: int,
    access_token: str,
    refresh_token: Optional[str],
    expires_in: Optional[int],
    email: Optional[str] = None,
) -> int:
    """
    Create or update the user's provider connection.

    Google only returns a refresh token on first consent, so an existing one is
    kept when none is supplied.
    """
    db = await get_database()
    now = datetime.utcnow()
    expiry = (now + timedelta(seconds=expires_in)).isoformat() if expires_in else None
    refresh_encrypted = encrypt_token(refresh_token) if refresh_token else None

    async with get_write_lock():
        async with db.execute(
            """INSERT INTO provider_connections
               (user_id, provider, email, access_token_encrypted, refresh_token_encrypted,
                token_expires_at, updated_at)
               VALUES (?, 'google', ?, ?, ?, ?, ?)
               ON CONFLICT(user_id) DO UPDATE SET
               email = COALESCE(excluded.email, provider_connections.email),
               access_token_encrypted = excluded.access_token_encrypted,
               refresh_token_encrypted = COALESCE(
                   excluded.refresh_token_encrypted, provider_connections.refresh_token_encrypted),
               token_expires_at = excluded.token_expires_at,
               updated_at = excluded.updated_at
               RETURNING id""",
            (user_id, email, encrypt_token(access_token), refresh_encrypted, expiry, now.isoformat())
        ) as cursor:
            row = await cursor.fetchone()
        await db.commit()

    return row["id"]


async def get_connection(user_id: int) -> Optional[dict]:
    """Get the user's provider connection."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM provider_connections WHERE user_id = ?", (user_id,)
    )
    row = await cursor.fetchone()
    return dict(row) if row else None


async def get_connection_by_id(connection_id: int) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM provider_connections WHERE id = ?", (connection_id,)
    )
    row = await cursor.fetchone()
    return dict(row) if row else None


def _token_is_fresh(expiry: Optional[str], margin: timedelta) -> bool:
    if not expiry:
        return False
    expiry_dt = datetime.fromisoformat(expiry)
    if expiry_dt.tzinfo is not None:
        expiry_dt = expiry_dt.replace(tzinfo=None) - expiry_dt.utcoffset()
    return expiry_dt - datetime.utcnow() > margin


async def get_valid_access_token(
    connection: dict,
    margin_minutes: Optional[int] = None,
) -> Optional[str]:
    """
    Return a usable access token for a connection, refreshing it if needed.

    A cached token is reused while it stays valid for more than
    ``margin_minutes`` (default: the configured refresh margin).

    Returns None when the connection cannot be made valid (no client
    credentials, no refresh token, revoked token, network failure). Callers
    treat None as "reconnect required".
    """
    settings = get_settings()
    if margin_minutes is None:
        margin_minutes = settings.token_refresh_margin_minutes
    margin = timedelta(minutes=margin_minutes)

    try:
        if _token_is_fresh(connection.get("token_expires_at"), margin):
            return decrypt_token(connection["access_token_encrypted"])

        client_id = settings.google_client_id
        client_secret = settings.google_client_secret
        refresh_encrypted = connection.get("refresh_token_encrypted")
        if not client_id or not client_secret or not refresh_encrypted:
            logger.warning(
                f"Cannot refresh token for connection {connection.get('id')}: "
                "missing client credentials or refresh token"
            )
            return None

        refresh_token = decrypt_token(refresh_encrypted)
        logger.info(f"Refreshing access token for connection {connection.get('id')}")
        tokens = await refresh_access_token(refresh_token, client_id, client_secret)
        access_token = tokens["access_token"]

        await store_connection_tokens(
            user_id=connection["user_id"],
            access_token=access_token,
            refresh_token=tokens.get("refresh_token"),
            expires_in=int(tokens.get("expires_in", 3600)),
        )
        return access_token

    except Exception as e:
        logger.error(f"Token refresh failed for connection {connection.get('id')}: {e}")
        return None
