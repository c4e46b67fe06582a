"""Tests for API endpoints through the application."""


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected"}


def test_api_sources_unauthorized(client):
    response = client.get("/api/sources")
    assert response.status_code == 401


def test_api_sync_unauthorized(client):
    assert client.post("/api/sync").status_code == 401
    assert client.get("/api/sync/log").status_code == 401


def test_api_google_unauthorized(client):
    assert client.get("/api/google").status_code == 401
    assert client.get("/api/google/calendars").status_code == 401


def test_google_connect_requires_session(client):
    response = client.get("/auth/google/connect", follow_redirects=False)
    assert response.status_code == 401


def test_google_callback_error_redirects(client):
    response = client.get("/auth/google/callback?error=access_denied", follow_redirects=False)
    assert response.status_code == 302
    assert response.headers["location"] == "/settings?error=access_denied"


def test_authenticated_request_lists_sources(client):
    """A session cookie for an existing user reaches the handlers."""
    from calsync.auth.session import SESSION_COOKIE_NAME, create_session_token
    from calsync.database import get_database

    async def insert_user():
        db = await get_database()
        cursor = await db.execute(
            "INSERT INTO users (email) VALUES ('client@example.com') RETURNING id"
        )
        row = await cursor.fetchone()
        await db.commit()
        return row["id"]

    user_id = client.portal.call(insert_user)
    client.cookies.set(SESSION_COOKIE_NAME, create_session_token(user_id, "client@example.com"))

    response = client.get("/api/sources")
    assert response.status_code == 200
    assert response.json() == []
