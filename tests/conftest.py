"""Pytest configuration and fixtures."""

import os
import tempfile

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/test_encryption.key"
os.environ["PUBLIC_URL"] = "http://localhost:3000"
os.environ["GOOGLE_CLIENT_ID"] = "client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "client-secret"


@pytest.fixture(scope="function")
def test_encryption_key():
    """Create a temporary encryption key and install it as the token cipher."""
    import calsync.encryption as encryption_module
    from calsync.encryption import generate_encryption_key, init_token_cipher

    key = generate_encryption_key()

    with tempfile.NamedTemporaryFile(mode="wb", delete=False, suffix=".key") as f:
        f.write(key)
        key_path = f.name

    init_token_cipher(key)

    yield key

    encryption_module._token_cipher = None
    if os.path.exists(key_path):
        os.remove(key_path)


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from calsync.database import close_database, get_database
    import calsync.database as db_module

    # Reset the global connection
    db_module._db_connection = None
    db_module._write_lock = None

    db = await get_database()

    yield db

    await close_database()
    db_module._db_connection = None
    db_module._write_lock = None


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    from fastapi.testclient import TestClient

    import calsync.database as db_module
    from calsync.main import app

    db_module._db_connection = None
    db_module._write_lock = None
    with TestClient(app) as c:
        yield c
    db_module._db_connection = None
    db_module._write_lock = None


@pytest.fixture
def mock_google_api(mocker):
    """Replace the Calendar API service built by GoogleCalendarClient."""
    mock_service = mocker.MagicMock()

    mock_service.calendarList().list().execute.return_value = {
        "items": [
            {
                "id": "primary@example.com",
                "summary": "Me",
                "primary": True,
                "backgroundColor": "#fff",
            },
            {"id": "holidays@example.com"},
        ]
    }
    mock_service.events().list().execute.return_value = {"items": []}

    mocker.patch("calsync.sync.google_calendar.build", return_value=mock_service)
    return mock_service
