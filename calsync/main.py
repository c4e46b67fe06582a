"""calsync FastAPI application."""

import logging
import os
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from calsync.config import get_settings
from calsync.database import close_database, get_database

settings = get_settings()

# Logging goes to stdout; level from LOG_LEVEL
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


# Per-client request limit, shared by every route except /health
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"],
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database, load the token key and run the background jobs."""
    settings = get_settings()
    logger.info("Starting calendar import service...")
    logger.info(f"Public URL: {settings.public_url}, database: {settings.database_path}")

    await get_database()
    logger.info("Database ready")

    if os.path.exists(settings.encryption_key_file):
        try:
            from calsync.config import get_encryption_key
            from calsync.encryption import init_token_cipher
            init_token_cipher(get_encryption_key())
            logger.info("Token cipher initialized")
        except Exception as e:
            logger.warning(f"Token key unusable, Google Calendar connections disabled: {e}")
    else:
        logger.warning("No encryption key found; Google Calendar connections are unavailable")

    try:
        from calsync.jobs.scheduler import setup_scheduler
        setup_scheduler()
    except Exception as e:
        logger.error(f"Background jobs not started: {e}")

    yield

    logger.info("Stopping calendar import service...")

    try:
        from calsync.jobs.scheduler import shutdown_scheduler
        shutdown_scheduler()
    except Exception as e:
        logger.error(f"Background jobs did not stop cleanly: {e}")

    await close_database()
    logger.info("Calendar import service stopped")


app = FastAPI(
    title="Calendar Import Sync",
    description="Keeps tasks and schedule blocks in step with linked external calendars",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

allowed_origins = [settings.public_url]
if settings.public_url.startswith(("http://localhost", "https://localhost")):
    allowed_origins.extend([
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ])

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["*"],
)


@app.get("/health")
@limiter.exempt
async def health_check():
    """Liveness probe; reports whether the database answers."""
    try:
        db = await get_database()
        await db.execute("SELECT 1")
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "error": str(e)},
        )


from calsync.api import api_router
from calsync.auth.routes import router as auth_router

app.include_router(auth_router)
app.include_router(api_router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Log unexpected errors and hide their details from clients."""
    logger.exception(f"Unhandled exception on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "calsync.main:app",
        host="0.0.0.0",
        port=3000,
        log_level=settings.log_level.lower(),
        reload=False,
    )
