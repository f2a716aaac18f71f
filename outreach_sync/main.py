"""
Outreach Sync Engine
Main FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from outreach_sync import __version__
from outreach_sync.api import health, sync
from outreach_sync.config import get_settings
from outreach_sync.middleware.auth_middleware import AuthMiddleware
from outreach_sync.utils.logger import log

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from outreach_sync.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler for continuations, recovery and reconciliation
    from outreach_sync.scheduler import start_scheduler, stop_scheduler
    try:
        start_scheduler()
    except Exception as e:
        log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    try:
        stop_scheduler()
    except Exception as e:
        log.error(f"Scheduler shutdown error: {str(e)}")

    from outreach_sync.services.sync_orchestrator import get_orchestrator
    await get_orchestrator().continuations.wait_for_dispatches()
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Resumable sync engine for sales outreach platforms (Reply.io, SmartLead, PhoneBurner)

    - Pulls accounts, campaigns, variants, contacts and activities
      through a rate-limited client
    - Runs in time-boxed batches that checkpoint and continue themselves
    - Recomputes campaign, variant and daily metrics from raw activities
    - Reconciles rollups against activities on a schedule
    """,
    lifespan=lifespan
)

# Bearer-token authentication middleware
app.add_middleware(AuthMiddleware)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(sync.router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "outreach_sync.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
