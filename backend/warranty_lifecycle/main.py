"""
Warranty Lifecycle Engine - FastAPI Application

Main entry point for the warranty and annual inspection backend.

Architecture:
- Registration -> Submission -> Installer verification -> Customer activation
- ACTIVE warranties run on a yearly inspection cycle with reminders
- A verified inspection extends the cycle; a missed grace period lapses the warranty
- Administrators can override status and reinstate lapsed warranties
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .database import SessionLocal, init_db
from .routers import auth_router, lifecycle_router, reinstatement_router, scheduler_router
from .services.config import SystemConfigService
from .services.lifecycle import LifecycleError
from .services.scheduling.job_runner import JobRunner, set_job_runner

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def scheduler_enabled() -> bool:
    return os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and configuration, then start the periodic jobs."""
    init_db()

    db = SessionLocal()
    try:
        SystemConfigService(db).initialize_defaults()
    finally:
        db.close()

    runner = None
    if scheduler_enabled():
        runner = JobRunner(SessionLocal)
        set_job_runner(runner)
        if runner.auto_start_enabled():
            await runner.start_all()
        else:
            logger.info("AUTO_START_CRON_JOBS is off; jobs run only when triggered")

    yield

    if runner is not None:
        await runner.stop_all()
        set_job_runner(None)


# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Warranty Lifecycle Engine",
    description="""
    Warranty Lifecycle Engine - Registration, Inspection and Reminder System

    ## Workflow
    1. **Registration**: Installer drafts and submits a warranty
    2. **Verification**: Installer confirms through a single-use link
    3. **Activation**: Customer accepts the terms through a single-use link
    4. **Inspection cycle**: Yearly inspection, with reminders before it is due
    5. **Grace period**: Missing the inspection past the grace period lapses the warranty

    ## Key Principles
    - Status changes only go through the state machine
    - Every transition is recorded in a versioned audit trail
    - Links are single-use and expire
    - Concurrent changes to the same record never both succeed
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Include routers
app.include_router(auth_router)
app.include_router(lifecycle_router)
app.include_router(reinstatement_router)
app.include_router(scheduler_router)


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "Warranty Lifecycle Engine",
        "version": __version__,
        "description": "Warranty registration, annual inspection and reminder scheduling",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# For running with: python -m warranty_lifecycle.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
