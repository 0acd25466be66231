"""
StellarRec Submission Monitoring - FastAPI Application

Main entry point for the backend API.
Runs the delivery and monitoring loops for the lifetime of the process and
serves the operator API.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from stellarrec.config.settings import settings
from stellarrec.infrastructure.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    StellarRecError,
    ValidationError,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info(f"StellarRec Monitoring starting in {settings.environment} mode...")

    orchestrator = None
    if settings.database_url:
        try:
            from stellarrec.infrastructure.db.database import init_db
            await init_db()
            logger.info("SQLModel database connection pool initialized")
        except Exception as e:
            logger.warning(f"SQLModel database initialization skipped: {e}")

        if settings.monitoring_enabled:
            from stellarrec.api.dependencies import get_monitoring_orchestrator
            orchestrator = get_monitoring_orchestrator()
            await orchestrator.start()

    yield

    # Shutdown
    if orchestrator is not None:
        await orchestrator.stop(
            timeout=settings.dispatch_timeout_seconds + settings.shutdown_grace_seconds
        )

    if settings.database_url:
        try:
            from stellarrec.infrastructure.db.database import close_db
            await close_db()
            logger.info("SQLModel database connection pool closed")
        except Exception as e:
            logger.warning(f"SQLModel database shutdown error: {e}")

    logger.info("StellarRec Monitoring shutting down...")


app = FastAPI(
    title="StellarRec Submission Monitoring",
    description="Recommendation letter delivery queue, health analytics and alerting",
    version="1.0.0",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS configuration from Settings
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Exception Handlers
# ============================================================================

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    """Handle operator input errors."""
    return JSONResponse(
        status_code=400,
        content=exc.to_dict(),
    )


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError):
    """Handle not found errors."""
    return JSONResponse(
        status_code=404,
        content=exc.to_dict(),
    )


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
    """Handle status changes that would break the submission lifecycle."""
    return JSONResponse(
        status_code=409,
        content=exc.to_dict(),
    )


@app.exception_handler(StellarRecError)
async def general_error_handler(request: Request, exc: StellarRecError):
    """Handle all other application errors."""
    return JSONResponse(
        status_code=500,
        content=exc.to_dict(),
    )


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "stellarrec-monitoring"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "StellarRec Submission Monitoring API",
        "version": "1.0.0",
        "docs": "/docs",
    }


# ============================================================================
# Import and register routers
# ============================================================================

from stellarrec.api.routes import errors, monitoring, notifications, submissions  # noqa: E402

app.include_router(monitoring.router)
app.include_router(submissions.router)
app.include_router(notifications.router)
app.include_router(errors.router)
