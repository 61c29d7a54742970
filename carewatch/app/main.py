"""
FastAPI application entry point.

Run with:
    uvicorn carewatch.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn carewatch.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from carewatch.app.core.config import settings
from carewatch.app.core.logging_config import setup_logging, get_logger
from carewatch.app.core.errors import register_error_handlers
from carewatch.app.core.middleware import RequestLoggingMiddleware
from carewatch.app.core.health import HealthStatus, run_health_check
from carewatch.app.container import AlertContainer

# ── API routers ──
from carewatch.app.api.v1.alerts import router as alert_router
from carewatch.app.api.v1.internal import alerts_router as internal_alert_router
from carewatch.app.api.v1.internal import sms_router as internal_sms_router
from carewatch.app.api.v1.stream import router as stream_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(container: Optional[AlertContainer] = None) -> FastAPI:
    """
    Build the application.

    With a prebuilt container (tests) the caller owns its start/stop and the
    lifespan leaves it alone.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        owned = container is None
        if owned:
            app.state.container = AlertContainer()
            await app.state.container.start()
        yield
        if owned:
            await app.state.container.stop()
        logger.info("Shutting down %s", settings.APP_NAME)

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency alert fanout for elderly monitoring. "
            "Turns risk signals from the call agent into alerts, "
            "resolves counselor, guardian and jurisdiction-admin recipients, "
            "pushes live events over SSE, sends SMS with dedup and a delivery "
            "ledger, and tracks processing and read state."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(internal_alert_router)
    app.include_router(internal_sms_router)
    app.include_router(alert_router)
    app.include_router(stream_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "alert-lifecycle",
                "recipient-resolution",
                "live-push",
                "sms-delivery",
                "read-tracking",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(request.app.state.container)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(request.app.state.container)
        if report.status is HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
