"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.database import create_engine
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import run_health_check

# ── Emergency engine ──
from backend.app.emergency.clock import SystemClock
from backend.app.emergency.directory import InMemoryUserDirectory, SqlUserDirectory
from backend.app.emergency.dispatcher import NotificationDispatcher
from backend.app.emergency.engine import EmergencyAlertEngine
from backend.app.emergency.ledger import InMemoryLedger, SqlLedger
from backend.app.emergency.notifier import ChannelNotifier
from backend.app.emergency.policy import build_channel_configs

# ── API routers ──
from backend.app.api.v1.emergency import router as emergency_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


async def build_engine() -> EmergencyAlertEngine:
    """Wire the engine from settings (ledger backend, channels, directory)."""
    db = None
    if "sql" in (settings.LEDGER_BACKEND, settings.directory_backend):
        db = create_engine()

    if settings.LEDGER_BACKEND == "sql":
        ledger = SqlLedger(db)
        await ledger.initialise()
    else:
        ledger = InMemoryLedger()

    if settings.directory_backend == "sql":
        directory = SqlUserDirectory(db)
    else:
        directory = InMemoryUserDirectory()
        logger.warning(
            "In-memory user directory is empty: alerts without explicit "
            "recipients notify nobody until they escalate"
        )

    clock = SystemClock()
    channel_configs = build_channel_configs()
    dispatcher = NotificationDispatcher(
        ChannelNotifier(),
        directory,
        clock=clock,
        channel_configs=channel_configs,
    )
    return EmergencyAlertEngine(
        ledger, dispatcher, clock=clock, channel_configs=channel_configs,
    )


def create_app(engine: Optional[EmergencyAlertEngine] = None) -> FastAPI:
    """Build the application; tests pass a pre-wired engine."""

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage startup and shutdown events."""
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        app.state.engine = engine if engine is not None else await build_engine()
        await app.state.engine.start()
        yield
        await app.state.engine.shutdown()
        ledger = app.state.engine.ledger
        if isinstance(ledger, SqlLedger):
            await ledger.close()
        directory = app.state.engine.dispatcher.directory
        if isinstance(directory, SqlUserDirectory):
            await directory.close()
        logger.info("Shutting down %s", settings.APP_NAME)

    # ── Create application ──

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Emergency alert lifecycle and escalation engine for election "
            "observers. Records every alert transition in an append-only "
            "ledger, escalates unacknowledged alerts on a severity-based "
            "deadline, and fans notifications out over SMS, email, push, "
            "WhatsApp and voice."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (order matters, outermost first) ──

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
    app.include_router(emergency_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "alert-ledger",
                "escalation-scheduler",
                "notification-dispatch",
                "emergency-api",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(app.state.engine)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(app.state.engine)
        if report.status.value == "unhealthy":
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
