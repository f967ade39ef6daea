"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root, with HOST, PORT, WORKERS and RELOAD from settings:
    python -m backend.app.main
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import CredentialError, register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.database import async_session_factory, close_db, engine, init_db

# ── Alert engine ──
from backend.app.alerts.accounts import AccountService
from backend.app.alerts.alert_service import AlertStore
from backend.app.alerts.channels.credentials import PushCredentials
from backend.app.alerts.channels.fcm_push import FcmPushChannel
from backend.app.alerts.dispatcher import PushDispatcher
from backend.app.alerts.jobs import ExpirySweeper
from backend.app.alerts.workflow import AlertWorkflow

# ── API routers ──
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.devices import router as device_router
from backend.app.api.v1.plates import router as plate_router
from backend.app.api.v1.users import router as user_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def _build_credentials() -> Optional[PushCredentials]:
    if not settings.push_configured:
        logger.warning("Push provider not configured; alerts will be stored but not pushed")
        return None
    try:
        return PushCredentials.from_settings(settings)
    except CredentialError as exc:
        logger.error("Push credentials rejected at startup: %s", exc.message)
        return None


def wire_services(
    app: FastAPI,
    db_engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    credentials: Optional[PushCredentials] = None,
    channel: Optional[FcmPushChannel] = None,
) -> None:
    """Build the service graph and hang it on app.state."""
    store = AlertStore(session_factory)
    channel = channel or FcmPushChannel(settings.FIREBASE_PROJECT_ID or "unconfigured")
    dispatcher = PushDispatcher(
        store, channel, credentials, max_concurrency=settings.PUSH_MAX_CONCURRENCY,
    )
    app.state.engine = db_engine
    app.state.store = store
    app.state.credentials = credentials
    app.state.channel = channel
    app.state.accounts = AccountService(
        session_factory, max_devices=settings.MAX_DEVICE_TOKENS_PER_USER,
    )
    app.state.workflow = AlertWorkflow(store, dispatcher)
    app.state.sweeper = ExpirySweeper(
        store,
        interval_seconds=settings.ALERT_SWEEP_INTERVAL_SECONDS,
        retention_days=settings.ALERT_RETENTION_DAYS,
    )


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    await init_db(engine)
    wire_services(app, engine, async_session_factory, credentials=_build_credentials())
    app.state.sweeper.start()
    yield
    await app.state.sweeper.stop()
    await app.state.channel.close()
    if app.state.credentials is not None:
        await app.state.credentials.close()
    await close_db(engine)
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Blocked-vehicle alerts. Fans a report out to everyone registered for "
        "the plate, tracks each recipient's response, escalates unanswered "
        "alerts and delivers push notifications to every registered device."
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
app.include_router(alert_router)
app.include_router(plate_router)
app.include_router(device_router)
app.include_router(user_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "plate-fanout",
            "alert-state-store",
            "escalation-policy",
            "push-credentials",
            "push-dispatch",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(request.app.state.engine, request.app.state.credentials)
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(request.app.state.engine, request.app.state.credentials)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        workers=None if settings.RELOAD else settings.WORKERS,
        log_config=None,
    )
