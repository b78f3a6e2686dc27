"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 5000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import run_health_check
from backend.app.core.database import async_session_factory, close_db, engine, init_db
from backend.app.core.cache import close_redis

# ── Emergency domain ──
from backend.app.emergency.channels.whatsapp import ChannelConfig, WhatsAppChannel
from backend.app.emergency.dispatcher import DeliveryDispatcher
from backend.app.emergency.lifecycle import AlertLifecycle
from backend.app.emergency.store import AlertStore

# ── API routers ──
from backend.app.api.v1.emergency import router as emergency_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def build_lifecycle(channel: WhatsAppChannel, session_factory=async_session_factory) -> AlertLifecycle:
    """Wire store, dispatcher and channel from settings."""
    dispatcher = DeliveryDispatcher(channel, pacing_seconds=settings.DISPATCH_PACING_SECONDS)
    return AlertLifecycle(
        AlertStore(session_factory),
        dispatcher,
        duplicate_policy=settings.SOS_DUPLICATE_POLICY,
        idempotency_ttl=settings.REDIS_IDEMPOTENCY_TTL,
    )


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    await init_db()

    channel = WhatsAppChannel(ChannelConfig.from_settings(settings))
    app.state.channel = channel
    app.state.lifecycle = build_lifecycle(channel)

    logger.info(
        "Emergency API ready — WhatsApp %s, duplicate policy %s",
        "configured" if channel.is_configured else "SIMULATED",
        settings.SOS_DUPLICATE_POLICY,
    )
    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await app.state.lifecycle.shutdown(settings.SHUTDOWN_DRAIN_SECONDS)
    await channel.close()
    await close_redis()
    await close_db()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Emergency SOS alerting. Users keep a list of emergency contacts; "
        "an SOS sends their live location to every contact over WhatsApp, "
        "records per-contact delivery, and notifies primary contacts "
        "when the alert is resolved."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (order matters — outermost first) ──

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
        "docs": "/docs",
    }


@app.get(f"{settings.API_PREFIX}/health", tags=["health"])
async def api_health(request: Request):
    """Shallow probe used by the mobile client."""
    return {
        "status": "OK",
        "provider_configured": request.app.state.lifecycle.provider_configured,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(
        engine, provider_configured=request.app.state.lifecycle.provider_configured,
    )
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(
        engine, provider_configured=request.app.state.lifecycle.provider_configured,
    )
    if report.status.value == "unhealthy":
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.app.main:app", host=settings.HOST, port=settings.PORT)
