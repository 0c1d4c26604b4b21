"""pairlink Backend Application.

Signaling and session coordination for two-party WebRTC calls. No media
passes through this service.

Modules:
    - signaling: WebSocket endpoint, event validation and dispatch
    - presence: Two-occupant rooms stored in redis
    - turn: Ephemeral relay credentials with quota and connection limits
    - ratelimit: Per-origin and per-user event budgets shared across instances
    - reaper: Periodic eviction of occupants that stopped heartbeating
    - monitor: Usage accounting and the read-only stats API
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pairlink.config import get_config
from pairlink.monitor.router import router as stats_router
from pairlink.services import build_services, get_services, set_services
from pairlink.signaling.router import router as signaling_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    services = get_services()
    config = services.config if services is not None else get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in pairlink.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    if services is None:
        services = build_services(config)
        set_services(services)

    if await services.store.ping():
        logger.info("Redis reachable at %s", config.redis.url)
    else:
        logger.warning("Redis not reachable at %s; rate limiting fails open until it is", config.redis.url)

    if config.reaper.enabled:
        services.reaper.start()
    else:
        logger.info("Zombie reaper disabled in config")

    yield  # Application runs here

    # Shutdown: the reaper must stop before the store it sweeps is closed.
    await services.reaper.stop()
    await services.store.close()
    set_services(None)
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="pairlink API",
    description="Signaling backbone for two-party WebRTC sessions",
    version="0.1.0",
    lifespan=lifespan,
)

# Register all routers
app.include_router(signaling_router)
app.include_router(stats_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Server status and whether redis answers a PING.
    """
    services = get_services()
    redis_ok = services is not None and await services.store.ping()
    return {"status": "ok", "redis": "ok" if redis_ok else "unavailable"}
