"""Camp Signup Core API - Main Application."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import FastAPI

from signup_core.api.routes import assistance as assistance_routes
from signup_core.api.routes import metrics as metrics_routes
from signup_core.api.routes import notifications as notification_routes
from signup_core.api.routes import registrations as registration_routes
from signup_core.api.routes import trust as trust_routes
from signup_core.config import get_settings
from signup_core.domain.services.provider_registry import seed_default_profiles
from signup_core.infra.db import create_schema, session_scope
from signup_core.observability.logging import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, json_format=settings.log_json, service_name="signup-core")
    app.state.settings = settings

    create_schema()
    with session_scope() as db:
        seeded = seed_default_profiles(db)
    if seeded:
        logger.info("Seeded default provider profiles", count=seeded)

    app.state.redis = aioredis.from_url(settings.redis_url)
    yield
    # Shutdown
    await app.state.redis.aclose()


app = FastAPI(
    title="Camp Signup Core API",
    description="Registration orchestration for camp and class providers",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(assistance_routes.router)
app.include_router(metrics_routes.router)
app.include_router(notification_routes.router)
app.include_router(registration_routes.router)
app.include_router(trust_routes.router)


@app.get("/healthz")
async def health_check() -> dict:
    """Health check endpoint."""
    return {"ok": True, "service": "signup-core"}
