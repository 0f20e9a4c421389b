"""FastAPI application entry point for the Milestone Escrow marketplace.

Lifecycle:
    1. Startup: Initialize logging, database, Redis, create tables (dev mode).
    2. Running: Serve the REST API at /api/v1/* on a single Uvicorn process.
    3. Shutdown: Close database, Redis and outbound HTTP clients gracefully.

Run with:
    uv run uvicorn milestone_escrow.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from milestone_escrow.config import get_settings
from milestone_escrow.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from milestone_escrow.infrastructure.database.engine import close_db, init_db

    await init_db(settings)

    # 3. Initialize Redis (idempotency keys degrade to a no-op without it)
    from milestone_escrow.infrastructure.redis_client import close_redis, init_redis

    try:
        await init_redis(settings)
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    from milestone_escrow.api.deps import close_clients

    logger.info("app.shutting_down")
    await close_clients()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory - creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Milestone Escrow",
        description=(
            "Freelance agreements with milestone-based escrow payments "
            "settled on-chain."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from milestone_escrow.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from milestone_escrow.api.routes.agreements import router as agreements_router
    from milestone_escrow.api.routes.health import router as health_router
    from milestone_escrow.api.routes.milestones import router as milestones_router
    from milestone_escrow.api.routes.transactions import router as transactions_router

    app.include_router(health_router)
    app.include_router(agreements_router)
    app.include_router(milestones_router)
    app.include_router(transactions_router)

    return app


# The app instance used by Uvicorn
app = create_app()
