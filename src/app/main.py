"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, lifespan
events for database and pipeline initialization, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.app.config import get_settings
from src.app.core.database import close_db, get_session, init_db
from src.app.core.monitoring import MetricsMiddleware, get_metrics_response
from src.app.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.app.api.v1.router import router as v1_router
from src.app.deals.crm.postgres import PostgresGateway
from src.app.deals.pipeline import PipelineCache
from src.app.deals.repository import DealRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and the pipeline cache, tear down on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    repository = DealRepository(session_factory=get_session)
    gateway = PostgresGateway(repository, max_retries=settings.GATEWAY_MAX_RETRIES)
    cache = PipelineCache(gateway, reconcile_strategy=settings.PIPELINE_RECONCILE_STRATEGY)
    app.state.pipeline_cache = cache

    # First load is best-effort; GET /pipeline retries it on demand
    try:
        await cache.load()
    except Exception:
        log.warning("pipeline.initial_load_failed", exc_info=True)

    log.info(
        "pipeline.initialized",
        reconcile_strategy=settings.PIPELINE_RECONCILE_STRATEGY.value,
    )

    yield

    cache.close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Deal Pipeline API",
        version="0.1.0",
        description="Kanban deal pipeline with optimistic stage moves",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
