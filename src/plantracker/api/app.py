"""Scheduling API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the database pool and wires the scheduler
- Health endpoint at GET /api/health
- Prometheus metrics at GET /metrics
- The scheduling router under /api/scheduling
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from plantracker import __version__
from plantracker.api.deps import build_scheduler
from plantracker.api.middleware import register_error_handlers
from plantracker.api.routers.scheduling import _get_scheduler
from plantracker.api.routers.scheduling import router as scheduling_router
from plantracker.config import PlanTrackerConfig, load_config
from plantracker.db import Database, ensure_schema

logger = logging.getLogger(__name__)


def _make_lifespan(config: PlanTrackerConfig):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the pool, ensure the schema and wire the scheduler; close on shutdown."""
        database = Database.from_config(config.database)
        pool = await database.connect()
        await ensure_schema(pool)
        components = build_scheduler(config, pool)
        app.dependency_overrides[_get_scheduler] = lambda: components.scheduler
        app.state.scheduling = components
        logger.info("Scheduling engine ready (timezone=%s)", config.scheduling.timezone)

        yield

        await components.shutdown()
        await database.close()

    return lifespan


def create_app(
    config: PlanTrackerConfig | None = None,
    cors_origins: list[str] | None = None,
    *,
    manage_resources: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration. Read via :func:`load_config` when omitted.
    cors_origins:
        Allowed CORS origins. Defaults to ``["http://localhost:5173"]``.
    manage_resources:
        When False no lifespan is installed, and the caller (typically a
        test) overrides ``_get_scheduler`` itself.
    """
    if cors_origins is None:
        cors_origins = ["http://localhost:5173"]

    lifespan = None
    if manage_resources:
        lifespan = _make_lifespan(config or load_config())

    app = FastAPI(
        title="PlanTracker Scheduling API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)
    app.include_router(scheduling_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
