"""calbridge API — FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds the shared HTTP client, DB pool and services
- Health endpoint at GET /api/health
- Integration, event and availability routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calbridge.api.deps import Services, build_services
from calbridge.api.middleware import register_error_handlers
from calbridge.api.routers.availability import router as availability_router
from calbridge.api.routers.events import router as events_router
from calbridge.api.routers.integrations import router as integrations_router
from calbridge.config import ServiceConfig

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services on startup (unless prebuilt) and close them on shutdown."""
    owned: Services | None = None
    if getattr(app.state, "services", None) is None:
        config: ServiceConfig | None = getattr(app.state, "config", None)
        if config is None:
            raise RuntimeError("create_app() needs either a config or prebuilt services")
        owned = await build_services(config)
        app.state.services = owned

    yield

    if owned is not None:
        await owned.close()
        app.state.services = None


def create_app(
    config: ServiceConfig | None = None,
    *,
    services: Services | None = None,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Service configuration; services are built from it at startup.
    services:
        Prebuilt services (tests, embedding).  Takes precedence over *config*.
    cors_origins:
        Allowed CORS origins.  Defaults to ``config.cors_origins``.
    """
    app = FastAPI(
        title="calbridge",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = services

    origins = cors_origins if cors_origins is not None else (config.cors_origins if config else [])
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    app.include_router(integrations_router)
    app.include_router(events_router)
    app.include_router(availability_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
