"""voicecal API — FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (origins from the ``[api]`` config section)
- Lifespan handler that wires :class:`~voicecal.api.deps.AppServices`
- Health endpoint at GET /api/health
- OAuth, calendar and voice routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voicecal import __version__
from voicecal.api.deps import build_services
from voicecal.api.middleware import register_error_handlers
from voicecal.api.routers.calendar import router as calendar_router
from voicecal.api.routers.oauth import router as oauth_router
from voicecal.api.routers.voice import router as voice_router
from voicecal.config import AppConfig, load_config

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the DB pool and HTTP client on startup; close them on shutdown."""
    if getattr(app.state, "services", None) is not None:
        # Pre-wired (tests or embedding callers own the lifecycle).
        yield
        return

    app.state.services = await build_services(app.state.config)
    logger.info("voicecal API started")
    try:
        yield
    finally:
        services, app.state.services = app.state.services, None
        await services.aclose()
        logger.info("voicecal API stopped")


def create_app(config: AppConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed configuration.  Loaded with :func:`voicecal.config.load_config`
        when omitted.
    """
    if config is None:
        config = load_config()

    app = FastAPI(
        title="voicecal API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.config = config
    app.state.services = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(oauth_router)
    app.include_router(calendar_router)
    app.include_router(voice_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
