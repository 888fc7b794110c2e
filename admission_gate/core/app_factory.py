"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) and
the rate limiter lifecycle: the limiter is built once when the app starts,
shared through ``app.state`` and closed at shutdown.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from admission_gate.adapters.rate_limit.base import AbstractRateLimiter
from admission_gate.adapters.rate_limit.factory import create_rate_limiter_from_settings
from admission_gate.api.routes import admission_router, health_router
from admission_gate.core.config import Settings, settings as default_settings
from admission_gate.core.exception_handlers import setup_exception_handlers
from admission_gate.core.logging import configure_logging
from admission_gate.core.middleware import request_id_middleware

logger = logging.getLogger(__name__)


def create_app(
    app_settings: Settings | None = None,
    *,
    rate_limiter: AbstractRateLimiter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        app_settings: Settings to build from; defaults to the global settings.
        rate_limiter: Pre-built limiter to use instead of the settings-driven
            factory (the app still closes it at shutdown).

    Returns:
        Configured FastAPI app.
    """
    cfg = app_settings or default_settings

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(cfg.log)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        limiter = rate_limiter or await create_rate_limiter_from_settings(cfg)
        app.state.rate_limiter = limiter
        logger.info(
            "app.startup",
            extra={
                "backend": limiter.backend_name,
                "max_requests": limiter.config.max_requests,
                "window_ms": limiter.config.window_ms,
            },
        )
        try:
            yield
        finally:
            await limiter.close()
            app.state.rate_limiter = None
            logger.info("app.shutdown", extra={"backend": limiter.backend_name})

    app = FastAPI(
        title=cfg.app.title,
        description=(
            "Admission control in front of an AI inference backend: sliding-window "
            "rate limiting per client, in memory or shared through Redis."
        ),
        version="0.1.0",
        debug=cfg.app.debug,
        lifespan=lifespan,
    )
    app.state.settings = cfg

    app.middleware("http")(request_id_middleware)
    setup_exception_handlers(app)

    app.include_router(admission_router, prefix="/v1")
    app.include_router(health_router)

    return app
