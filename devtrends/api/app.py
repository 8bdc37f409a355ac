"""
FastAPI application wiring.

``create_app`` mounts the AI routes, the error handlers and the request
context middleware on top of a ``Container``.

Serve with:
    devtrends serve --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from devtrends import __version__
from devtrends.adapters.llm import aclose_http_clients
from devtrends.common.logging import bind_request_context, clear_request_context, configure_logging
from devtrends.config import load_settings

from .container import Container, build_container
from .exception_handlers import configure_exception_handlers
from .routes import router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    container: Container = app.state.container
    logger.info("Starting DevTrends AI API (db=%s)", container.settings.database_path)
    yield
    logger.info("Shutting down, flushing %d telemetry writes", container.telemetry.pending)
    await container.telemetry.flush()
    if container.generation.cache is not None:
        container.generation.cache.close()
    await aclose_http_clients()


def create_app(container: Container | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        container: Pre-built dependencies (built from the environment when None)
    """
    if container is None:
        settings = load_settings()
        configure_logging(settings.log_level, settings.json_logs)
        container = build_container(settings)

    app = FastAPI(title="DevTrends AI", version=__version__, lifespan=lifespan)
    app.state.container = container

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        bind_request_context(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response

    configure_exception_handlers(app)
    app.include_router(router)
    return app


__all__ = ["create_app"]
