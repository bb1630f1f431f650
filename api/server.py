"""FastAPI application for the service."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

# Logging is configured in main.py
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Receive, Scope, Send
from starlette.websockets import WebSocketClose

from common.errors import NotFound
from config import SERVICE_VERSION, ServerConfig, load_config
from telemetry import LogExport, TelemetryProvider, init_telemetry

from .middleware import InstrumentationMiddleware, RequestTracker
from .routes.system import system_router

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[ServerConfig] = None,
    provider: Optional[TelemetryProvider] = None,
    log_export: Optional[LogExport] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Process configuration, read from the environment if omitted
        provider: Telemetry provider, built from ``config`` if omitted
        log_export: Running log export, shut down with the app if given
    """
    config = config or load_config()
    provider = provider or init_telemetry(config)
    tracker = RequestTracker()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Start the telemetry flusher; drain and flush on the way out."""
        logger.info("🚀 Starting service...")
        provider.start()
        try:
            yield
        finally:
            # Requests cut off by the grace period still need to record their spans
            if not await tracker.wait_idle(timeout=max(config.grace_period, 1.0)):
                logger.warning(f"⚠️ {tracker.in_flight} request(s) still in flight at shutdown")
            await asyncio.to_thread(provider.shutdown, config.shutdown_flush_timeout)
            logger.info("✅ Telemetry flushed")
            if log_export is not None:
                await asyncio.to_thread(log_export.shutdown)

    app = FastAPI(
        title="hello-otel",
        description="HTTP service emitting traces and metrics over OTLP",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.config = config
    app.state.telemetry = provider
    app.state.tracker = tracker

    app.add_middleware(InstrumentationMiddleware, provider=provider, tracker=tracker)

    async def route_not_found(scope: Scope, receive: Receive, send: Send) -> None:
        """Router fallback: unknown paths become ``NotFound``."""
        if scope["type"] == "websocket":
            await WebSocketClose()(scope, receive, send)
            return
        raise NotFound(scope["method"], scope["path"])

    app.router.default = route_not_found

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound) -> PlainTextResponse:
        """Unmatched requests get a plain 404; the server keeps routing."""
        logger.debug(str(exc))
        return PlainTextResponse("Not Found", status_code=404)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> PlainTextResponse:
        """A known path with the wrong method is handled like an unknown path."""
        if exc.status_code in (404, 405):
            return await not_found_handler(request, NotFound(request.method, request.url.path))
        return PlainTextResponse(str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> PlainTextResponse:
        """Handle all unhandled exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return PlainTextResponse("Internal Server Error", status_code=500)

    app.include_router(system_router, tags=["system"])

    return app
