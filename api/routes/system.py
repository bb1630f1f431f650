"""Service routes: health check, greeting and Prometheus metrics."""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, Response

from telemetry import TelemetryProvider

logger = logging.getLogger(__name__)

system_router = APIRouter()

HEALTH_BODY = "OK"
GREETING_BODY = "Hello, OpenTelemetry!"


def get_provider(request: Request) -> TelemetryProvider:
    """Get the TelemetryProvider from app state."""
    return request.app.state.telemetry  # type: ignore[no-any-return]


@system_router.get("/healthz", response_class=PlainTextResponse)
async def healthz() -> str:
    """Liveness check."""
    return HEALTH_BODY


@system_router.get("/", response_class=PlainTextResponse)
async def root() -> str:
    """Root endpoint."""
    return GREETING_BODY


@system_router.get("/metrics")
async def metrics(request: Request) -> Response:
    """Prometheus scrape endpoint; OpenMetrics when the scraper asks for it."""
    body, content_type = get_provider(request).render_exposition(
        request.headers.get("accept", "")
    )
    return Response(content=body, media_type=content_type)
