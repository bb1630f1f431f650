"""Integration tests for the service routes using FastAPI TestClient.

TestClient runs the app in-process, so no server needs to be running.
Spans land in the in-memory exporter once the provider is flushed.
"""

import asyncio
import logging

import httpx
import pytest
from conftest import counter_value
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.middleware import REQUEST_COUNT, REQUEST_DURATION
from api.routes.system import GREETING_BODY, HEALTH_BODY
from common.errors import NotFound
from common.models import SpanStatus
from telemetry import InMemoryExporter, TelemetryProvider

# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Test client without lifespan; the provider is flushed explicitly."""
    return TestClient(app)


# ============================================================================
# ROUTES
# ============================================================================


class TestRoutes:
    """Fixed routes and the 404 fallback."""

    def test_healthz(self, client: TestClient) -> None:
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.text == HEALTH_BODY == "OK"
        assert response.headers["content-type"].startswith("text/plain")

    def test_root(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        assert response.text == GREETING_BODY == "Hello, OpenTelemetry!"

    def test_unknown_path_is_404_and_routing_keeps_working(
        self, client: TestClient, provider: TelemetryProvider
    ) -> None:
        missing = client.get("/does-not-exist")
        assert missing.status_code == 404
        assert missing.text == "Not Found"

        assert client.get("/").text == GREETING_BODY
        assert client.get("/healthz").text == HEALTH_BODY
        assert counter_value(provider, REQUEST_COUNT, route="unmatched", status_class="4xx") == 1

    def test_wrong_method_is_404(self, client: TestClient) -> None:
        response = client.post("/healthz")

        assert response.status_code == 404
        assert response.text == "Not Found"

    def test_unmatched_requests_are_not_found(
        self, client: TestClient, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.DEBUG, logger="api.server"):
            client.get("/nope")
            client.delete("/")

        messages = [record.getMessage() for record in caplog.records]
        assert "No route for GET /nope" in messages
        assert "No route for DELETE /" in messages

    def test_handlers_can_raise_not_found(self, app: FastAPI) -> None:
        @app.get("/items/{item_id}")
        async def item(item_id: int) -> str:
            raise NotFound("GET", f"/items/{item_id}")

        response = TestClient(app).get("/items/3")

        assert response.status_code == 404
        assert response.text == "Not Found"

    def test_docs_are_disabled(self, client: TestClient) -> None:
        assert client.get("/docs").status_code == 404
        assert client.get("/openapi.json").status_code == 404

    def test_metrics_exposition(self, client: TestClient) -> None:
        client.get("/")
        client.get("/")
        client.get("/healthz")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        lines = response.text.splitlines()
        assert "# TYPE request_count_total counter" in lines
        assert 'request_count_total{route="/",status_class="2xx"} 2.0' in lines
        assert 'request_count_total{route="/healthz",status_class="2xx"} 1.0' in lines
        assert "# TYPE request_duration histogram" in lines
        assert 'request_duration_count{route="/",status_class="2xx"} 2.0' in lines
        assert "telemetry_spans_dropped_total 0.0" in lines
        assert not any("unmatched" in line for line in lines)

    def test_metrics_openmetrics_negotiation(self, client: TestClient) -> None:
        client.get("/healthz")

        response = client.get("/metrics", headers={"Accept": "application/openmetrics-text"})

        assert response.headers["content-type"].startswith("application/openmetrics-text")
        assert "# TYPE request_count counter" in response.text
        assert response.text.endswith("# EOF\n")


# ============================================================================
# INSTRUMENTATION
# ============================================================================


class TestInstrumentation:
    """Spans and metrics recorded for each request."""

    def test_one_span_per_request(
        self, client: TestClient, provider: TelemetryProvider, exporter: InMemoryExporter
    ) -> None:
        client.get("/healthz")
        client.get("/missing/path")
        provider.flush()

        spans = exporter.get_spans()
        assert [s.name for s in spans] == ["GET /healthz", "GET unmatched"]
        healthz, missing = spans
        assert healthz.status == SpanStatus.OK
        assert healthz.attributes["http.route"] == "/healthz"
        assert healthz.attributes["http.response.status_code"] == 200
        assert missing.status == SpanStatus.OK
        assert missing.attributes["url.path"] == "/missing/path"
        assert missing.attributes["http.response.status_code"] == 404

    def test_duration_histogram_uses_route_and_status_class(
        self, client: TestClient, provider: TelemetryProvider
    ) -> None:
        client.get("/")

        instrument = provider.registry.get(REQUEST_DURATION)
        assert instrument is not None
        assert instrument.unit == "ms"
        series = instrument.snapshot().series
        assert [s.attributes for s in series] == [{"route": "/", "status_class": "2xx"}]
        assert series[0].count == 1

    def test_traceparent_is_continued(
        self, client: TestClient, provider: TelemetryProvider, exporter: InMemoryExporter
    ) -> None:
        trace_id = "4bf92f3577b34da6a3ce929d0e0e4736"
        client.get("/", headers={"traceparent": f"00-{trace_id}-00f067aa0ba902b7-01"})
        client.get("/", headers={"traceparent": "not-a-traceparent"})
        provider.flush()

        continued, fresh = exporter.get_spans()
        assert continued.trace_id == trace_id
        assert continued.parent_span_id == "00f067aa0ba902b7"
        assert fresh.trace_id != trace_id
        assert fresh.parent_span_id is None

    def test_handler_error_records_error_span(
        self, app: FastAPI, provider: TelemetryProvider, exporter: InMemoryExporter
    ) -> None:
        @app.get("/boom")
        async def boom() -> str:
            raise RuntimeError("handler failed")

        client = TestClient(app, raise_server_exceptions=False)
        response = client.get("/boom")
        provider.flush()

        assert response.status_code == 500
        assert response.text == "Internal Server Error"
        span = exporter.get_spans()[0]
        assert span.name == "GET /boom"
        assert span.status == SpanStatus.ERROR
        assert counter_value(provider, REQUEST_COUNT, route="/boom", status_class="5xx") == 1

    async def test_concurrent_requests_are_all_counted(
        self, app: FastAPI, provider: TelemetryProvider
    ) -> None:
        requests = 50
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            responses = await asyncio.gather(*(client.get("/") for _ in range(requests)))

        assert all(r.status_code == 200 for r in responses)
        assert counter_value(provider, REQUEST_COUNT, route="/", status_class="2xx") == requests
        assert provider.pending_spans == requests

    def test_lifespan_flushes_on_shutdown(
        self, app: FastAPI, provider: TelemetryProvider, exporter: InMemoryExporter
    ) -> None:
        with TestClient(app) as client:
            client.get("/")
            client.get("/healthz")

        assert provider.is_shut_down
        assert exporter.shut_down
        assert sorted(s.name for s in exporter.get_spans()) == ["GET /", "GET /healthz"]
