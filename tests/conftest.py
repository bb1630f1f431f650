"""Pytest configuration and fixtures for hello-otel tests."""

from typing import Any, Optional

import pytest
from fastapi import FastAPI

from api.server import create_app
from common.errors import ExportError
from common.models import Span, SpanStatus, TelemetryBatch
from config import ServerConfig
from telemetry import InMemoryExporter, RetryPolicy, TelemetryProvider


def no_sleep(delay: float) -> None:
    """Backoff sleep replacement that returns immediately."""


def finished_span(name: str = "GET /", status: SpanStatus = SpanStatus.OK) -> Span:
    """Create a closed span ready for export."""
    return Span(name=name).finish(status)


class FlakyExporter(InMemoryExporter):
    """In-memory exporter that fails a fixed number of times before succeeding.

    Args:
        failures: Number of export calls that raise before the first success,
            or None to fail forever
    """

    def __init__(self, failures: Optional[int] = None):
        super().__init__()
        self.failures = failures
        self.calls = 0

    def export(self, batch: TelemetryBatch, timeout: float) -> None:
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            raise ExportError(f"collector unavailable (call {self.calls})")
        super().export(batch, timeout)


@pytest.fixture
def exporter() -> InMemoryExporter:
    """Exporter capturing every batch in memory."""
    return InMemoryExporter()


@pytest.fixture
def provider(exporter: InMemoryExporter) -> TelemetryProvider:
    """Provider with an in-memory exporter and no backoff delays."""
    return TelemetryProvider(
        exporter,
        retry_policy=RetryPolicy(max_attempts=5, initial_delay=0.0),
        flush_interval=60.0,
        export_timeout=5.0,
        sleep=no_sleep,
    )


@pytest.fixture
def config() -> ServerConfig:
    """Configuration for tests: in-memory export and short shutdown windows."""
    return ServerConfig(
        server_addr="127.0.0.1:0",
        exporter="memory",
        grace_period=2.0,
        shutdown_flush_timeout=5.0,
    )


@pytest.fixture
def app(config: ServerConfig, provider: TelemetryProvider) -> FastAPI:
    """Application wired to the in-memory provider."""
    return create_app(config, provider)


def counter_value(provider: TelemetryProvider, name: str, **attributes: Any) -> float:
    """Current value of one counter series, 0 if it has not been recorded yet."""
    instrument = provider.registry.get(name)
    if instrument is None:
        return 0.0
    wanted = {k: str(v) for k, v in attributes.items()}
    for series in instrument.snapshot().series:
        if series.attributes == wanted:
            return series.value
    return 0.0
