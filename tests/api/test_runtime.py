"""Tests for the server runtime against a real socket.

The runtime serves from a background thread on an ephemeral port, so
uvicorn leaves signal handling alone and ``stop()`` triggers the drain.
"""

import asyncio
import socket
import threading
import time
from typing import Any, Callable, Optional

import httpx
import pytest
from conftest import FlakyExporter, counter_value, no_sleep
from fastapi import FastAPI

from api.runtime import EXIT_CLEAN, EXIT_FORCED, EXIT_STARTUP_FAILURE, ServerRuntime
from api.server import create_app
from common.errors import BindError, TelemetryExportFailed
from common.models import ServerState, SpanStatus
from config import ServerConfig
from telemetry import InMemoryExporter, RetryPolicy, TelemetryProvider
from telemetry.provider import SPANS_DROPPED

SLOW_ROUTE = "/slow"


class RuntimeThread:
    """Run a ServerRuntime in a background thread and collect its exit code."""

    def __init__(self, runtime: ServerRuntime):
        self.runtime = runtime
        self.exit_code: Optional[int] = None
        self._thread = threading.Thread(target=self._run, daemon=True)

    def _run(self) -> None:
        self.exit_code = self.runtime.run()

    def start(self) -> str:
        """Start serving and return the base URL once listening."""
        self._thread.start()
        assert self.runtime.ready.wait(timeout=10.0), "server did not start"
        host, port = self.runtime.bound_address  # type: ignore[misc]
        return f"http://{host}:{port}"

    def join(self, timeout: float = 15.0) -> Optional[int]:
        self._thread.join(timeout)
        assert not self._thread.is_alive(), "server did not stop"
        return self.exit_code


def add_slow_route(app: FastAPI, delay: float) -> None:
    @app.get(SLOW_ROUTE)
    async def slow() -> str:
        await asyncio.sleep(delay)
        return "done"


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def fire_requests(
    url: str, count: int, timeout: float
) -> tuple[list[threading.Thread], list[Any]]:
    """Send ``count`` concurrent GETs from worker threads; results collect in the list."""
    results: list[Any] = []

    def request() -> None:
        try:
            results.append(httpx.get(url, timeout=timeout))
        except httpx.HTTPError as e:
            results.append(e)

    threads = [threading.Thread(target=request, daemon=True) for _ in range(count)]
    for thread in threads:
        thread.start()
    return threads, results


class TestBind:
    """Startup failures."""

    def test_occupied_port_is_a_startup_failure(self, provider: TelemetryProvider) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen()
            port = blocker.getsockname()[1]

            config = ServerConfig(server_addr=f"127.0.0.1:{port}", exporter="memory")
            runtime = ServerRuntime(config, create_app(config, provider))

            with pytest.raises(BindError) as exc_info:
                runtime.bind()
            assert exc_info.value.address == f"127.0.0.1:{port}"

            assert runtime.run() == EXIT_STARTUP_FAILURE
            assert runtime.state == ServerState.STOPPED
            assert not runtime.ready.is_set()

    def test_ephemeral_port_is_reported(self, config: ServerConfig, app: FastAPI) -> None:
        runtime = ServerRuntime(config, app)
        sock = runtime.bind()
        try:
            assert runtime.bound_address is not None
            assert runtime.bound_address[0] == "127.0.0.1"
            assert runtime.bound_address[1] > 0
        finally:
            sock.close()


class TestLifecycle:
    """Listening, draining and exit codes."""

    def test_serves_and_stops_cleanly(
        self, config: ServerConfig, app: FastAPI, exporter: InMemoryExporter
    ) -> None:
        runtime = ServerRuntime(config, app)
        server = RuntimeThread(runtime)
        base_url = server.start()

        assert runtime.state == ServerState.LISTENING
        response = httpx.get(f"{base_url}/healthz", timeout=5.0)
        assert response.status_code == 200
        assert response.text == "OK"

        runtime.stop()

        assert server.join() == EXIT_CLEAN
        assert runtime.state == ServerState.STOPPED
        assert [s.name for s in exporter.get_spans()] == ["GET /healthz"]

    def test_in_flight_requests_finish_within_grace_period(
        self, config: ServerConfig, app: FastAPI, exporter: InMemoryExporter
    ) -> None:
        in_flight = 5
        add_slow_route(app, delay=0.3)
        runtime = ServerRuntime(config, app)
        server = RuntimeThread(runtime)
        base_url = server.start()

        threads, results = fire_requests(f"{base_url}{SLOW_ROUTE}", in_flight, timeout=10.0)
        assert wait_for(lambda: runtime.tracker.in_flight == in_flight)

        runtime.stop()
        assert runtime.state == ServerState.DRAINING

        assert server.join() == EXIT_CLEAN
        for thread in threads:
            thread.join(5.0)
        assert [r.status_code for r in results] == [200] * in_flight
        spans = [s for s in exporter.get_spans() if s.name == f"GET {SLOW_ROUTE}"]
        assert len(spans) == in_flight
        assert all(s.status == SpanStatus.OK for s in spans)

    def test_requests_past_grace_period_are_cancelled(
        self, provider: TelemetryProvider, exporter: InMemoryExporter
    ) -> None:
        config = ServerConfig(
            server_addr="127.0.0.1:0",
            exporter="memory",
            grace_period=0.2,
            shutdown_flush_timeout=5.0,
        )
        app = create_app(config, provider)
        add_slow_route(app, delay=30.0)
        runtime = ServerRuntime(config, app)
        server = RuntimeThread(runtime)
        base_url = server.start()

        fire_requests(f"{base_url}{SLOW_ROUTE}", 1, timeout=5.0)
        assert wait_for(lambda: runtime.tracker.in_flight == 1)

        runtime.stop()

        assert server.join() == EXIT_FORCED
        assert runtime.tracker.cancelled == 1
        spans = [s for s in exporter.get_spans() if s.name == f"GET {SLOW_ROUTE}"]
        assert len(spans) == 1
        assert spans[0].status == SpanStatus.CANCELLED

    def test_failed_final_flush_reports_every_in_flight_span(self) -> None:
        in_flight = 4
        exporter = FlakyExporter(failures=None)
        provider = TelemetryProvider(
            exporter,
            retry_policy=RetryPolicy(max_attempts=3, initial_delay=0.0),
            flush_interval=60.0,
            sleep=no_sleep,
        )
        events: list[TelemetryExportFailed] = []
        provider.add_failure_listener(events.append)
        config = ServerConfig(
            server_addr="127.0.0.1:0",
            exporter="memory",
            grace_period=5.0,
            shutdown_flush_timeout=5.0,
        )
        app = create_app(config, provider)
        add_slow_route(app, delay=0.3)
        runtime = ServerRuntime(config, app)
        server = RuntimeThread(runtime)
        base_url = server.start()

        threads, results = fire_requests(f"{base_url}{SLOW_ROUTE}", in_flight, timeout=10.0)
        assert wait_for(lambda: runtime.tracker.in_flight == in_flight)

        runtime.stop()

        assert server.join() == EXIT_CLEAN
        for thread in threads:
            thread.join(5.0)
        assert [r.status_code for r in results] == [200] * in_flight
        assert len(events) == 1
        assert events[0].dropped_spans == in_flight
        assert events[0].attempts == 3
        assert counter_value(provider, SPANS_DROPPED) == in_flight
        assert exporter.get_spans() == []
