"""Request instrumentation: one span plus duration/count metrics per request."""

import asyncio
import logging
import time
from typing import Optional

from opentelemetry import trace as otel_trace
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from common.models import InstrumentKind, Span, SpanStatus
from common.models.telemetry import utcnow
from telemetry import TelemetryProvider

logger = logging.getLogger(__name__)

REQUEST_DURATION = "request_duration"
REQUEST_COUNT = "request_count"
UNMATCHED_ROUTE = "unmatched"

_propagator = TraceContextTextMapPropagator()


def status_class(status_code: int) -> str:
    """Bucket a status code into ``2xx``/``4xx``/``5xx`` style classes."""
    return f"{status_code // 100}xx"


def resolve_route_template(scope: Scope) -> str:
    """Return the path template of the route that handled ``scope``.

    The router stores the selected route in ``scope["route"]`` while
    dispatching, so this is read once the app has been called. Raw paths are
    never used so span names and metric labels stay bounded. A route that
    was selected only as a method mismatch counts as unmatched.
    """
    route = scope.get("route")
    if route is None:
        return UNMATCHED_ROUTE
    methods = getattr(route, "methods", None)
    if methods and scope.get("method") not in methods:
        return UNMATCHED_ROUTE
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return str(template) if template else UNMATCHED_ROUTE


def extract_parent(headers: Headers) -> tuple[Optional[str], Optional[str]]:
    """Read a W3C ``traceparent`` header into (trace_id, parent_span_id)."""
    context = _propagator.extract(carrier=dict(headers))
    parent = otel_trace.get_current_span(context).get_span_context()
    if not parent.is_valid:
        return None, None
    return format(parent.trace_id, "032x"), format(parent.span_id, "016x")


class RequestTracker:
    """Counts in-flight requests so shutdown can wait for them."""

    def __init__(self) -> None:
        self.in_flight = 0
        self.completed = 0
        self.cancelled = 0

    def request_started(self) -> None:
        self.in_flight += 1

    def request_finished(self, cancelled: bool = False) -> None:
        self.in_flight -= 1
        if cancelled:
            self.cancelled += 1
        else:
            self.completed += 1

    async def wait_idle(self, timeout: float, poll_interval: float = 0.01) -> bool:
        """Wait until no request is in flight.

        Returns:
            True if the tracker went idle before ``timeout`` seconds
        """
        deadline = time.monotonic() + timeout
        while self.in_flight > 0:
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(poll_interval)
        return True


class InstrumentationMiddleware:
    """ASGI middleware wrapping every HTTP request in a span.

    The span is named once the router has picked a route. The response
    passes through untouched; only the status code is read from
    ``http.response.start``.
    """

    def __init__(self, app: ASGIApp, provider: TelemetryProvider, tracker: RequestTracker):
        self.app = app
        self.provider = provider
        self.tracker = tracker

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        trace_id, parent_span_id = extract_parent(Headers(scope=scope))
        start_time = utcnow()
        status_code = 500
        outcome: Optional[SpanStatus] = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        self.tracker.request_started()
        started = time.perf_counter()
        try:
            await self.app(scope, receive, send_wrapper)
        except asyncio.CancelledError:
            outcome = SpanStatus.CANCELLED
            raise
        except Exception:
            status_code = 500
            outcome = SpanStatus.ERROR
            raise
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            if outcome is None:
                outcome = SpanStatus.ERROR if status_code >= 500 else SpanStatus.OK
            route = resolve_route_template(scope)
            method = scope["method"]
            # Continue the caller's trace when a valid traceparent arrived
            parent = {"trace_id": trace_id, "parent_span_id": parent_span_id} if trace_id else {}
            span = Span(
                name=f"{method} {route}",
                start_time=start_time,
                attributes={
                    "http.request.method": method,
                    "http.route": route,
                    "url.path": scope["path"],
                },
                **parent,
            )
            self._record(span, outcome, status_code, route, duration_ms)
            self.tracker.request_finished(cancelled=outcome == SpanStatus.CANCELLED)

    def _record(
        self,
        span: Span,
        outcome: SpanStatus,
        status_code: int,
        route: str,
        duration_ms: float,
    ) -> None:
        try:
            finished = span.finish(outcome, {"http.response.status_code": status_code})
            self.provider.record_span(finished)

            labels = {"route": route, "status_class": status_class(status_code)}
            self.provider.record_metric(
                REQUEST_DURATION,
                InstrumentKind.HISTOGRAM,
                duration_ms,
                attributes=labels,
                unit="ms",
                description="HTTP request duration",
            )
            self.provider.record_metric(
                REQUEST_COUNT,
                InstrumentKind.COUNTER,
                1,
                attributes=labels,
                unit="1",
                description="HTTP requests handled",
            )
        except Exception as e:
            logger.error(f"❌ Failed to record telemetry for {span.name}: {e}", exc_info=True)
