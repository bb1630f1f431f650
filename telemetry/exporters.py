"""Exporters that deliver telemetry batches.

An exporter receives a ``TelemetryBatch`` and either delivers it or raises
``ExportError``. Retrying is the provider's job, not the exporter's.
"""

import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, runtime_checkable
from urllib.parse import urlparse

import grpc
import requests
from google.protobuf.message import Message
from opentelemetry.exporter.otlp.proto.common.metrics_encoder import encode_metrics
from opentelemetry.exporter.otlp.proto.common.trace_encoder import encode_spans
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2_grpc import MetricsServiceStub
from opentelemetry.proto.collector.trace.v1.trace_service_pb2_grpc import TraceServiceStub
from opentelemetry.sdk.metrics.export import (
    AggregationTemporality,
    Histogram,
    HistogramDataPoint,
    Metric,
    MetricsData,
    NumberDataPoint,
    ResourceMetrics,
    ScopeMetrics,
    Sum,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.util.instrumentation import InstrumentationScope
from opentelemetry.semconv.resource import ResourceAttributes
from opentelemetry.trace import SpanContext, SpanKind, Status, StatusCode, TraceFlags

from common.errors import ExportError
from common.models import InstrumentKind, InstrumentSnapshot, Span, SpanStatus, TelemetryBatch

logger = logging.getLogger(__name__)

SCOPE_NAME = "hello_otel"


@runtime_checkable
class SignalExporter(Protocol):
    """Delivers telemetry batches to a destination."""

    def export(self, batch: TelemetryBatch, timeout: float) -> None:
        """Deliver ``batch`` within ``timeout`` seconds or raise ``ExportError``."""
        ...

    def shutdown(self) -> None:
        """Release the exporter's connection."""
        ...


class InMemoryExporter:
    """Keep exported batches in memory for local inspection and tests."""

    def __init__(self, max_batches: int = 1000):
        self.batches: deque[TelemetryBatch] = deque(maxlen=max_batches)
        self._lock = threading.Lock()
        self.shut_down = False

    def export(self, batch: TelemetryBatch, timeout: float) -> None:
        """Store a batch in memory."""
        with self._lock:
            self.batches.append(batch)

    def get_spans(self) -> list[Span]:
        """All exported spans, oldest first."""
        with self._lock:
            return [span for batch in self.batches for span in batch.spans]

    def get_trace(self, trace_id: str) -> list[Span]:
        with self._lock:
            return [s for batch in self.batches for s in batch.spans if s.trace_id == trace_id]

    def latest_metrics(self) -> list[InstrumentSnapshot]:
        """Metrics from the most recent batch that carried any."""
        with self._lock:
            for batch in reversed(self.batches):
                if batch.metrics:
                    return list(batch.metrics)
        return []

    def clear(self) -> None:
        with self._lock:
            self.batches.clear()

    def shutdown(self) -> None:
        self.shut_down = True


class ConsoleExporter:
    """Log every span and instrument as one JSON line."""

    def __init__(self, log_level: int = logging.INFO):
        self._log_level = log_level

    def export(self, batch: TelemetryBatch, timeout: float) -> None:
        for span in batch.spans:
            logger.log(self._log_level, json.dumps(span.model_dump(mode="json"), default=str))
        for snapshot in batch.metrics:
            logger.log(self._log_level, json.dumps(snapshot.model_dump(mode="json"), default=str))

    def shutdown(self) -> None:
        """Nothing to release; output goes through logging."""


def _datetime_to_ns(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1_000_000_000)


_STATUS_CODES = {
    SpanStatus.UNSET: StatusCode.UNSET,
    SpanStatus.OK: StatusCode.OK,
    SpanStatus.ERROR: StatusCode.ERROR,
    SpanStatus.CANCELLED: StatusCode.ERROR,
}


def to_readable_span(span: Span, resource: Resource, scope: InstrumentationScope) -> ReadableSpan:
    """Convert a finished span into the OpenTelemetry SDK representation."""
    context = SpanContext(
        trace_id=int(span.trace_id, 16),
        span_id=int(span.span_id, 16),
        is_remote=False,
        trace_flags=TraceFlags(TraceFlags.SAMPLED),
    )
    parent: Optional[SpanContext] = None
    if span.parent_span_id:
        parent = SpanContext(
            trace_id=int(span.trace_id, 16),
            span_id=int(span.parent_span_id, 16),
            is_remote=True,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )

    description = "cancelled" if span.status == SpanStatus.CANCELLED else None
    end_time = span.end_time or span.start_time
    return ReadableSpan(
        name=span.name,
        context=context,
        parent=parent,
        resource=resource,
        attributes=dict(span.attributes),
        kind=SpanKind.SERVER,
        status=Status(_STATUS_CODES[span.status], description),
        start_time=_datetime_to_ns(span.start_time),
        end_time=_datetime_to_ns(end_time),
        instrumentation_scope=scope,
    )


def to_metric(snapshot: InstrumentSnapshot) -> Metric:
    """Convert an instrument snapshot into a cumulative OpenTelemetry metric."""
    data: Any
    if snapshot.kind == InstrumentKind.COUNTER:
        data = Sum(
            data_points=[
                NumberDataPoint(
                    attributes=dict(series.attributes),
                    start_time_unix_nano=snapshot.start_time_ns,
                    time_unix_nano=snapshot.time_ns,
                    value=series.value,
                )
                for series in snapshot.series
            ],
            aggregation_temporality=AggregationTemporality.CUMULATIVE,
            is_monotonic=True,
        )
    else:
        data = Histogram(
            data_points=[
                HistogramDataPoint(
                    attributes=dict(series.attributes),
                    start_time_unix_nano=snapshot.start_time_ns,
                    time_unix_nano=snapshot.time_ns,
                    count=series.count,
                    sum=series.sum,
                    bucket_counts=list(series.bucket_counts),
                    explicit_bounds=list(series.explicit_bounds),
                    # Prometheus histograms keep no extremes; None leaves them unset in OTLP
                    min=None,  # type: ignore[arg-type]
                    max=None,  # type: ignore[arg-type]
                )
                for series in snapshot.series
            ],
            aggregation_temporality=AggregationTemporality.CUMULATIVE,
        )
    return Metric(
        name=snapshot.name,
        description=snapshot.description,
        unit=snapshot.unit,
        data=data,
    )


class OTLPExporter:
    """Send spans and metrics to an OpenTelemetry collector over OTLP.

    Each signal goes out as a single request bounded by the caller's
    timeout. The SDK exporters retry on their own schedule, so the encoded
    requests are sent directly and the provider's retry policy stays the
    only retry layer.

    Args:
        endpoint: Collector URL, e.g. ``http://otel-collector:4317``
        protocol: ``grpc`` or ``http/protobuf``
        service_name: ``service.name`` resource attribute
        service_version: ``service.version`` resource attribute
    """

    def __init__(
        self,
        endpoint: str,
        protocol: str = "grpc",
        service_name: str = "hello-otel",
        service_version: str = "0.1.0",
    ):
        self.endpoint = endpoint
        self.protocol = protocol
        self.resource = Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: service_name,
                ResourceAttributes.SERVICE_VERSION: service_version,
            }
        )
        self.scope = InstrumentationScope(SCOPE_NAME, service_version)

        parsed = urlparse(endpoint)
        if protocol == "grpc":
            target = parsed.netloc or endpoint
            if parsed.scheme == "https":
                self._channel = grpc.secure_channel(target, grpc.ssl_channel_credentials())
            else:
                self._channel = grpc.insecure_channel(target)
            self._trace_stub = TraceServiceStub(self._channel)
            self._metrics_stub = MetricsServiceStub(self._channel)
        elif protocol == "http/protobuf":
            base = endpoint.rstrip("/")
            self._urls = {"traces": f"{base}/v1/traces", "metrics": f"{base}/v1/metrics"}
            self._session = requests.Session()
            self._session.headers.update({"Content-Type": "application/x-protobuf"})
        else:
            raise ValueError(f"Unsupported OTLP protocol: {protocol}")

        logger.info(f"✅ OTLP exporter configured: {endpoint} ({protocol})")

    def export(self, batch: TelemetryBatch, timeout: float) -> None:
        """Export spans, then the metrics snapshot, within ``timeout`` seconds.

        Raises:
            ExportError: If the collector rejects or cannot receive either signal
        """
        deadline = time.monotonic() + timeout
        if batch.spans:
            readable = [to_readable_span(s, self.resource, self.scope) for s in batch.spans]
            self._send("traces", encode_spans(readable), deadline - time.monotonic())

        metrics = [to_metric(m) for m in batch.metrics if m.series]
        if metrics:
            metrics_data = MetricsData(
                resource_metrics=[
                    ResourceMetrics(
                        resource=self.resource,
                        scope_metrics=[
                            ScopeMetrics(scope=self.scope, metrics=metrics, schema_url="")
                        ],
                        schema_url="",
                    )
                ]
            )
            self._send("metrics", encode_metrics(metrics_data), deadline - time.monotonic())

    def _send(self, signal: str, request: Message, timeout: float) -> None:
        if timeout <= 0:
            raise ExportError(f"OTLP {signal} export to {self.endpoint} timed out")

        if self.protocol == "grpc":
            stub = self._trace_stub if signal == "traces" else self._metrics_stub
            try:
                stub.Export(request, timeout=timeout)
            except grpc.RpcError as e:
                status = e.code().name if isinstance(e, grpc.Call) else e
                raise ExportError(
                    f"OTLP {signal} export to {self.endpoint} failed: {status}"
                ) from e
            return

        try:
            response = self._session.post(
                self._urls[signal], data=request.SerializeToString(), timeout=timeout
            )
        except requests.RequestException as e:
            raise ExportError(f"OTLP {signal} export to {self.endpoint} failed: {e}") from e
        if not response.ok:
            raise ExportError(
                f"OTLP {signal} export to {self.endpoint} rejected: HTTP {response.status_code}"
            )

    def shutdown(self) -> None:
        """Close the gRPC channel or HTTP session."""
        if self.protocol == "grpc":
            self._channel.close()
        else:
            self._session.close()
