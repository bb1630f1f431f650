"""Pydantic models for telemetry signals.

Spans, instrument snapshots and export batches flow between the
instrumentation middleware, the telemetry provider and the exporters.
"""

from .enums import InstrumentKind, ServerState, SpanStatus
from .telemetry import (
    InstrumentSnapshot,
    SeriesSnapshot,
    Span,
    TelemetryBatch,
    new_span_id,
    new_trace_id,
)

__all__ = [
    # Enums
    "InstrumentKind",
    "ServerState",
    "SpanStatus",
    # Telemetry models
    "InstrumentSnapshot",
    "SeriesSnapshot",
    "Span",
    "TelemetryBatch",
    # Helpers
    "new_span_id",
    "new_trace_id",
]
