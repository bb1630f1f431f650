"""Telemetry models: spans, instrument snapshots and export batches."""

from datetime import datetime, timezone
from typing import Any, Optional

from opentelemetry.sdk.trace.id_generator import RandomIdGenerator
from pydantic import BaseModel, ConfigDict, Field, model_validator

from common.errors import SpanAlreadyFinished

from .enums import InstrumentKind, SpanStatus

_id_generator = RandomIdGenerator()


def new_trace_id() -> str:
    """Generate a random 128-bit trace ID as 32 hex characters."""
    return format(_id_generator.generate_trace_id(), "032x")


def new_span_id() -> str:
    """Generate a random 64-bit span ID as 16 hex characters."""
    return format(_id_generator.generate_span_id(), "016x")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Span(BaseModel):
    """One request's execution.

    Spans are immutable: ``finish()`` returns the closed copy. Only finished
    spans are accepted for export.
    """

    model_config = ConfigDict(frozen=True)

    trace_id: str = Field(default_factory=new_trace_id, min_length=32, max_length=32)
    span_id: str = Field(default_factory=new_span_id, min_length=16, max_length=16)
    parent_span_id: Optional[str] = None
    name: str
    kind: str = "server"
    start_time: datetime = Field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    status: SpanStatus = SpanStatus.UNSET
    attributes: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_timestamps(self) -> "Span":
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("span end_time precedes start_time")
        return self

    @property
    def finished(self) -> bool:
        return self.end_time is not None

    @property
    def duration_ms(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds() * 1000

    def finish(
        self,
        status: SpanStatus,
        attributes: Optional[dict[str, Any]] = None,
        end_time: Optional[datetime] = None,
    ) -> "Span":
        """Close the span.

        Args:
            status: Final outcome, must not be ``UNSET``
            attributes: Extra attributes merged over the existing ones
            end_time: Defaults to now; clamped so it never precedes start_time

        Returns:
            The finished copy of this span
        """
        if self.finished:
            raise SpanAlreadyFinished(f"Span {self.span_id} ({self.name}) already finished")
        if status == SpanStatus.UNSET:
            raise ValueError("a finished span needs a final status")

        end = end_time or utcnow()
        if end < self.start_time:
            end = self.start_time

        return self.model_copy(
            update={
                "end_time": end,
                "status": status,
                "attributes": {**self.attributes, **(attributes or {})},
            }
        )


class SeriesSnapshot(BaseModel):
    """Point-in-time value of one attribute combination of an instrument."""

    model_config = ConfigDict(frozen=True)

    attributes: dict[str, str] = Field(default_factory=dict)
    # Counter
    value: float = 0.0
    # Histogram
    count: int = 0
    sum: float = 0.0
    bucket_counts: list[int] = Field(default_factory=list)
    explicit_bounds: list[float] = Field(default_factory=list)


class InstrumentSnapshot(BaseModel):
    """Point-in-time copy of an instrument and all of its series."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: InstrumentKind
    unit: str = ""
    description: str = ""
    start_time_ns: int
    time_ns: int
    series: list[SeriesSnapshot] = Field(default_factory=list)


class TelemetryBatch(BaseModel):
    """Finished spans plus a metrics snapshot, handed to an exporter in one call."""

    model_config = ConfigDict(frozen=True)

    spans: list[Span] = Field(default_factory=list)
    metrics: list[InstrumentSnapshot] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.spans and not self.metrics
