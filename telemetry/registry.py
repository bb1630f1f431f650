"""Process-scoped metric instrument registry backed by prometheus_client."""

import logging
import math
import threading
import time
from typing import Optional, Union

from prometheus_client import CollectorRegistry, Counter, Histogram
from prometheus_client.exposition import choose_encoder

from common.errors import InstrumentKindMismatch
from common.models import InstrumentKind, InstrumentSnapshot, SeriesSnapshot

logger = logging.getLogger(__name__)

# Same explicit boundaries as the OpenTelemetry SDK default histogram aggregation
DEFAULT_BUCKETS: tuple[float, ...] = (
    0.0, 5.0, 10.0, 25.0, 50.0, 75.0, 100.0, 250.0, 500.0, 750.0,
    1000.0, 2500.0, 5000.0, 7500.0, 10000.0,
)  # fmt: skip

SeriesKey = tuple[tuple[str, str], ...]


def _series_key(attributes: Optional[dict[str, str]]) -> SeriesKey:
    if not attributes:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in attributes.items()))


class Instrument:
    """A named counter or histogram with one series per attribute set.

    The label names are fixed by the first update; later updates must use the
    same attribute keys. prometheus_client guards every child with its own
    lock, so concurrent updates are never lost.
    """

    def __init__(
        self,
        name: str,
        kind: InstrumentKind,
        registry: CollectorRegistry,
        label_names: tuple[str, ...] = (),
        unit: str = "",
        description: str = "",
        buckets: tuple[float, ...] = DEFAULT_BUCKETS,
    ):
        self.name = name
        self.kind = kind
        self.unit = unit
        self.description = description
        self.label_names = label_names
        self.buckets = buckets
        self.start_time_ns = time.time_ns()
        documentation = description or name

        self.metric: Union[Counter, Histogram]
        if kind == InstrumentKind.COUNTER:
            self.metric = Counter(name, documentation, label_names, registry=registry)
        else:
            self.metric = Histogram(
                name, documentation, label_names, buckets=buckets, registry=registry
            )

    def record(self, value: float, attributes: Optional[dict[str, str]] = None) -> None:
        """Increment a counter series or observe a histogram value.

        Raises:
            ValueError: On a negative counter increment or a different label set
        """
        attributes = attributes or {}
        if tuple(sorted(attributes)) != self.label_names:
            raise ValueError(
                f"Instrument '{self.name}' takes labels {list(self.label_names)}, "
                f"got {sorted(attributes)}"
            )
        target = self.metric.labels(**attributes) if self.label_names else self.metric
        if self.kind == InstrumentKind.COUNTER:
            if value < 0:
                raise ValueError(f"Counter '{self.name}' cannot be decremented ({value})")
            target.inc(value)  # type: ignore[union-attr]
        else:
            target.observe(value)  # type: ignore[union-attr]

    def snapshot(self) -> InstrumentSnapshot:
        """Read every series back out of the collector samples."""
        totals: dict[SeriesKey, float] = {}
        counts: dict[SeriesKey, int] = {}
        sums: dict[SeriesKey, float] = {}
        cumulative: dict[SeriesKey, list[tuple[float, float]]] = {}

        for family in self.metric.collect():
            for sample in family.samples:
                suffix = sample.name[len(self.name):]
                labels = {k: v for k, v in sample.labels.items() if k != "le"}
                key = _series_key(labels)
                if suffix == "_total":
                    totals[key] = sample.value
                elif suffix == "_count":
                    counts[key] = int(sample.value)
                elif suffix == "_sum":
                    sums[key] = sample.value
                elif suffix == "_bucket":
                    le = float(sample.labels["le"])
                    cumulative.setdefault(key, []).append((le, sample.value))

        if self.kind == InstrumentKind.COUNTER:
            series = [
                SeriesSnapshot(attributes=dict(key), value=total)
                for key, total in totals.items()
            ]
        else:
            series = []
            for key, buckets in cumulative.items():
                bucket_counts, previous = [], 0.0
                for _, running in buckets:
                    bucket_counts.append(int(running - previous))
                    previous = running
                series.append(
                    SeriesSnapshot(
                        attributes=dict(key),
                        count=counts.get(key, 0),
                        sum=sums.get(key, 0.0),
                        bucket_counts=bucket_counts,
                        explicit_bounds=[le for le, _ in buckets if not math.isinf(le)],
                    )
                )

        return InstrumentSnapshot(
            name=self.name,
            kind=self.kind,
            unit=self.unit,
            description=self.description,
            start_time_ns=self.start_time_ns,
            time_ns=time.time_ns(),
            series=series,
        )


class InstrumentRegistry:
    """Owns every instrument in the process, keyed by name.

    Instruments are created on first use. A name keeps the kind it was
    created with for the lifetime of the registry. Each registry has its own
    ``CollectorRegistry`` so independent providers never collide.
    """

    def __init__(self) -> None:
        self.collector_registry = CollectorRegistry()
        self._instruments: dict[str, Instrument] = {}
        self._lock = threading.Lock()

    def get_or_create(
        self,
        name: str,
        kind: InstrumentKind,
        unit: str = "",
        description: str = "",
        label_names: tuple[str, ...] = (),
    ) -> Instrument:
        """Return the named instrument, creating it with ``kind`` if missing.

        Raises:
            InstrumentKindMismatch: If the name is registered with another kind
        """
        kind = InstrumentKind(kind)
        with self._lock:
            instrument = self._instruments.get(name)
            if instrument is None:
                instrument = Instrument(
                    name,
                    kind,
                    self.collector_registry,
                    label_names=tuple(sorted(label_names)),
                    unit=unit,
                    description=description,
                )
                self._instruments[name] = instrument
                logger.debug(f"Created {kind.value} instrument '{name}'")
        if instrument.kind != kind:
            raise InstrumentKindMismatch(name, instrument.kind.value, kind.value)
        return instrument

    def record(
        self,
        name: str,
        kind: InstrumentKind,
        value: float,
        attributes: Optional[dict[str, str]] = None,
        unit: str = "",
        description: str = "",
    ) -> None:
        """Apply one update to the named instrument."""
        instrument = self.get_or_create(
            name, kind, unit=unit, description=description, label_names=tuple(attributes or ())
        )
        instrument.record(value, attributes)

    def get(self, name: str) -> Optional[Instrument]:
        with self._lock:
            return self._instruments.get(name)

    def snapshot(self) -> list[InstrumentSnapshot]:
        """Snapshot every instrument, ordered by name."""
        with self._lock:
            instruments = sorted(self._instruments.values(), key=lambda i: i.name)
        return [instrument.snapshot() for instrument in instruments]

    def render_exposition(self, accept: str = "") -> tuple[bytes, str]:
        """Encode every instrument for a Prometheus scrape.

        Args:
            accept: The scraper's ``Accept`` header; OpenMetrics is used when
                it asks for it, the classic text format otherwise

        Returns:
            The encoded body and its content type
        """
        encoder, content_type = choose_encoder(accept)
        return encoder(self.collector_registry), content_type
