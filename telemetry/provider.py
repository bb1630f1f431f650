"""Telemetry provider: span queue, metric registry and export lifecycle."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from common.errors import ExportError, TelemetryExportFailed
from common.models import InstrumentKind, InstrumentSnapshot, Span, TelemetryBatch

from .exporters import SignalExporter
from .registry import InstrumentRegistry

logger = logging.getLogger(__name__)

SPANS_EXPORTED = "telemetry_spans_exported"
SPANS_DROPPED = "telemetry_spans_dropped"

FailureListener = Callable[[TelemetryExportFailed], None]


def _has_data(snapshot: InstrumentSnapshot) -> bool:
    # Unlabelled counters always expose a series, even at zero
    return any(s.value or s.count for s in snapshot.series)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for a single flush."""

    max_attempts: int = 5
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")


class RetryState:
    """Attempt counter and next backoff delay for one flush."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self.attempt = 0
        self.next_delay = policy.initial_delay

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_attempts

    def record_attempt(self) -> None:
        self.attempt += 1

    def advance(self) -> float:
        """Return the delay before the next attempt and grow the following one."""
        delay = self.next_delay
        self.next_delay = min(self.next_delay * self.policy.multiplier, self.policy.max_delay)
        return delay


class TelemetryProvider:
    """Owns the exporter and guarantees delivery-or-explicit-drop for finished spans.

    Requests hand finished spans to ``record_span`` without blocking on the
    network. A background thread drains the queue every ``flush_interval``
    seconds; ``shutdown`` performs the final drain.

    Args:
        exporter: Destination for batches
        retry_policy: Backoff used by every flush
        flush_interval: Seconds between background flushes
        export_timeout: Deadline for background flushes, in seconds
        max_queue_size: Spans held before new ones are dropped
        sleep: Backoff sleep function, replaceable in tests
    """

    def __init__(
        self,
        exporter: SignalExporter,
        retry_policy: Optional[RetryPolicy] = None,
        flush_interval: float = 5.0,
        export_timeout: float = 10.0,
        max_queue_size: int = 2048,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.exporter = exporter
        self.retry_policy = retry_policy or RetryPolicy()
        self.flush_interval = flush_interval
        self.export_timeout = export_timeout
        self.max_queue_size = max_queue_size
        self.registry = InstrumentRegistry()

        self._sleep = sleep
        self._queue: list[Span] = []
        self._queue_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._closed = False
        self._shutdown_complete = False
        self._listeners: list[FailureListener] = []

        # Created up front so /metrics always lists them
        self.registry.get_or_create(SPANS_EXPORTED, InstrumentKind.COUNTER, unit="1")
        self.registry.get_or_create(SPANS_DROPPED, InstrumentKind.COUNTER, unit="1")

    # -- Recording --

    def record_span(self, span: Span) -> None:
        """Queue a finished span for export.

        Raises:
            ValueError: If the span has not been finished
        """
        if not span.finished:
            raise ValueError(f"Span {span.span_id} ({span.name}) is not finished")

        with self._queue_lock:
            if not self._closed and len(self._queue) < self.max_queue_size:
                self._queue.append(span)
                return
            reason = "provider shut down" if self._closed else "export queue full"

        self._count_dropped(1)
        logger.warning(f"⚠️ Dropped span {span.name} ({span.span_id}): {reason}")

    def record_metric(
        self,
        name: str,
        kind: InstrumentKind,
        value: float,
        attributes: Optional[dict[str, str]] = None,
        unit: str = "",
        description: str = "",
    ) -> None:
        """Increment a counter or observe a histogram, creating it on first use.

        Raises:
            InstrumentKindMismatch: If ``name`` already exists with another kind
        """
        self.registry.record(
            name, kind, value, attributes=attributes, unit=unit, description=description
        )

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Register a callback receiving every ``TelemetryExportFailed`` event."""
        self._listeners.append(listener)

    @property
    def pending_spans(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown_complete

    def snapshot(self) -> list[InstrumentSnapshot]:
        return self.registry.snapshot()

    def render_exposition(self, accept: str = "") -> tuple[bytes, str]:
        """Current metrics in the Prometheus format the scraper accepts."""
        return self.registry.render_exposition(accept)

    # -- Export --

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Export everything queued so far before ``timeout`` seconds elapse.

        Failed attempts are retried with bounded exponential backoff. When
        every attempt fails, or the deadline passes, the batch is dropped and
        one ``TelemetryExportFailed`` event is reported. Never raises.

        Returns:
            True if the batch was exported (or there was nothing to export)
        """
        timeout = self.export_timeout if timeout is None else timeout
        return self._flush_until(time.monotonic() + timeout)

    def _flush_until(self, deadline: float) -> bool:
        if self._shutdown_complete:
            return True
        # Time spent waiting behind another flush counts against the deadline
        if not self._flush_lock.acquire(timeout=max(deadline - time.monotonic(), 0.0)):
            with self._queue_lock:
                spans, self._queue = self._queue, []
            if not spans:
                return True
            self._count_dropped(len(spans))
            self._report_failure(TelemetryExportFailed(len(spans), 0, TimeoutError()))
            return False

        try:
            with self._queue_lock:
                spans, self._queue = self._queue, []

            batch = TelemetryBatch(spans=spans, metrics=self.registry.snapshot())
            if not spans and not any(_has_data(m) for m in batch.metrics):
                return True

            retry = RetryState(self.retry_policy)
            last_error: Optional[BaseException] = None
            while not retry.exhausted:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                retry.record_attempt()
                try:
                    self.exporter.export(batch, remaining)
                except ExportError as e:
                    last_error = e
                    logger.debug(f"Export attempt {retry.attempt} failed: {e}")
                except Exception as e:
                    last_error = e
                    logger.warning(
                        f"⚠️ Export attempt {retry.attempt} raised: {e}", exc_info=True
                    )
                else:
                    if spans:
                        self.registry.record(SPANS_EXPORTED, InstrumentKind.COUNTER, len(spans))
                    logger.debug(f"Exported {len(spans)} span(s) in {retry.attempt} attempt(s)")
                    return True

                if retry.exhausted:
                    break
                delay = retry.advance()
                if time.monotonic() + delay >= deadline:
                    break
                self._sleep(delay)

            self._count_dropped(len(spans))
            self._report_failure(
                TelemetryExportFailed(len(spans), retry.attempt, last_error or TimeoutError())
            )
            return False
        finally:
            self._flush_lock.release()

    def _count_dropped(self, count: int) -> None:
        if count:
            self.registry.record(SPANS_DROPPED, InstrumentKind.COUNTER, count)

    def _report_failure(self, event: TelemetryExportFailed) -> None:
        logger.error(f"❌ Telemetry export failed: {event}")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Failure listener {listener!r} raised: {e}", exc_info=True)

    # -- Lifecycle --

    def start(self) -> None:
        """Start the background flusher thread."""
        if self._worker is not None or self._closed:
            return
        self._worker = threading.Thread(
            target=self._run, name="telemetry-flusher", daemon=True
        )
        self._worker.start()
        logger.info(f"📊 Telemetry flusher started (every {self.flush_interval}s)")

    def _run(self) -> None:
        while not self._stop.wait(self.flush_interval):
            self.flush(self.export_timeout)

    def shutdown(self, timeout: float = 30.0) -> bool:
        """Flush everything recorded so far, then release the exporter.

        Waiting for a background flush and the final flush share one
        ``timeout`` budget. Safe to call more than once; later calls return
        immediately.

        Returns:
            True if the final flush exported everything
        """
        with self._queue_lock:
            if self._closed:
                return True
            self._closed = True

        logger.info("🧹 Shutting down telemetry provider...")
        deadline = time.monotonic() + timeout
        self._stop.set()
        if self._worker is not None:
            # A flush already in progress finishes first; the flush lock serializes them
            self._worker.join(max(deadline - time.monotonic(), 0.0))

        flushed = self._flush_until(deadline)
        try:
            self.exporter.shutdown()
        except Exception as e:
            logger.warning(f"⚠️ Exporter shutdown failed: {e}")
        self._shutdown_complete = True
        outcome = "ok" if flushed else "failed"
        logger.info(f"✅ Telemetry provider shut down (final flush {outcome})")
        return flushed
