"""Enumerations used across the service."""

from enum import Enum


class SpanStatus(str, Enum):
    """Outcome of a traced request."""

    UNSET = "unset"  # Span still open
    OK = "ok"
    ERROR = "error"
    CANCELLED = "cancelled"  # Cut off by the shutdown grace period


class InstrumentKind(str, Enum):
    """Supported metric instrument kinds."""

    COUNTER = "counter"
    HISTOGRAM = "histogram"


class ServerState(str, Enum):
    """Lifecycle states of the server runtime."""

    STARTING = "starting"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"
