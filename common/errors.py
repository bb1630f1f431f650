"""Exception types used across the service."""

from typing import Optional


class ServiceError(Exception):
    """Base exception for all service errors."""


class ConfigError(ServiceError):
    """Raised when the environment holds an invalid configuration value."""


class BindError(ServiceError):
    """Raised when the listen address cannot be bound. Fatal at startup."""

    def __init__(self, address: str, reason: str):
        super().__init__(f"Cannot bind {address}: {reason}")
        self.address = address
        self.reason = reason


class InstrumentKindMismatch(ServiceError):
    """Raised when a metric name is reused with a different instrument kind."""

    def __init__(self, name: str, existing_kind: str, requested_kind: str):
        super().__init__(
            f"Instrument '{name}' is a {existing_kind}, cannot record it as a {requested_kind}"
        )
        self.name = name
        self.existing_kind = existing_kind
        self.requested_kind = requested_kind


class SpanAlreadyFinished(ServiceError):
    """Raised when finishing a span that has already been closed."""


class ExportError(ServiceError):
    """Raised by exporters when a batch could not be delivered."""


class TelemetryExportFailed(ServiceError):
    """Reported (not raised) when a batch is dropped after all export attempts."""

    def __init__(
        self,
        dropped_spans: int,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(
            f"Dropped {dropped_spans} span(s) after {attempts} export attempt(s): {last_error}"
        )
        self.dropped_spans = dropped_spans
        self.attempts = attempts
        self.last_error = last_error


class NotFound(ServiceError):
    """No route matches the request method and path."""

    def __init__(self, method: str, path: str):
        super().__init__(f"No route for {method} {path}")
        self.method = method
        self.path = path
