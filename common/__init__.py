"""Common shared modules across the service."""

from .errors import (
    BindError,
    ConfigError,
    ExportError,
    InstrumentKindMismatch,
    NotFound,
    ServiceError,
    SpanAlreadyFinished,
    TelemetryExportFailed,
)

__all__ = [
    "BindError",
    "ConfigError",
    "ExportError",
    "InstrumentKindMismatch",
    "NotFound",
    "ServiceError",
    "SpanAlreadyFinished",
    "TelemetryExportFailed",
]
