"""OpenTelemetry export pipeline for the service."""

import logging

from config import SERVICE_VERSION, ServerConfig

from .exporters import ConsoleExporter, InMemoryExporter, OTLPExporter, SignalExporter
from .logs import LogExport, create_log_exporter, init_log_export
from .provider import RetryPolicy, RetryState, TelemetryProvider
from .registry import DEFAULT_BUCKETS, Instrument, InstrumentRegistry

logger = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_BUCKETS",
    "ConsoleExporter",
    "InMemoryExporter",
    "Instrument",
    "InstrumentRegistry",
    "LogExport",
    "OTLPExporter",
    "RetryPolicy",
    "RetryState",
    "SignalExporter",
    "TelemetryProvider",
    "create_exporter",
    "create_log_exporter",
    "init_log_export",
    "init_telemetry",
]


def create_exporter(config: ServerConfig) -> SignalExporter:
    """Build the exporter selected by ``TELEMETRY_EXPORTER``."""
    if config.exporter == "console":
        logger.info("📊 Console telemetry enabled")
        return ConsoleExporter()
    if config.exporter == "memory":
        logger.info("📊 In-memory telemetry enabled")
        return InMemoryExporter()
    return OTLPExporter(
        endpoint=config.otlp_endpoint,
        protocol=config.otlp_protocol,
        service_name=config.service_name,
        service_version=SERVICE_VERSION,
    )


def init_telemetry(config: ServerConfig) -> TelemetryProvider:
    """Create the telemetry provider for this process.

    The provider is returned unstarted; the app lifespan starts the
    background flusher and shuts it down.

    Args:
        config: Process configuration
    """
    provider = TelemetryProvider(
        exporter=create_exporter(config),
        retry_policy=RetryPolicy(max_attempts=config.export_max_attempts),
        flush_interval=config.flush_interval,
        export_timeout=config.export_timeout,
    )
    logger.info(f"✅ Telemetry initialized for service: {config.service_name}")
    return provider
