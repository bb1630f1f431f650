"""OTLP export of application log records.

Records logged through the standard ``logging`` module are batched by a
``LoggerProvider`` and sent to the same collector as spans and metrics.
"""

import logging
import warnings
from typing import Optional
from urllib.parse import urlparse

from opentelemetry.exporter.otlp.proto.grpc._log_exporter import (
    OTLPLogExporter as GrpcLogExporter,
)
from opentelemetry.exporter.otlp.proto.http._log_exporter import (
    OTLPLogExporter as HttpLogExporter,
)
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import (
    BatchLogRecordProcessor,
    InMemoryLogRecordExporter,
    LogRecordExporter,
)
from opentelemetry.sdk.resources import Resource
from opentelemetry.semconv.resource import ResourceAttributes

from config import SERVICE_VERSION, ServerConfig

logger = logging.getLogger(__name__)

# Loggers on the export path; exporting their records would feed back into it
EXPORT_PATH_LOGGERS = ("opentelemetry", "grpc", "urllib3")


class ExportPathFilter(logging.Filter):
    """Drop records emitted by the exporter libraries themselves."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not record.name.startswith(EXPORT_PATH_LOGGERS)


class LogExport:
    """A LoggerProvider plus the root-logger handler feeding it."""

    def __init__(self, provider: LoggerProvider, handler: logging.Handler):
        self.provider = provider
        self.handler = handler

    def force_flush(self, timeout: float = 5.0) -> bool:
        return self.provider.force_flush(timeout_millis=int(timeout * 1000))

    def shutdown(self) -> None:
        """Detach from logging, then flush and close the exporter."""
        logging.getLogger().removeHandler(self.handler)
        self.provider.shutdown()
        logger.info("✅ Log export shut down")


def create_log_exporter(config: ServerConfig) -> Optional[LogRecordExporter]:
    """Build the log exporter matching ``TELEMETRY_EXPORTER``.

    Console mode already writes logs to stderr, so it exports nothing.
    """
    if config.exporter == "console":
        return None
    if config.exporter == "memory":
        return InMemoryLogRecordExporter()
    if config.otlp_protocol == "grpc":
        insecure = urlparse(config.otlp_endpoint).scheme != "https"
        return GrpcLogExporter(
            endpoint=config.otlp_endpoint, insecure=insecure, timeout=config.export_timeout
        )
    base = config.otlp_endpoint.rstrip("/")
    return HttpLogExporter(endpoint=f"{base}/v1/logs", timeout=config.export_timeout)


def init_log_export(
    config: ServerConfig, exporter: Optional[LogRecordExporter] = None
) -> Optional[LogExport]:
    """Attach an OTLP log handler to the root logger.

    Args:
        config: Process configuration
        exporter: Overrides the exporter chosen from ``config``

    Returns:
        The running log export, or None when logs are not exported
    """
    exporter = exporter or create_log_exporter(config)
    if exporter is None:
        return None

    provider = LoggerProvider(
        resource=Resource.create(
            {
                ResourceAttributes.SERVICE_NAME: config.service_name,
                ResourceAttributes.SERVICE_VERSION: SERVICE_VERSION,
            }
        )
    )
    provider.add_log_record_processor(BatchLogRecordProcessor(exporter))

    with warnings.catch_warnings():
        # The SDK handler is marked deprecated in favour of a separate package
        warnings.simplefilter("ignore", DeprecationWarning)
        handler = LoggingHandler(level=config.logging_level, logger_provider=provider)
    handler.addFilter(ExportPathFilter())
    logging.getLogger().addHandler(handler)

    logger.info(f"📊 Log export enabled ({config.exporter})")
    return LogExport(provider, handler)
