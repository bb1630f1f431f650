"""Service configuration read from the environment."""

import logging
import os
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.errors import ConfigError

DEFAULT_SERVER_ADDR = "0.0.0.0:3000"
DEFAULT_OTLP_ENDPOINT = "http://otel-collector:4317"
DEFAULT_SERVICE_NAME = "hello-otel"
SERVICE_VERSION = "0.1.0"

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# Environment variable -> config field
ENV_FIELDS = {
    "SERVER_ADDR": "server_addr",
    "OTEL_EXPORTER_OTLP_ENDPOINT": "otlp_endpoint",
    "OTEL_EXPORTER_OTLP_PROTOCOL": "otlp_protocol",
    "OTEL_SERVICE_NAME": "service_name",
    "LOG_LEVEL": "log_level",
    "TELEMETRY_EXPORTER": "exporter",
    "TELEMETRY_FLUSH_INTERVAL": "flush_interval",
    "TELEMETRY_EXPORT_TIMEOUT": "export_timeout",
    "TELEMETRY_MAX_ATTEMPTS": "export_max_attempts",
    "SHUTDOWN_GRACE_PERIOD": "grace_period",
    "SHUTDOWN_FLUSH_TIMEOUT": "shutdown_flush_timeout",
}


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6host]:port``) into its parts.

    Raises:
        ValueError: If the address has no port or the port is out of range
    """
    host, sep, port_text = address.strip().rpartition(":")
    if not sep or not host:
        raise ValueError(f"expected host:port, got '{address}'")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in '{address}'") from None
    if not 0 <= port <= 65535:
        raise ValueError(f"port out of range in '{address}'")
    return host, port


class ServerConfig(BaseModel):
    """Immutable process configuration, created once at startup."""

    model_config = ConfigDict(frozen=True)

    server_addr: str = DEFAULT_SERVER_ADDR
    otlp_endpoint: str = DEFAULT_OTLP_ENDPOINT
    otlp_protocol: Literal["grpc", "http/protobuf"] = "grpc"
    service_name: str = DEFAULT_SERVICE_NAME
    log_level: str = "info"
    exporter: Literal["otlp", "console", "memory"] = "otlp"
    flush_interval: float = Field(default=5.0, gt=0)
    export_timeout: float = Field(default=10.0, gt=0)
    export_max_attempts: int = Field(default=5, ge=1)
    grace_period: float = Field(default=10.0, ge=0)
    shutdown_flush_timeout: float = Field(default=30.0, gt=0)

    @property
    def host(self) -> str:
        return parse_address(self.server_addr)[0]

    @property
    def port(self) -> int:
        return parse_address(self.server_addr)[1]

    @property
    def logging_level(self) -> int:
        return LOG_LEVELS[self.log_level]


def load_config(env: Optional[Mapping[str, str]] = None) -> ServerConfig:
    """Build the configuration from environment variables.

    Args:
        env: Mapping to read instead of ``os.environ``

    Raises:
        ConfigError: If any variable holds an invalid value
    """
    source = os.environ if env is None else env
    values: dict[str, Any] = {}
    for var, field_name in ENV_FIELDS.items():
        raw = source.get(var)
        if raw is not None and raw.strip():
            values[field_name] = raw.strip()

    if "log_level" in values:
        values["log_level"] = values["log_level"].lower()
        if values["log_level"] not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}")

    try:
        config = ServerConfig(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    try:
        parse_address(config.server_addr)
    except ValueError as e:
        raise ConfigError(f"SERVER_ADDR: {e}") from e

    return config
