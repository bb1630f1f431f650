#!/usr/bin/env python3
"""Main entry point for the hello-otel HTTP service."""

import argparse
import logging
import sys
from typing import Optional

from dotenv import load_dotenv

from api.runtime import EXIT_STARTUP_FAILURE, ServerRuntime
from api.server import create_app
from common.errors import ConfigError
from config import ServerConfig, load_config
from telemetry import init_log_export

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that are too chatty at the service's level
QUIET_LOGGERS = ("grpc", "urllib3", "opentelemetry.exporter")

logger = logging.getLogger(__name__)


def configure_logging(config: ServerConfig) -> None:
    """Configure root logging at the configured verbosity."""
    logging.basicConfig(level=config.logging_level, format=LOG_FORMAT, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, config.logging_level))


def main(argv: Optional[list[str]] = None) -> int:
    """Run the HTTP server and return its exit code."""
    parser = argparse.ArgumentParser(description="hello-otel HTTP service")
    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        help="Optional dotenv file loaded before reading the environment (default: .env)",
    )
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)

    try:
        config = load_config()
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error(f"❌ {e}")
        return EXIT_STARTUP_FAILURE

    configure_logging(config)
    logger.info("Starting hello-otel...")
    logger.info(f"Listen address: {config.server_addr}")
    logger.info(f"Collector endpoint: {config.otlp_endpoint} ({config.otlp_protocol})")

    log_export = init_log_export(config)
    app = create_app(config, log_export=log_export)
    return ServerRuntime(config, app).run()


if __name__ == "__main__":
    sys.exit(main())
