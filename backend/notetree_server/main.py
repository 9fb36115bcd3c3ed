"""
Notetree Server - Main entry point.

Starts the HTTP API over the configured document store.

Usage:
    python -m backend.notetree_server.main

Configuration is entirely via environment variables.
See config.py (store, tree, logging) and api/settings.py (HTTP) for all
available settings.

Invariants:
    - The store is connected before the first request is served
    - Shutdown closes the store after in-flight requests finish
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api import Settings, create_app
from .config import ServerConfig

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    settings = Settings()
    app = create_app(config, settings=settings)

    logger.info("Starting Notetree server", extra={"host": settings.host, "port": settings.port})
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
