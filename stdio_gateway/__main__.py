"""Run the gateway.

Usage:
    python -m stdio_gateway [--config FILE] [--port PORT] [--fail-fast]

Every configured backend is started as a child process and exposed under
``/<name>/`` on the public port. SIGINT/SIGTERM stop the listener and the
children, in that order.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from stdio_gateway.config import GatewayConfig
from stdio_gateway.errors import ConfigError
from stdio_gateway.gateway import Gateway

log = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stdio-gateway",
        description="Expose stdio protocol servers over one HTTP/SSE port",
    )
    parser.add_argument(
        "--config", type=Path, default=None,
        help="YAML file with a 'servers' mapping (default: $GATEWAY_CONFIG)",
    )
    parser.add_argument(
        "--env-file", type=Path, default=None,
        help="Load environment variables from this .env file first",
    )
    parser.add_argument("--host", default=None, help="Listen address (default: $HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: $PORT or 8000)")
    parser.add_argument(
        "--fail-fast", action="store_true", default=None,
        help="Exit non-zero if any backend fails to start or become ready",
    )
    parser.add_argument(
        "--access-log", action="store_true", default=None,
        help="Log every request handled by the listener",
    )
    parser.add_argument(
        "--log-level", default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (default: $LOG_LEVEL or INFO)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s [gateway] %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = GatewayConfig.from_env(
            env_path=args.env_file, config_path=args.config
        ).with_overrides(
            host=args.host,
            port=args.port,
            fail_fast=args.fail_fast,
            access_log=args.access_log,
        )
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        sys.exit(2)

    for server in config.servers:
        log.info("Backend '%s' on port %d: %s", server.name, server.port, server.command_line)

    sys.exit(asyncio.run(Gateway(config).run()))


if __name__ == "__main__":
    main()
