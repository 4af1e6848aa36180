"""
knockrd - entry points.

This module wires the application context to its runtimes:
- create_stream_handler(): synchronous handler(event, context) for
  Lambda-style stream triggers (DynamoDB Streams)
- main(): operator commands (provision the table, replay a stream event)

Usage:
    python -m netaccess.knockrd_server.main provision
    python -m netaccess.knockrd_server.main replay event.json

Configuration is entirely via environment variables.
See config.py for all available settings.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Callable, Mapping, Optional

import json_log_formatter

from .app import App
from .config import ServerConfig
from .errors import KnockrdError

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
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_stream_handler(
    config: ServerConfig,
    app: Optional[App] = None,
) -> Callable[[Mapping[str, Any], Any], dict]:
    """Create a synchronous stream handler.

    The returned callable owns one event loop and one App for its
    lifetime; the App connects on the first invocation. Raising from the
    handler reports the batch as failed so the stream redelivers it.

    Args:
        config: Server configuration
        app: Optional pre-built application context

    Returns:
        handler(event, context) -> summary dict
    """
    loop = asyncio.new_event_loop()
    context = app or App(config)

    async def handle(event: Mapping[str, Any]) -> dict:
        if not context.is_connected:
            await context.connect()
        result = await context.stream_handler.handle(event)
        return {
            "v4": len(result.events.v4),
            "v6": len(result.events.v6),
            "applied": result.applied,
            "skipped": result.skipped,
        }

    def handler(event: Mapping[str, Any], lambda_context: Any = None) -> dict:
        return loop.run_until_complete(handle(event))

    return handler


async def _provision(config: ServerConfig) -> None:
    async with App(config):
        logger.info(f"table {config.store.table_name} is ready")


async def _replay(config: ServerConfig, path: str) -> None:
    with open(path) as f:
        event = json.load(f)
    async with App(config) as app:
        result = await app.stream_handler.handle(event)
        logger.info(
            "Replayed stream event",
            extra={"applied": result.applied, "skipped": result.skipped},
        )


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="knockrd", description=__doc__.split("\n")[1])
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("provision", help="create the access table if missing")
    replay = sub.add_parser("replay", help="apply a DynamoDB stream event read from a file")
    replay.add_argument("path", help="JSON file holding {\"Records\": [...]}")
    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = ServerConfig.from_env()
    except (KnockrdError, ValueError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    try:
        if args.command == "provision":
            asyncio.run(_provision(config))
        else:
            asyncio.run(_replay(config, args.path))
    except KnockrdError as e:
        logger.error(f"{args.command} failed: {e}", extra={"code": e.code})
        sys.exit(1)


if __name__ == "__main__":
    main()
