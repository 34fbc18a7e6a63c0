#!/usr/bin/env python
"""MCP Orchestrator - Command Line Entry Point.

Inspect configured tool servers and try out request routing.

Usage:
    # Connect to configured servers and print their status
    python -m mcp_orchestrator.main status

    # Show which servers and tools a message would be routed to
    python -m mcp_orchestrator.main route "design a schema for a blog"

    # Print (or write) an example configuration file
    python -m mcp_orchestrator.main example-config --output .mcp-config.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

# Load environment from .env.local
from dotenv import load_dotenv

env_file = Path.cwd() / ".env.local"
if env_file.exists():
    load_dotenv(env_file)

import structlog

from mcp_orchestrator.mcp.config import (
    ConfigValidationError,
    create_example_config,
    export_config_to_json,
    load_registry_config,
    save_config_to_file,
)
from mcp_orchestrator.mcp.manager import Manager, ManagerOptions
from mcp_orchestrator.mcp.types import RequestContext


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog to route through Python logging."""
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())

    # Logs go to stderr so command output on stdout stays machine-readable
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
            foreign_pre_chain=shared_processors,
        )
    )
    root_logger.handlers = [console_handler]


logger = structlog.get_logger(__name__)


async def _start_manager(args: argparse.Namespace) -> Manager:
    config = load_registry_config(args.config) if args.config else None
    manager = Manager()
    await manager.initialize(
        ManagerOptions(
            config=config,
            auto_connect=False if args.no_connect else None,
        )
    )
    return manager


async def run_status(args: argparse.Namespace) -> dict:
    manager = await _start_manager(args)
    try:
        return {
            "stats": manager.get_stats().to_dict(),
            "servers": [server.to_dict() for server in manager.get_all_servers()],
        }
    finally:
        await manager.shutdown()


async def run_route(args: argparse.Namespace) -> dict:
    manager = await _start_manager(args)
    try:
        selection = manager.get_tools_for_request(RequestContext(user_message=args.message))
        return {
            "decision": selection.decision.to_dict(),
            "tools": sorted(selection.tools),
            "cleaned_message": manager.clean_message(args.message),
        }
    finally:
        await manager.shutdown()


def run_example_config(args: argparse.Namespace) -> str | None:
    config = create_example_config()
    if args.output:
        path = save_config_to_file(config, args.output)
        logger.info("Example configuration written", path=str(path))
        return None
    return export_config_to_json(config)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-orchestrator",
        description="Inspect MCP tool servers and request routing",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default: LOG_LEVEL or INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to an MCP config file (JSON or YAML)")
    common.add_argument(
        "--no-connect",
        action="store_true",
        help="Register servers without connecting to them",
    )

    subparsers.add_parser("status", parents=[common], help="Show server status")

    route_parser = subparsers.add_parser("route", parents=[common], help="Route a message")
    route_parser.add_argument("message", help="User message to route")

    example_parser = subparsers.add_parser("example-config", help="Print an example config")
    example_parser.add_argument("--output", help="Write the example to this path")

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "example-config":
        output = run_example_config(args)
        if output:
            print(output)
        return 0

    runner = run_status if args.command == "status" else run_route
    try:
        result = asyncio.run(runner(args))
    except ConfigValidationError as e:
        logger.error("Invalid MCP configuration", error=str(e))
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
