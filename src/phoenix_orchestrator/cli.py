"""Command-line interface for Phoenix Orchestrator."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from phoenix_orchestrator import __version__
from phoenix_orchestrator.core.errors import OrchestratorError
from phoenix_orchestrator.utils.logger import get_logger


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="phoenix-orchestrator",
        description="Phoenix Orchestrator - LXC GPU container provisioning"
    )
    parser.add_argument(
        "--config",
        help="Path to the container declarations JSON (default: $PHOENIX_CONFIG_FILE)"
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available commands"
    )

    subparsers.add_parser(
        "run",
        help="Provision every declared container"
    )

    plan_parser = subparsers.add_parser(
        "plan",
        help="Show the device passthrough plan for one container"
    )
    plan_parser.add_argument("container_id", type=int, help="Container ID")

    markers_parser = subparsers.add_parser(
        "markers",
        help="List recorded stage markers"
    )
    markers_parser.add_argument(
        "--prefix",
        default="",
        help="Only show markers whose key starts with this prefix"
    )

    teardown_parser = subparsers.add_parser(
        "teardown",
        help="Destroy containers and revoke their markers"
    )
    target = teardown_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("container_id", type=int, nargs="?", help="Container ID")
    target.add_argument("--all", action="store_true", help="Tear down every declared container")

    api_parser = subparsers.add_parser(
        "api",
        help="Run the read-only status API"
    )
    api_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    api_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)"
    )

    subparsers.add_parser(
        "version",
        help="Show version information"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the Phoenix Orchestrator CLI.

    Args:
        argv: Command-line arguments. If None, uses sys.argv.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        print(f"Phoenix Orchestrator version {__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "api":
        from phoenix_orchestrator.api import run_server

        run_server(host=args.host, port=args.port)
        return 0

    from phoenix_orchestrator import main as entry
    from phoenix_orchestrator.settings import Settings

    logger = get_logger()
    try:
        settings = Settings.from_env()
        if args.config:
            settings = settings.with_overrides(config_file=Path(args.config))

        if args.command == "run":
            entry.require_tools()
            return entry.run(entry.build_context(settings, logger), check_tools=False)

        ctx = entry.build_context(settings, logger)
        if args.command == "plan":
            print(json.dumps(entry.plan(ctx, args.container_id), indent=2))
            return 0
        if args.command == "markers":
            print(json.dumps(entry.list_markers(ctx, args.prefix), indent=2))
            return 0
        if args.command == "teardown":
            entry.require_tools()
            return entry.teardown(ctx, None if args.all else args.container_id)
    except (OrchestratorError, ValueError) as e:
        logger.error(str(e))
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
