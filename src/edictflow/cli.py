"""
Edictflow command line.

Usage:
    edictflow sweep --once
    edictflow sweep --interval 15
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Any, Sequence

import structlog

from edictflow.config import get_settings
from edictflow.core.errors import main_with_error_handling
from edictflow.db.session import dispose_engine, get_session_factory, init_engine
from edictflow.events import build_publisher
from edictflow.logging import configure_logging
from edictflow.workers.sweeper import EnforcementSweeper

logger = structlog.get_logger()


def register_sweep_parser(subparsers: argparse._SubParsersAction[Any]) -> None:
    """Register the sweep command parser."""
    sweep_parser = subparsers.add_parser(
        "sweep",
        help="Reconcile auto-revert and exception deadlines",
    )
    sweep_parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit",
    )
    sweep_parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between sweeps (default: EDICTFLOW_SWEEPER_INTERVAL_SECONDS)",
    )


async def _sweep(once: bool, interval: float | None) -> int:
    settings = get_settings()
    if interval is not None:
        settings = settings.model_copy(update={"sweeper_interval_seconds": interval})
    init_engine(settings)
    publisher = build_publisher(settings)
    sweeper = EnforcementSweeper(get_session_factory(), publisher, settings)
    try:
        if once:
            result = await sweeper.sweep_once()
            logger.info(
                "sweep_finished",
                exceptions_expired=result.exceptions_expired,
                changes_reverted=result.changes_reverted,
            )
        else:
            await sweeper.run_forever()
    finally:
        await publisher.close()
        await dispose_engine()
    return 0


def handle_sweep_command(args: argparse.Namespace) -> int:
    """Handle the sweep command."""
    return asyncio.run(_sweep(getattr(args, "once", False), getattr(args, "interval", None)))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="edictflow", description="Edictflow governance core")
    subparsers = parser.add_subparsers(dest="command")
    register_sweep_parser(subparsers)
    return parser


@main_with_error_handling()
def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.log_json)
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "sweep":
        return handle_sweep_command(args)
    parser.print_help()
    return 1
