"""
Command line driver for the channel demo.

Runs the channel lifecycle against an immudb server, or against an
in-memory store with --in-memory.

Usage:
    immustreams-demo --address 127.0.0.1:3323 --database defaultdb
    immustreams-demo --in-memory --runs 2

Settings are read from IMMUSTREAMS_* environment variables first; flags
override them.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Any

import json_log_formatter

from .channel import ChannelType
from .config import Settings
from .errors import StreamsError
from .memory import InMemoryImmuDB
from .orchestrator import ChannelOrchestrator, RunReport
from .session import Credentials, StoreSession

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run a channel lifecycle over the immudb verified-store transport"
    )
    parser.add_argument("--address", help="immudb REST address (host:port)")
    parser.add_argument("--database", help="Database to select after login")
    parser.add_argument("--author-seed", help="Author seed")
    parser.add_argument("--subscriber-seed", help="Subscriber seed")
    parser.add_argument(
        "--channel-type",
        choices=[t.value for t in ChannelType],
        help="Channel type",
    )
    parser.add_argument("--messages", type=int, help="Single-byte packets after the first")
    parser.add_argument("--in-memory", action="store_true", help="Use an in-memory store")
    parser.add_argument("--runs", type=int, default=1, help="Repeat the lifecycle against the same store")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Environment settings with command line overrides applied."""
    overrides: dict[str, Any] = {}
    if args.address:
        overrides["store_address"] = args.address
    if args.database:
        overrides["database"] = args.database
    if args.author_seed:
        overrides["author_seed"] = args.author_seed
    if args.subscriber_seed:
        overrides["subscriber_seed"] = args.subscriber_seed
    if args.channel_type:
        overrides["channel_type"] = ChannelType(args.channel_type)
    if args.messages is not None:
        overrides["message_count"] = args.messages
    return Settings(**overrides)


def setup_logging(settings: Settings, verbose: bool = False) -> None:
    """Configure root logging from settings.

    Args:
        settings: Demo settings (log_level, log_format)
        verbose: Force DEBUG
    """
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def print_report(run: int, report: RunReport) -> None:
    print(f"[Run {run}] Announcement link: {report.announcement_link}")
    print(f"  Freshly created:    {report.is_new}")
    print(f"  Synchronized:       {report.synchronized} messages")
    print(f"  Subscription:       {report.subscription_link}")
    print(f"  Subscriber is new:  {report.subscriber_is_new}")
    print(f"  Keyload:            {report.keyload_link}")
    print(f"  Packets sent:       {report.sent_packets} (last {report.last_link})")
    print(f"  Messages received:  {len(report.received)}")
    for payload in report.display_payloads():
        print(f"    masked payload {payload!r}")


async def run_demo(settings: Settings, runs: int = 1, in_memory: bool = False) -> list[RunReport]:
    """Run the lifecycle `runs` times against one store."""
    session_factory = None
    if in_memory:
        store = InMemoryImmuDB(
            users={settings.username: settings.password},
            databases=(settings.database,),
        )

        def session_factory(s: Settings) -> StoreSession:
            return store.session(
                s.database,
                Credentials(s.username, s.password),
                timeout=s.request_timeout,
                relogin_on_expiry=s.relogin_on_expiry,
            )

    orchestrator = ChannelOrchestrator(settings, session_factory=session_factory)

    reports = []
    for _ in range(runs):
        reports.append(await orchestrator.run())
    return reports


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = settings_from_args(args)
    setup_logging(settings, verbose=args.verbose)

    try:
        reports = asyncio.run(run_demo(settings, runs=args.runs, in_memory=args.in_memory))
    except StreamsError as e:
        print(f"Channel run failed [{e.code}]: {e.message}", file=sys.stderr)
        sys.exit(1)

    for run, report in enumerate(reports, start=1):
        print_report(run, report)
    sys.exit(0)


if __name__ == "__main__":
    main()
