# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Command line entry point.

    quota-watcher once             # print one snapshot and exit
    quota-watcher watch            # keep polling until Ctrl+C
    quota-watcher --method COMMAND_MODEL_CONFIG --interval 30 watch
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import WatcherConfig, load_config
from .core.types import FetchStatus, PaceStatus, QuotaApiMethod, QuotaLevel, QuotaSnapshot
from .error_handler import QuotaWatcherError, describe_error
from .failure_logger import setup_logging
from .watcher import QuotaWatcher

console = Console()

LEVEL_STYLES = {
    QuotaLevel.NORMAL: "green",
    QuotaLevel.WARNING: "yellow",
    QuotaLevel.CRITICAL: "red",
    QuotaLevel.DEPLETED: "bright_black",
}

PACE_STYLES = {
    PaceStatus.AHEAD: "cyan",
    PaceStatus.ON_TRACK: "green",
    PaceStatus.BEHIND: "yellow",
    PaceStatus.CRITICAL: "red",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="quota-watcher",
        description="Watch Antigravity model quota via the local language server",
    )
    parser.add_argument(
        "--method",
        choices=[m.value for m in QuotaApiMethod],
        help="Quota RPC to use (default: QUOTA_WATCHER_API_METHOD or GET_USER_STATUS)",
    )
    parser.add_argument("--interval", type=int, help="Polling interval in seconds (minimum 10)")
    parser.add_argument("--log-dir", default="logs", help="Directory for failures.log")
    parser.add_argument("--force-powershell", action="store_true", help="Windows: skip WMIC")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("once", help="Fetch one snapshot, print it and exit")
    subparsers.add_parser("watch", help="Poll until interrupted")
    return parser


def build_config(args: argparse.Namespace) -> WatcherConfig:
    config = load_config()
    return config.with_overrides(
        api_method=QuotaApiMethod.parse(args.method) if args.method else None,
        polling_interval=args.interval,
        force_powershell=True if args.force_powershell else None,
    )


# =============================================================================
# RENDERING
# =============================================================================


def render_snapshot(snapshot: QuotaSnapshot, watcher: QuotaWatcher) -> Table:
    config = watcher.config
    table = Table(title=f"Antigravity quota at {snapshot.timestamp.astimezone():%H:%M:%S}")
    table.add_column("Model")
    table.add_column("Remaining", justify="right")
    table.add_column("Level")
    table.add_column("Resets")
    table.add_column("Pace")

    for model in snapshot.models:
        level = watcher.level_for(model)
        style = LEVEL_STYLES[level]
        remaining = (
            f"{model.remaining_percentage:.0f}%"
            if model.remaining_percentage is not None
            else "0%"
        )
        pace = "-"
        if model.pace_status is not None:
            pace = (
                f"[{PACE_STYLES[model.pace_status]}]{model.pace_status.value}[/] "
                f"({model.usage_pace_gap:+.0f})"
            )
        table.add_row(
            model.label,
            f"[{style}]{remaining}[/]",
            f"[{style}]{level.value}[/]",
            model.time_until_reset_formatted,
            pace,
        )

    captions = []
    if config.show_plan_name and snapshot.plan_name:
        captions.append(f"Plan: {snapshot.plan_name}")
    if config.show_prompt_credits and snapshot.prompt_credits:
        credits = snapshot.prompt_credits
        captions.append(
            f"Prompt credits: {credits.available:.0f}/{credits.monthly:.0f} "
            f"({credits.remaining_percentage:.0f}% left)"
        )
    exhausted = snapshot.exhausted_models
    if exhausted:
        captions.append("Exhausted: " + ", ".join(m.label for m in exhausted))
    if captions:
        table.caption = " | ".join(captions)
    return table


def print_error(error: BaseException) -> None:
    console.print(
        Panel(describe_error(error), title="[bold red]Quota unavailable[/bold red]", expand=False)
    )


# =============================================================================
# COMMANDS
# =============================================================================


async def run_once(watcher: QuotaWatcher) -> int:
    watcher.on_error(print_error)
    try:
        if not await watcher.detect():
            return 1
        with console.status("Fetching quota..."):
            snapshot = await watcher.fetch_once()
    except QuotaWatcherError as e:
        print_error(e)
        return 1
    finally:
        await watcher.stop()

    console.print(render_snapshot(snapshot, watcher))
    return 0


async def run_watch(watcher: QuotaWatcher) -> int:
    stopped = asyncio.Event()
    exit_code = 0

    def on_update(snapshot: QuotaSnapshot) -> None:
        console.print(render_snapshot(snapshot, watcher))

    def on_status(status: FetchStatus, retry_count: int) -> None:
        if status is FetchStatus.RETRYING:
            console.print(f"[yellow]Fetch failed, retry {retry_count}...[/yellow]")
        else:
            console.print("[dim]Fetching quota...[/dim]")

    def on_error(error: BaseException) -> None:
        nonlocal exit_code
        print_error(error)
        exit_code = 1
        stopped.set()

    watcher.on_quota_update(on_update)
    watcher.on_status(on_status)
    watcher.on_error(on_error)

    try:
        if not await watcher.start():
            return 1
        if not watcher.config.enabled:
            console.print("Quota watching is disabled (QUOTA_WATCHER_ENABLED=false)")
            return 0
        console.print(
            f"Polling every {watcher.config.polling_interval}s, press Ctrl+C to stop"
        )
        await stopped.wait()
    finally:
        await watcher.stop()
    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    setup_logging(args.log_dir, level)

    watcher = QuotaWatcher(build_config(args))
    command = run_watch if args.command == "watch" else run_once
    try:
        return asyncio.run(command(watcher))
    except KeyboardInterrupt:
        console.print("Stopped.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
