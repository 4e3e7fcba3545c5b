#!/usr/bin/env python3
"""
Bastion admin CLI.
List, add and remove blocks while the daemon runs; shares its state file
and lock.
"""

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

import psutil
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from const import APP_NAME, APP_VERSION, DEFAULT_CONFIG, EXIT_CONFIG_ERROR, EXIT_FATAL, EXIT_OK  # noqa: E402
from utils.filelock import StateIntegrityError  # noqa: E402
from utils.formatters import format_duration, format_expiry, format_ports, format_timestamp  # noqa: E402
from utils.logger import setup_logging  # noqa: E402
from utils.settings import ConfigError, Settings, parse_ports  # noqa: E402


def read_pid(path: Optional[str]) -> Optional[int]:
    """Read the daemon pid, None if the file is missing or garbled."""
    if not path:
        return None
    try:
        return int(Path(path).read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def display_blocks(console: Console, manager, now: float) -> None:
    """Print the active blocks table."""
    entries = manager.active()
    if not entries:
        console.print("[yellow]No active blocks[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Address", style="cyan", no_wrap=True)
    table.add_column("Class", style="dim")
    table.add_column("Ports", style="white")
    table.add_column("Blocked at", style="green")
    table.add_column("Expires")
    table.add_column("Reason", style="white")

    for entry in entries:
        table.add_row(
            entry.address,
            entry.classification,
            format_ports(entry.ports),
            format_timestamp(entry.created_at),
            format_expiry(entry.expires_at, now),
            entry.reason,
        )

    console.print(table)
    console.print(f"[bold]{len(entries)}[/bold] blocks")


def display_status(console: Console, settings: Settings, manager, now: float) -> None:
    """Print daemon liveness and block counts."""
    pid = read_pid(settings.get_str("daemon.pid_file"))
    running = pid is not None and psutil.pid_exists(pid)

    entries = manager.active()
    permanent = sum(1 for e in entries if e.permanent)
    expired = sum(1 for e in entries if not e.permanent and e.expires_at <= now)

    summary = Text()
    if running:
        summary.append(f"Daemon: running (pid {pid})", style="bold green")
    else:
        summary.append("Daemon: not running", style="bold red")
    summary.append(f"\nState file: {manager.store.path}", style="dim")
    summary.append(f"\nActive blocks: {len(entries)}", style="cyan")
    summary.append(f"\n  permanent: {permanent}", style="cyan")
    summary.append(f"\n  temporary: {len(entries) - permanent}", style="cyan")
    if expired:
        summary.append(f"\n  awaiting sweep: {expired}", style="yellow")

    console.print(Panel(summary, title=f"[bold]{APP_NAME} status[/bold]", border_style="green"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bastion-admin", description=f"{APP_NAME} block administration")
    parser.add_argument(
        "-c", "--config", default=DEFAULT_CONFIG, help=f"Path to configuration file (default: {DEFAULT_CONFIG})"
    )
    parser.add_argument("--version", action="version", version=f"{APP_NAME} {APP_VERSION}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="List active blocks")
    sub.add_parser("status", help="Show daemon status and block counts")
    sub.add_parser("sweep", help="Remove expired blocks now")

    add = sub.add_parser("add", help="Block an address")
    add.add_argument("address")
    add.add_argument("--duration", type=int, default=None, help="Seconds (default: classification default)")
    add.add_argument("--permanent", action="store_true", help="Block without expiry")
    add.add_argument("--reason", default="Manually blocked")
    add.add_argument("--ports", default=None, help="Comma separated ports (default: all)")

    remove = sub.add_parser("remove", help="Remove a block")
    remove.add_argument("address")
    return parser


def main(argv=None, console: Optional[Console] = None, manager=None) -> int:
    """Entry point of bastion-admin."""
    args = build_parser().parse_args(argv)
    console = console or Console()
    load_dotenv()
    setup_logging(level=logging.WARNING)

    try:
        settings = Settings.load(args.config)
        if manager is None:
            from engine.blocks import BlockManager
            from engine.dispatcher import build_applier, build_store
            from engine.lists import ListResolver
            manager = BlockManager(build_store(settings), build_applier(settings), settings=settings)
            # the daemon holds these rules; sweep and remove must not lift them
            manager.adopt_deny(ListResolver(deny_paths=settings.get_list("lists.deny")).deny_entries())
        ports = parse_ports(args.ports) if args.command == "add" else None
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        return EXIT_CONFIG_ERROR

    now = time.time()
    try:
        if args.command == "list":
            display_blocks(console, manager, now)
            return EXIT_OK

        if args.command == "status":
            display_status(console, settings, manager, now)
            return EXIT_OK

        if args.command == "sweep":
            removed = manager.sweep(now)
            console.print(f"[green]Removed {len(removed)} expired blocks[/green]")
            for address in removed:
                console.print(f"  {address}", style="cyan")
            return EXIT_OK

        if args.command == "add":
            if args.permanent:
                duration = None
            elif args.duration is not None:
                duration = args.duration
            else:
                duration = settings.policy("manual").block_duration
            if duration is not None and duration < 1:
                console.print("[red]Duration must be at least 1 second[/red]")
                return EXIT_FATAL
            outcome = manager.add_manual(args.address, duration=duration, reason=args.reason, ports=ports)
            if not outcome.ok:
                console.print(f"[red]Block failed:[/red] {outcome.detail}")
                return EXIT_FATAL
            console.print(f"[green]Blocked {args.address} ({format_duration(duration)})[/green]")
            return EXIT_OK

        if args.command == "remove":
            outcome = manager.remove(args.address)
            if not outcome.ok:
                console.print(f"[red]Remove failed:[/red] {outcome.detail}")
                return EXIT_FATAL
            console.print(f"[green]Removed block of {args.address}[/green]")
            return EXIT_OK

    except StateIntegrityError as e:
        console.print(f"[red]State error:[/red] {e}")
        return EXIT_FATAL

    return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
