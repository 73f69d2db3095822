#!/usr/bin/env python3
"""
main.py – Minecraft Panel Bridge
================================
Entry point: runs the HTTP API or the Discord bot, or performs one
operation from the terminal with rich output.

    mc-panel-bridge serve
    mc-panel-bridge bot
    mc-panel-bridge status
    mc-panel-bridge search luckperms
    mc-panel-bridge install <project> [--version <id>]
    mc-panel-bridge update <project> [--version <id>]
    mc-panel-bridge plugins
    mc-panel-bridge backups
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from errors import PanelBridgeError
from settings import Settings

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger("minecraft_panel_bridge")
console = Console()


# ──────────────────────────────────────────────
#  Logging
# ──────────────────────────────────────────────

def setup_logging(level: str = "INFO", log_file: Optional[str | Path] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # werkzeug access logs and discord gateway chatter are noisy at INFO
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    logging.getLogger("discord").setLevel(logging.WARNING)


# ──────────────────────────────────────────────
#  CLI
# ──────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="mc-panel-bridge",
        description="⛏️  Minecraft Panel Bridge – Crafty + Modrinth API and Discord bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--config", default="config.json", help="Path to config.json")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP API")
    sub.add_parser("bot", help="Run the Discord bot")
    sub.add_parser("status", help="Show canonical server status")

    search = sub.add_parser("search", help="Search Modrinth")
    search.add_argument("query")
    search.add_argument("--limit", type=int, default=10)

    for name in ("install", "update"):
        cmd = sub.add_parser(name, help=f"{name.capitalize()} a plugin from Modrinth")
        cmd.add_argument("project", help="Modrinth project id or slug")
        cmd.add_argument("--version", default=None, help="Specific version id")

    sub.add_parser("plugins", help="List installed plugins")
    sub.add_parser("backups", help="List plugin backups")
    return p


# ──────────────────────────────────────────────
#  Headless commands
# ──────────────────────────────────────────────

def _print_status(mgr) -> None:
    status = asyncio.run(mgr.get_canonical_status())
    console.print(f"\n[bold]Status:[/] {'🟢 Online' if status.online else '🔴 Offline'}")
    t = Table(title="Server Status")
    t.add_column("Metric", style="cyan")
    t.add_column("Value", style="white")
    t.add_row("Players", f"{status.player_count}/{status.max_players}")
    t.add_row("Ping", f"{status.ping} ms")
    t.add_row("TPS", f"{status.tps}")
    t.add_row("CPU", f"{status.cpu_usage:.1f}%")
    t.add_row("RAM", f"{status.ram_usage:.1f}%")
    t.add_row("Uptime", f"{int(status.uptime) // 3600}h {int(status.uptime) % 3600 // 60}m")
    console.print(t)


def _print_search(mgr, query: str, limit: int) -> None:
    page = asyncio.run(mgr.search_plugins(query, limit=limit))
    t = Table(title=f"Modrinth: {query} ({page.total} results)")
    t.add_column("ID", style="cyan")
    t.add_column("Title", style="bold")
    t.add_column("Downloads", justify="right")
    t.add_column("Description", style="dim")
    for hit in page.hits:
        t.add_row(hit.id, hit.title, f"{hit.downloads:,}", hit.description[:60])
    console.print(t)


def _print_install(mgr, project: str, version: Optional[str], update: bool) -> None:
    with console.status(f"[bold]{'Updating' if update else 'Installing'} {project}…"):
        if update:
            record = asyncio.run(mgr.update_plugin(project, version))
        else:
            record = asyncio.run(mgr.install_plugin(project, version))
    console.print(
        f"[bold green]✅ {record.filename}[/] "
        f"(version {record.version_number or record.version_id}, {record.size:,} bytes)"
    )
    if record.backup_path:
        console.print(f"[dim]Backup:[/] {record.backup_path} ({', '.join(record.displaced)})")


def _print_plugins(mgr) -> None:
    plugins = mgr.list_plugins()
    t = Table(title=f"Installed Plugins ({len(plugins)})")
    t.add_column("File", style="cyan")
    t.add_column("Name", style="bold")
    t.add_column("Version")
    t.add_column("Type", style="dim")
    t.add_column("Size", justify="right")
    for p in plugins:
        t.add_row(p.filename, p.name, p.version, p.plugin_type, f"{p.size / 1024:.0f} KB")
    console.print(t)


def _print_backups(mgr) -> None:
    backups = mgr.list_backups()
    t = Table(title=f"Plugin Backups ({len(backups)})")
    t.add_column("Backup", style="cyan")
    t.add_column("Files")
    for b in backups:
        t.add_row(b["name"], ", ".join(b["files"]) or "[dim](empty)[/]")
    console.print(t)


# ──────────────────────────────────────────────
#  Entry Point
# ──────────────────────────────────────────────

def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.load(args.config)
    except PanelBridgeError as exc:
        console.print(f"[bold red]{exc}[/]")
        return 1
    setup_logging(settings.log_level, settings.log_file)

    try:
        if args.command == "bot":
            from discord_bot import run_bot
            run_bot(settings)
            return 0

        from server_manager import ServerManager
        mgr = ServerManager(settings)

        if args.command == "serve":
            from web_api import run_server
            settings.validate()
            run_server(mgr, settings)
        elif args.command == "status":
            _print_status(mgr)
        elif args.command == "search":
            _print_search(mgr, args.query, args.limit)
        elif args.command in ("install", "update"):
            _print_install(mgr, args.project, args.version, update=args.command == "update")
        elif args.command == "plugins":
            _print_plugins(mgr)
        elif args.command == "backups":
            _print_backups(mgr)
    except PanelBridgeError as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        console.print(f"[bold red]{exc}[/]")
        return 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/]")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
