"""
Command-line interface for the session dependency resolver.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from session_deps.config import CONFIG_SEARCH_PATHS, SessionDepsConfig, load_config
from session_deps.errors import SessionDepsError
from session_deps.history import ClaudeHistoryReader
from session_deps.logging import setup_logging
from session_deps.service import SessionDepsService

console = Console()


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Session dependency resolver",
        prog="session-deps",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output (debug logging)",
    )
    parser.add_argument(
        "-c",
        "--config",
        help="Path to a YAML config file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    sync_parser = subparsers.add_parser(
        "sync", help="Resolve lineage for every transcript in the history directory"
    )
    sync_parser.add_argument("--json", action="store_true", help="Output as JSON")

    subparsers.add_parser("stats", help="Show dependency graph statistics")

    show_parser = subparsers.add_parser("show", help="Show the stored record of a session")
    show_parser.add_argument("session_id", help="Session id")

    subparsers.add_parser("rebuild", help="Recompute all relationships from stored hashes")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_init_parser = config_subparsers.add_parser("init", help="Write a default config file")
    config_init_parser.add_argument(
        "-o",
        "--output",
        default="session-deps.yaml",
        help="Output file path",
    )
    config_subparsers.add_parser("path", help="Show config file search paths")

    args = parser.parse_args()

    if getattr(args, "verbose", False):
        setup_logging("DEBUG")
    else:
        setup_logging(_load_config(args).log_level)

    if args.command == "sync":
        asyncio.run(cmd_sync(args))
    elif args.command == "stats":
        asyncio.run(cmd_stats(args))
    elif args.command == "show":
        asyncio.run(cmd_show(args))
    elif args.command == "rebuild":
        asyncio.run(cmd_rebuild(args))
    elif args.command == "config":
        cmd_config(args)
    else:
        parser.print_help()


def _load_config(args: argparse.Namespace) -> SessionDepsConfig:
    path = getattr(args, "config", None)
    return load_config(Path(path) if path else None)


async def _create_service(args: argparse.Namespace) -> SessionDepsService:
    """Create and initialize a service from CLI args."""
    service = SessionDepsService(_load_config(args))
    try:
        await service.initialize()
    except SessionDepsError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    return service


async def cmd_sync(args: argparse.Namespace) -> None:
    """Resolve lineage for all transcripts and print the result."""
    service = await _create_service(args)
    reader = service.history_reader
    if not isinstance(reader, ClaudeHistoryReader):
        reader = ClaudeHistoryReader(service.config.history_dir)

    conversations = await asyncio.to_thread(reader.list_conversations)
    enhanced = await service.enhance(conversations)

    if args.json:
        console.print_json(json.dumps(enhanced, indent=2))
        return

    table = Table(title="Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_column("Leaf", style="green")
    table.add_column("Hash", style="dim")

    for conv in enhanced:
        leaf = conv["leaf_session"]
        leaf_label = "·" if leaf == conv["session_id"] else leaf
        table.add_row(conv["session_id"], str(conv["message_count"]), leaf_label, conv["hash"][:12])

    console.print(table)
    console.print(f"\n[dim]Total: {len(enhanced)} sessions[/dim]")


async def cmd_stats(args: argparse.Namespace) -> None:
    """Print dependency graph statistics."""
    service = await _create_service(args)
    stats = await service.get_stats()

    console.print("[bold]Dependency graph:[/bold]")
    console.print(f"  Database: {service.store.path}")
    console.print(f"  Sessions: {stats.session_count}")
    console.print(f"  Roots: {stats.root_count}")
    console.print(f"  Leaves: {stats.leaf_count}")
    console.print(f"  Max depth: {stats.tree_depth}")


async def cmd_show(args: argparse.Namespace) -> None:
    """Print one stored session record."""
    service = await _create_service(args)
    record = await service.get_session_deps_info(args.session_id)
    if record is None:
        console.print(f"[red]Session not found: {args.session_id}[/red]")
        sys.exit(1)

    console.print(f"\n[bold]{record.session_id}[/bold]")
    console.print(f"  Messages: {record.message_count}")
    console.print(f"  End hash: {record.end_hash or '(empty)'}")
    console.print(f"  Parent: {record.parent_session or '-'}")
    children = ", ".join(record.children_sessions) or "-"
    console.print(f"  Children: {children}")
    console.print(f"  Leaf: {record.leaf_session} (distance {record.leaf_distance})")
    console.print(f"  Updated: {record.updated_at}")


async def cmd_rebuild(args: argparse.Namespace) -> None:
    """Recompute relationships for the whole graph."""
    service = await _create_service(args)
    stats = await service.rebuild()
    console.print(
        f"[green]Rebuilt {stats.session_count} sessions[/green] "
        f"({stats.root_count} roots, {stats.leaf_count} leaves)"
    )


def cmd_config(args: argparse.Namespace) -> None:
    """Configuration management commands."""
    if args.config_command == "show":
        _config_show(args)
    elif args.config_command == "init":
        _config_init(args.output)
    elif args.config_command == "path":
        _config_path()
    else:
        console.print("[yellow]Usage: session-deps config <show|init|path>[/yellow]")


def _config_show(args: argparse.Namespace) -> None:
    config = _load_config(args)
    console.print("[bold]Current Configuration:[/bold]\n")
    console.print(yaml.dump(config.to_dict(), default_flow_style=False, sort_keys=False))


def _config_init(output: str) -> None:
    output_path = Path(output)

    if output_path.exists():
        console.print(f"[red]File already exists: {output_path}[/red]")
        sys.exit(1)

    with open(output_path, "w") as f:
        yaml.dump(SessionDepsConfig().to_dict(), f, default_flow_style=False, sort_keys=False)

    console.print(f"[green]Created config file: {output_path}[/green]")


def _config_path() -> None:
    console.print("[bold]Config file search paths:[/bold]\n")
    for path in CONFIG_SEARCH_PATHS:
        exists = "[green]✓[/green]" if path.exists() else "[dim]·[/dim]"
        console.print(f"  {exists} {path}")


if __name__ == "__main__":
    main()
