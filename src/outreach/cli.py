"""Operator command-line interface for the outreach engine.

Sub-commands:

- ``tick`` -- run one scheduler tick and print the summary as JSON
- ``dead-letters`` -- list dead-lettered commands (table or JSON)
- ``requeue <command_id>`` -- move a dead-lettered command back to pending

Usage::

    outreach-admin tick
    outreach-admin dead-letters --format json --limit 20
    outreach-admin requeue 7d9c...
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Sequence
from typing import Any

from outreach.app import close_services, configure_logging, initialize_services
from outreach.config import get_settings
from outreach.domain.errors import OutreachError
from outreach.domain.models import Command


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for operator commands."""
    parser = argparse.ArgumentParser(prog="outreach-admin", description="Outreach engine operator tools")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("tick", help="Run one scheduler tick and print the summary")

    dead = sub.add_parser("dead-letters", help="List dead-lettered commands")
    dead.add_argument(
        "--format",
        type=str,
        choices=["table", "json"],
        default="table",
        dest="output_format",
        help="Output format (default: table)",
    )
    dead.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Maximum results (default: 50)",
    )

    requeue = sub.add_parser("requeue", help="Requeue a dead-lettered command")
    requeue.add_argument("command_id", type=str, help="ID of the dead-lettered command")

    return parser


def format_table(commands: list[Command]) -> str:
    """Format dead-lettered commands as a human-readable table."""
    if not commands:
        return "No dead-lettered commands."

    headers = ["ID", "Type", "Task", "Attempts", "Created", "Last error"]
    widths = [36, 12, 36, 8, 20, 40]

    def truncate(value: Any, width: int) -> str:
        s = str(value if value is not None else "")
        if len(s) > width:
            return s[: width - 3] + "..."
        return s

    lines: list[str] = []
    header_line = "  ".join(h.ljust(w) for h, w in zip(headers, widths, strict=True))
    lines.append(header_line)
    lines.append("-" * len(header_line))

    for command in commands:
        cells = [
            truncate(command.id, widths[0]),
            truncate(command.command_type, widths[1]),
            truncate(command.task_id, widths[2]),
            truncate(f"{command.attempt_count}/{command.max_attempts}", widths[3]),
            truncate(command.created_at.strftime("%Y-%m-%d %H:%M:%S"), widths[4]),
            truncate(command.last_error, widths[5]),
        ]
        lines.append("  ".join(c.ljust(w) for c, w in zip(cells, widths, strict=True)))

    return "\n".join(lines)


def format_json(commands: list[Command]) -> str:
    return json.dumps([c.model_dump(mode="json") for c in commands], indent=2)


def run_command(args: argparse.Namespace, services: dict[str, Any]) -> int:
    """Execute the parsed sub-command and return the process exit code."""
    if args.command == "tick":
        summary = services["scheduler"].tick()
        print(json.dumps(summary.model_dump(), indent=2))
        return 1 if summary.has_errors else 0

    if args.command == "dead-letters":
        commands = services["bus"].list_dead_letters(args.limit)
        print(format_json(commands) if args.output_format == "json" else format_table(commands))
        return 0

    if args.command == "requeue":
        try:
            command = services["bus"].requeue(args.command_id)
        except OutreachError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1
        print(f"Requeued {command.id} (status: {command.status.value})")
        return 0

    return 2


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, wire services and run the requested command."""
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(production=settings.production)

    services = initialize_services(settings)
    try:
        return run_command(args, services)
    finally:
        close_services(services)


if __name__ == "__main__":
    sys.exit(main())
