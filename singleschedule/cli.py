"""Command-line front end for singleschedule.

Each subcommand performs at most one store mutation, then starts or stops
the daemon when the set of active tasks requires it.
"""

import argparse
import sys
from typing import List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from singleschedule import __version__
from singleschedule.activation import (
    DaemonAction,
    apply_daemon_action,
    decide_daemon_action,
    set_active,
    set_all_active,
)
from singleschedule.daemon import get_daemon_pid, is_daemon_running, run_daemon_loop
from singleschedule.errors import SingleScheduleError
from singleschedule.logging_setup import setup_logging
from singleschedule.settings import get_settings
from singleschedule.store import add_task, list_tasks, remove_task

console = Console(highlight=False)


def emit_info(message: str) -> None:
    console.print(escape(message))


def emit_success(message: str) -> None:
    console.print(f"[green]{escape(message)}[/green]")


def emit_warning(message: str) -> None:
    console.print(f"[yellow]{escape(message)}[/yellow]")


def emit_error(message: str) -> None:
    console.print(f"[red]Error:[/red] {escape(message)}")


def _follow_action(action: DaemonAction) -> None:
    if action is DaemonAction.START_DAEMON:
        emit_info("Starting scheduler daemon...")
        apply_daemon_action(action)
        emit_success(f"Scheduler daemon started (PID {get_daemon_pid()})")
    elif action is DaemonAction.STOP_DAEMON:
        emit_info("No active tasks left, stopping scheduler daemon...")
        apply_daemon_action(action)
        emit_success("Scheduler daemon stopped")


def _sync_daemon() -> None:
    tasks = list_tasks()
    action = decide_daemon_action(
        any(t.active for t in tasks), is_daemon_running()
    )
    _follow_action(action)


# =============================================================================
# Subcommand handlers
# =============================================================================


def handle_add(slug: str, cron_expression: str, command: Sequence[str], active: bool) -> int:
    task = add_task(slug, cron_expression, command, active=active)
    emit_success(f"Task '{task.slug}' added successfully")
    _sync_daemon()
    return 0


def handle_remove(slug: str) -> int:
    remove_task(slug)
    emit_success(f"Task '{slug}' removed successfully")
    _sync_daemon()
    return 0


def handle_list() -> int:
    tasks = list_tasks()
    if not tasks:
        emit_info("No scheduled tasks")
        return 0

    table = Table(show_lines=False)
    table.add_column("SLUG", no_wrap=True)
    table.add_column("CRON", no_wrap=True)
    table.add_column("COMMAND", overflow="ellipsis", max_width=40)
    table.add_column("STATUS")
    table.add_column("PID")
    table.add_column("LAST RUN")

    for task in tasks:
        status = "[green]Active[/green]" if task.active else "[red]Inactive[/red]"
        last_run = task.last_run.strftime("%Y-%m-%d %H:%M:%S") if task.last_run else "Never"
        table.add_row(
            escape(task.slug),
            escape(task.cron_expression),
            escape(task.command_line),
            status,
            str(task.pid) if task.pid is not None else "-",
            last_run,
        )

    console.print(table)
    return 0


def handle_start(slugs: List[str], all_tasks: bool) -> int:
    if slugs and not all_tasks:
        action = set_active(slugs, True)
        emit_success(f"Started {len(set(slugs))} task(s)")
    else:
        action = set_all_active(True)
        emit_success("Started all tasks")
    _follow_action(action)
    return 0


def handle_stop(slugs: List[str], all_tasks: bool) -> int:
    if slugs and not all_tasks:
        action = set_active(slugs, False)
        emit_success(f"Stopped {len(set(slugs))} task(s)")
    else:
        action = set_all_active(False)
        emit_success("Stopped all tasks")
    _follow_action(action)
    return 0


def handle_status() -> int:
    if is_daemon_running():
        pid = get_daemon_pid()
        emit_success(f"Scheduler daemon: RUNNING (PID {pid if pid is not None else 'unknown'})")
    else:
        emit_warning("Scheduler daemon: STOPPED")

    tasks = list_tasks()
    active_count = sum(1 for t in tasks if t.active)
    emit_info(f"Scheduled tasks: {len(tasks)} total, {active_count} active")
    return 0


def handle_daemon() -> int:
    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.daemon_log_file)
    run_daemon_loop()
    return 0


# =============================================================================
# Entry point
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="singleschedule",
        description="Run commands on cron schedules from a single background daemon",
    )
    parser.add_argument("--version", "-v", action="version", version=__version__)
    sub = parser.add_subparsers(dest="subcommand", required=True)

    add = sub.add_parser("add", help="Add a new scheduled task")
    add.add_argument("--slug", "-s", required=True, help="Unique identifier for the task")
    add.add_argument(
        "--cron", "-c", required=True, help='Six-field cron expression, e.g. "0 */5 * * * *"'
    )
    add.add_argument("--inactive", action="store_true", help="Add the task without activating it")
    add.add_argument("command", nargs=argparse.REMAINDER, help="Command to run (after --)")

    remove = sub.add_parser("remove", help="Remove a scheduled task")
    remove.add_argument("--slug", "-s", required=True, help="Slug of the task to remove")

    sub.add_parser("list", help="List all scheduled tasks")

    for name, verb in (("start", "Activate"), ("stop", "Deactivate")):
        p = sub.add_parser(name, help=f"{verb} tasks (all tasks when no slug is given)")
        p.add_argument("slugs", nargs="*", metavar="SLUG")
        p.add_argument("--all", "-a", action="store_true", dest="all_tasks")

    sub.add_parser("status", help="Show daemon status")
    sub.add_parser("daemon", help="Run the scheduler loop in the foreground")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.subcommand == "add":
            command = list(args.command)
            if command and command[0] == "--":
                command = command[1:]
            if not command:
                parser.error("add: a command is required after --")
            return handle_add(args.slug, args.cron, command, active=not args.inactive)
        if args.subcommand == "remove":
            return handle_remove(args.slug)
        if args.subcommand == "list":
            return handle_list()
        if args.subcommand == "start":
            return handle_start(args.slugs, args.all_tasks)
        if args.subcommand == "stop":
            return handle_stop(args.slugs, args.all_tasks)
        if args.subcommand == "status":
            return handle_status()
        return handle_daemon()
    except SingleScheduleError as e:
        emit_error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
