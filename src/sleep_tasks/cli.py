#!/usr/bin/env python3
"""Sleep Tasks CLI.

Edit the shared task list from a terminal. Every command loads the shared
state (falling back to the local cache when the server is down), applies one
change and pushes it.

Usage:
    sleep-tasks serve                      # Run the shared state store
    sleep-tasks show                       # Bedtime, summary and tasks
    sleep-tasks add "Write report" -p 45   # New task planned for 45 minutes
    sleep-tasks start 3f2a                 # Start the stopwatch (id prefix)
    sleep-tasks stop 3f2a
    sleep-tasks done 3f2a
    sleep-tasks bedtime 23:15
    sleep-tasks watch                      # Live view, follows other clients
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from . import selectors
from .api import PushChannel, StateApi
from .cache import LocalCache
from .config import Settings, get_settings
from .logs import configure_logging
from .model import SharedState, iso_from_ms, new_task, now_ms
from .reducer import CreateTask, DeleteTask, SetBedtime, StartTimer, StopTimer, ToggleDone, UpdateTask
from .server import run_server
from .sync import PushPolicy, SaveStatus, SyncClient
from .timer import format_duration_ms, live_elapsed

console = Console()


def _build_client(settings: Settings, policy: PushPolicy = PushPolicy.MANUAL) -> SyncClient:
    return SyncClient(
        StateApi.from_settings(settings),
        LocalCache(settings.cache_path),
        policy=policy,
        push_timeout=settings.push_timeout,
    )


def resolve_task_id(state: SharedState, prefix: str) -> Optional[str]:
    """Full task id for a unique id prefix, None when unknown or ambiguous."""
    matches = [t.id for t in state.tasks if t.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        console.print(f"[red]No task with id '{prefix}'[/red]")
    else:
        console.print(f"[red]Id '{prefix}' is ambiguous ({len(matches)} tasks)[/red]")
    return None


# ---- Rendering ----

def _summary(state: SharedState, at_ms: int) -> Text:
    now = datetime.fromtimestamp(at_ms / 1000).astimezone()
    sums = selectors.get_sums(state.tasks)
    bed_min = selectors.bedtime_minutes(state.bedtime)

    text = Text()
    text.append("Bedtime ", style="bold")
    text.append(state.bedtime, style="cyan" if bed_min is not None else "red")
    if bed_min is None:
        text.append(" (must be between 14:00 and 23:59)", style="red")
    text.append(f"   planned left {sums.planned_not_done_min}m   done {sums.actual_done_min}m\n")

    until_bed = selectors.time_until_bed_ms(bed_min, now)
    if until_bed is not None:
        buffer = selectors.buffer_ms(until_bed, sums.total_work_min)
        finish = datetime.fromtimestamp(selectors.completion_at_ms(at_ms, sums.total_work_min) / 1000)
        text.append(f"Until bed {format_duration_ms(until_bed)}   ")
        text.append(f"buffer {format_duration_ms(buffer)}", style="green" if buffer >= 0 else "bold red")
        text.append(f"   finish ~{finish.strftime('%H:%M')}")
        text.append(f"   load {selectors.progress_pct(until_bed, sums.total_work_min)}%")
    if selectors.has_done_without_actual(state.tasks):
        text.append("\nSome done tasks have no actual time", style="yellow")
    return text


def _task_table(state: SharedState, at_ms: int) -> Table:
    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Id", style="dim", width=8)
    table.add_column("Task", overflow="fold")
    table.add_column("Plan", justify="right")
    table.add_column("Actual", justify="right")
    table.add_column("Timer", justify="right")

    for t in state.tasks:
        title = Text(t.title, style="strike dim" if t.done else "")
        timer_text = Text(format_duration_ms(live_elapsed(t, at_ms)), style="bold green" if t.timer_running else "dim")
        actual = "" if t.actual_min is None else f"{t.actual_min}m"
        table.add_row(t.id[:8], title, f"{t.planned_min}m", actual, timer_text)
    return table


def render(state: SharedState, at_ms: int) -> Group:
    if not state.tasks:
        return Group(_summary(state, at_ms), Text("No tasks yet.", style="yellow"))
    return Group(_summary(state, at_ms), _task_table(state, at_ms))


def _print_sync_status(client: SyncClient) -> None:
    if client.loaded_from != "server":
        console.print(f"[yellow]Server unreachable, working from {client.loaded_from} state[/yellow]")
    if client.save_status == SaveStatus.SAVED:
        console.print(f"[green]Saved[/green] [dim](server v{client.last_server_updated_at})[/dim]")
    elif client.save_status == SaveStatus.CONFLICT:
        console.print("[yellow]Someone else changed the list first; showing their version.[/yellow]")
    elif client.save_status == SaveStatus.ERROR:
        console.print(f"[red]Save failed:[/red] {client.save_error}")
        console.print("[dim]The change is kept locally and will be pushed on the next save.[/dim]")


# ---- Commands ----

async def _apply(settings: Settings, make_action: Callable[[SyncClient], object]) -> int:
    """Load, dispatch one action (None = abort), push, print."""
    client = _build_client(settings)
    await client.load()

    action = make_action(client)
    if action is None:
        return 1
    client.dispatch(action)

    # Also retries changes left dirty by an earlier failed save
    await client.save()
    _print_sync_status(client)
    console.print(render(client.state, client.clock()))
    return 1 if client.save_status in (SaveStatus.ERROR, SaveStatus.CONFLICT) else 0


def _task_action(args: argparse.Namespace, build: Callable[[str, int], object]) -> int:
    def make(client: SyncClient):
        task_id = resolve_task_id(client.state, args.id)
        return None if task_id is None else build(task_id, client.clock())

    return asyncio.run(_apply(args.settings, make))


def cmd_show(args: argparse.Namespace) -> int:
    """Print the current shared state."""
    async def show() -> int:
        client = _build_client(args.settings)
        await client.load()
        _print_sync_status(client)
        console.print(render(client.state, client.clock()))
        return 0

    return asyncio.run(show())


def cmd_add(args: argparse.Namespace) -> int:
    """Create a task."""
    if not args.title.strip():
        console.print("[red]Title must not be empty[/red]")
        return 1
    return asyncio.run(_apply(args.settings, lambda c: CreateTask(new_task(args.title, args.planned, c.clock()))))


def cmd_edit(args: argparse.Namespace) -> int:
    """Change title, planned or actual minutes."""
    def make(client: SyncClient):
        task_id = resolve_task_id(client.state, args.id)
        if task_id is None:
            return None
        task = client.state.get(task_id)
        changes = {"updated_at": iso_from_ms(client.clock())}
        if args.title is not None:
            changes["title"] = args.title
        if args.planned is not None:
            changes["planned_min"] = args.planned
        if args.actual is not None:
            changes["actual_min"] = args.actual
        return UpdateTask(replace(task, **changes))

    return asyncio.run(_apply(args.settings, make))


def cmd_delete(args: argparse.Namespace) -> int:
    return _task_action(args, lambda task_id, _: DeleteTask(task_id))


def cmd_done(args: argparse.Namespace) -> int:
    return _task_action(args, lambda task_id, at: ToggleDone(task_id, True, at))


def cmd_undone(args: argparse.Namespace) -> int:
    return _task_action(args, lambda task_id, at: ToggleDone(task_id, False, at))


def cmd_start(args: argparse.Namespace) -> int:
    return _task_action(args, lambda task_id, at: StartTimer(task_id, at))


def cmd_stop(args: argparse.Namespace) -> int:
    return _task_action(args, lambda task_id, at: StopTimer(task_id, at))


def cmd_bedtime(args: argparse.Namespace) -> int:
    """Set the shared bedtime."""
    if selectors.parse_time_to_minutes(args.time) is None:
        console.print(f"[red]'{args.time}' is not a HH:MM time[/red]")
        return 1
    if not selectors.is_bedtime_valid(args.time):
        console.print("[yellow]Bedtime outside 14:00-23:59, summary figures will be hidden[/yellow]")
    return asyncio.run(_apply(args.settings, lambda _: SetBedtime(args.time)))


def cmd_reset(args: argparse.Namespace) -> int:
    """Clear every task and the bedtime, for all clients."""
    async def reset() -> int:
        client = _build_client(args.settings)
        await client.load()
        client.hard_reset()
        await client.save()
        _print_sync_status(client)
        return 1 if client.save_status in (SaveStatus.ERROR, SaveStatus.CONFLICT) else 0

    return asyncio.run(reset())


def cmd_watch(args: argparse.Namespace) -> int:
    """Live view that follows pushes from other clients."""
    async def watch() -> int:
        client = _build_client(args.settings, policy=PushPolicy.AUTO)
        channel = PushChannel.from_settings(args.settings)
        with Live(render(client.state, now_ms()), console=console, refresh_per_second=4) as live:
            client.on_change(lambda state: live.update(render(state, client.clock())))
            ticker = asyncio.create_task(client.tick(lambda at: live.update(render(client.state, at))))
            try:
                await client.run(channel)
            finally:
                ticker.cancel()
        return 0

    try:
        return asyncio.run(watch())
    except KeyboardInterrupt:
        return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the shared state store."""
    settings = args.settings
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    run_server(settings)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sleep-tasks",
        description="Shared task list with stopwatches and a bedtime deadline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log sync activity")
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the shared state store")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.set_defaults(func=cmd_serve)

    subparsers.add_parser("show", help="Show bedtime, summary and tasks").set_defaults(func=cmd_show)
    subparsers.add_parser("watch", help="Live view following other clients").set_defaults(func=cmd_watch)
    subparsers.add_parser("reset", help="Remove all tasks and reset bedtime").set_defaults(func=cmd_reset)

    add_parser = subparsers.add_parser("add", help="Add a task")
    add_parser.add_argument("title")
    add_parser.add_argument("-p", "--planned", type=int, default=25, help="Planned minutes (default: 25)")
    add_parser.set_defaults(func=cmd_add)

    edit_parser = subparsers.add_parser("edit", help="Edit a task")
    edit_parser.add_argument("id", help="Task id or unique prefix")
    edit_parser.add_argument("--title")
    edit_parser.add_argument("--planned", type=int)
    edit_parser.add_argument("--actual", type=int)
    edit_parser.set_defaults(func=cmd_edit)

    for name, func, help_text in (
        ("delete", cmd_delete, "Delete a task"),
        ("done", cmd_done, "Mark a task done (stops its timer)"),
        ("undone", cmd_undone, "Mark a task not done"),
        ("start", cmd_start, "Start a task's stopwatch (stops any other)"),
        ("stop", cmd_stop, "Stop a task's stopwatch"),
    ):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("id", help="Task id or unique prefix")
        p.set_defaults(func=func)

    bedtime_parser = subparsers.add_parser("bedtime", help="Set the shared bedtime")
    bedtime_parser.add_argument("time", help="HH:MM")
    bedtime_parser.set_defaults(func=cmd_bedtime)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        args.command = "show"
        args.func = cmd_show

    configure_logging(logging.INFO if args.verbose else logging.WARNING)
    try:
        args.settings = get_settings()
    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    exit_code = args.func(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
