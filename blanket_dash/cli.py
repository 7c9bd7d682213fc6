"""
Command-line interface for blanket-dash.

Grouped command structure:
- tasks: list, types, show, launch, stop, rm, logs
- workers: list, launch, stop
- refresh: on, off, status
- filter: show, set, clear
- watch: live task table
"""

import sys
import asyncio
import argparse
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from blanket_dash.config import DEFAULT_CONFIG_FILE
from blanket_dash.dashboard import Dashboard, create_dashboard
from blanket_dash.models import FilterConfig, LogEvent, Task, TaskState


# Distinguishing features shown per task row
DISTINCT_SHOWN = 3

STATE_ICONS = {
    "WAIT": "⏳",
    "START": "🚀",
    "RUNNING": "🔄",
    "SUCCESS": "✅",
    "ERROR": "❌",
    "TIMEOUT": "⏱️",
    "STOPPED": "🛑",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)]
    )
    # Suppress per-request httpx logging
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _format_ts(ms: Optional[int]) -> str:
    if not ms:
        return "-"
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def _parse_env_pairs(pairs: List[str]) -> Dict[str, str]:
    """Parse NAME=VALUE arguments."""
    env = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected NAME=VALUE, got '{pair}'")
        env[name] = value
    return env


def _print_task(task: Task) -> None:
    icon = STATE_ICONS.get(task.state, "❔")
    print(f"\n  {icon} {task.id}  [{task.type}]  {task.state}")
    print(f"      Created: {_format_ts(task.created_ts)}")
    if task.best_features:
        print(f"      Distinct: {', '.join(task.best_features[:DISTINCT_SHOWN])}")


def _print_tasks(tasks: List[Task]) -> None:
    print(f"\n📋 Tasks ({len(tasks)}):")
    if not tasks:
        print("  (none)")
    for task in tasks:
        _print_task(task)


async def _find_task(dash: Dashboard, task_id: str) -> Optional[Task]:
    task = await dash.tasks.refresh_task(task_id)
    if task is None:
        print(f"❌ Task '{task_id}' not found")
    return task


# =============================================================================
# TASKS COMMANDS
# =============================================================================

async def _tasks_list(args) -> int:
    async with create_dashboard(args.config) as dash:
        current = dash.filters.filter if args.filtered else FilterConfig()
        tasks = await dash.tasks.refresh_tasks(current)
        _print_tasks(tasks)
    return 0


def cmd_tasks_list(args):
    """List the most recent tasks."""
    return asyncio.run(_tasks_list(args))


async def _tasks_types(args) -> int:
    async with create_dashboard(args.config) as dash:
        task_types = await dash.tasks.refresh_task_types()

    print(f"\n🧩 Task types ({len(task_types)}):")
    if not task_types:
        print("  (none)")
    for task_type in task_types:
        print(f"\n  {task_type.name}")
        print(f"      Loaded: {_format_ts(task_type.loaded_ts)}")
        for row in task_type.new_task_form():
            marker = "*" if row.required else " "
            print(f"      {marker} {row.name}: {row.description or '(no description)'}")
    return 0


def cmd_tasks_types(args):
    """List task types and their launch parameters."""
    return asyncio.run(_tasks_types(args))


async def _tasks_show(args) -> int:
    async with create_dashboard(args.config) as dash:
        task = await _find_task(dash, args.task_id)
    if task is None:
        return 1

    icon = STATE_ICONS.get(task.state, "❔")
    print(f"\n{icon} Task {task.id}")
    print(f"   Type: {task.type}")
    print(f"   State: {task.state} ({task.display_class})")
    print(f"   Created: {_format_ts(task.created_ts)}")
    print(f"   Started: {_format_ts(task.started_ts)}")
    print(f"   Updated: {_format_ts(task.last_updated_ts)}")
    running = task.time_running()
    if running is not None:
        print(f"   Running for: {running:.1f}s")
    if task.result_dir:
        print(f"   Results: {task.result_dir}")
    print("   Environment:")
    for feature in task.all_features:
        print(f"      {feature}")
    return 0


def cmd_tasks_show(args):
    """Show one task."""
    return asyncio.run(_tasks_show(args))


async def _tasks_launch(args) -> int:
    async with create_dashboard(args.config) as dash:
        await dash.tasks.refresh_task_types()
        task_type = dash.tasks.get_task_type(args.task_type)
        if task_type is None:
            print(f"❌ Unknown task type '{args.task_type}'")
            return 1

        try:
            environment = task_type.build_environment(_parse_env_pairs(args.env))
        except ValueError as e:
            print(f"❌ {e}", file=sys.stderr)
            return 1

        if not await dash.tasks.create_task(task_type.name, environment):
            print(f"❌ Failed to launch task of type '{task_type.name}'")
            return 1

    print(f"✅ Launched task of type '{args.task_type}'")
    return 0


def cmd_tasks_launch(args):
    """Launch a task."""
    return asyncio.run(_tasks_launch(args))


async def _tasks_stop(args, delete: bool) -> int:
    async with create_dashboard(args.config) as dash:
        task = await _find_task(dash, args.task_id)
        if task is None:
            return 1

        if delete:
            ok = await dash.tasks.delete_task(task)
        else:
            ok = await dash.tasks.stop_task(task)

    if not ok:
        print(f"❌ Failed to {'delete' if delete else 'stop'} task '{args.task_id}'")
        return 1
    print(f"✅ {'Deleted' if delete else 'Stopped'} task '{args.task_id}'")
    return 0


def cmd_tasks_stop(args):
    """Stop a running task."""
    return asyncio.run(_tasks_stop(args, delete=False))


def cmd_tasks_rm(args):
    """Delete a task."""
    return asyncio.run(_tasks_stop(args, delete=True))


def _print_log_event(event: LogEvent) -> None:
    print(event.data, flush=True)


async def _tasks_logs(args) -> int:
    async with create_dashboard(args.config) as dash:
        tail = dash.open_log_tail(args.task_id, on_event=_print_log_event)
        await tail.run()

        if tail.task is not None and tail.task.state != TaskState.RUNNING.value:
            print(f"\n🏁 Task {args.task_id} finished: {tail.task.state}", file=sys.stderr)
    return 0


def cmd_tasks_logs(args):
    """Follow a task's log until it stops running."""
    try:
        return asyncio.run(_tasks_logs(args))
    except KeyboardInterrupt:
        print("\n\nInterrupted", file=sys.stderr)
        return 0


# =============================================================================
# WORKERS COMMANDS
# =============================================================================

async def _workers_list(args) -> int:
    async with create_dashboard(args.config) as dash:
        workers = await dash.workers.refresh_workers()

    print("\n👷 Workers:")
    if not workers:
        print("  (none)")
    for worker in workers:
        status = "🛑 Stopped" if worker.stopped else "✅ Running"
        print(f"\n  {status} pid {worker.pid}")
        print(f"      Started: {_format_ts(worker.started_ts)}")
        print(f"      Check interval: {worker.check_interval}s")
        if worker.tags:
            print(f"      Tags: {', '.join(worker.tags)}")
        if worker.logfile:
            print(f"      Log: {worker.logfile}")
    return 0


def cmd_workers_list(args):
    """List workers."""
    return asyncio.run(_workers_list(args))


async def _workers_launch(args) -> int:
    config = {"checkInterval": args.check_interval, "daemon": True}
    if args.tags:
        config["tags"] = [t.strip() for t in args.tags.split(",") if t.strip()]

    async with create_dashboard(args.config) as dash:
        ok = await dash.workers.launch_worker(config)

    if not ok:
        print("❌ Failed to launch worker")
        return 1
    print("✅ Launched worker")
    return 0


def cmd_workers_launch(args):
    """Launch a worker."""
    return asyncio.run(_workers_launch(args))


async def _workers_stop(args) -> int:
    async with create_dashboard(args.config) as dash:
        workers = await dash.workers.refresh_workers()
        worker = next((w for w in workers if w.pid == args.pid), None)
        if worker is None:
            print(f"❌ Worker with pid {args.pid} not found")
            return 1
        ok = await dash.workers.stop_worker(worker)

    if not ok:
        print(f"❌ Failed to stop worker {args.pid}")
        return 1
    print(f"✅ Stopping worker {args.pid}")
    return 0


def cmd_workers_stop(args):
    """Stop a worker."""
    return asyncio.run(_workers_stop(args))


# =============================================================================
# REFRESH / FILTER COMMANDS
# =============================================================================

async def _refresh(args) -> int:
    async with create_dashboard(args.config) as dash:
        if args.refresh_command in ("on", "off"):
            dash.autorefresh.set_auto_refresh(args.refresh_command == "on")
        print(f"🔁 Autorefresh is {'on' if dash.autorefresh.should_refresh else 'off'}")
    return 0


def cmd_refresh(args):
    """Show or change the autorefresh toggle."""
    return asyncio.run(_refresh(args))


def _print_filter(current: FilterConfig) -> None:
    print("\n🔎 Task filter:")
    print(f"   Tags: {current.tags or '(any)'}")
    print(f"   Types: {', '.join(current.task_types) or '(any)'}")
    print(f"   States: {', '.join(current.states) or '(any)'}")
    print(f"   From: {current.start_date or '-'}")
    print(f"   To: {current.end_date or '-'}")


async def _filter(args) -> int:
    async with create_dashboard(args.config) as dash:
        filters = dash.filters

        try:
            if args.filter_command == "clear":
                filters.set_filter(FilterConfig())
            elif args.filter_command == "set":
                changes = {}
                if args.tags is not None:
                    changes["tags"] = args.tags
                if args.types is not None:
                    changes["task_types"] = [t for t in args.types.split(",") if t]
                if args.states is not None:
                    changes["states"] = [s.upper() for s in args.states.split(",") if s]
                if args.start is not None:
                    changes["start_date"] = args.start
                if args.end is not None:
                    changes["end_date"] = args.end
                filters.set_filter(**changes)
        except ValueError as e:
            print(f"❌ Error: {e}", file=sys.stderr)
            return 1

        filters.flush()
        _print_filter(filters.filter)
    return 0


def cmd_filter(args):
    """Show or change the persisted task filter."""
    return asyncio.run(_filter(args))


# =============================================================================
# WATCH COMMAND
# =============================================================================

async def _watch(args) -> int:
    async with create_dashboard(args.config) as dash:
        refresher = dash.autorefresh
        if not refresher.should_refresh:
            print("⚠️  Autorefresh is off; use 'blanket-dash refresh on' to poll", file=sys.stderr)

        runner = asyncio.ensure_future(refresher.run(cycles=args.cycles or None))
        try:
            while not runner.done():
                await asyncio.sleep(refresher.interval)
                await refresher.wait_idle()
                print(f"\n{'='*60}")
                print(f"🔄 {datetime.now().strftime('%H:%M:%S')}  "
                      f"{len(dash.tasks.task_types)} task types, {len(dash.workers.workers)} workers")
                _print_tasks(dash.tasks.tasks)
        finally:
            refresher.stop()
            await runner
    return 0


def cmd_watch(args):
    """Keep refreshing and print the task table."""
    try:
        return asyncio.run(_watch(args))
    except KeyboardInterrupt:
        print("\n\nInterrupted", file=sys.stderr)
        return 0


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Blanket dashboard CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Tasks
  blanket-dash tasks list
  blanket-dash tasks launch build BRANCH=main
  blanket-dash tasks logs 5a1b2c3d4e5f
  blanket-dash tasks stop 5a1b2c3d4e5f

  # Workers
  blanket-dash workers list
  blanket-dash workers launch --check-interval 2
  blanket-dash workers stop 4242

  # Live view
  blanket-dash refresh on
  blanket-dash watch
        """
    )

    parser.add_argument("--config", type=Path, default=None, help="Path to configuration file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Tasks subcommands
    tasks_parser = subparsers.add_parser("tasks", help="Manage tasks")
    tasks_subparsers = tasks_parser.add_subparsers(dest="tasks_command", help="Tasks commands")

    tasks_list_parser = tasks_subparsers.add_parser("list", help="List recent tasks")
    tasks_list_parser.add_argument("--filtered", action="store_true", help="Apply the saved task filter")
    tasks_list_parser.set_defaults(func=cmd_tasks_list)

    tasks_types_parser = tasks_subparsers.add_parser("types", help="List task types")
    tasks_types_parser.set_defaults(func=cmd_tasks_types)

    tasks_show_parser = tasks_subparsers.add_parser("show", help="Show a task")
    tasks_show_parser.add_argument("task_id", help="Task ID")
    tasks_show_parser.set_defaults(func=cmd_tasks_show)

    tasks_launch_parser = tasks_subparsers.add_parser("launch", help="Launch a task")
    tasks_launch_parser.add_argument("task_type", help="Task type name")
    tasks_launch_parser.add_argument("env", nargs="*", help="NAME=VALUE parameters")
    tasks_launch_parser.set_defaults(func=cmd_tasks_launch)

    tasks_stop_parser = tasks_subparsers.add_parser("stop", help="Stop a running task")
    tasks_stop_parser.add_argument("task_id", help="Task ID")
    tasks_stop_parser.set_defaults(func=cmd_tasks_stop)

    tasks_rm_parser = tasks_subparsers.add_parser("rm", help="Delete a task")
    tasks_rm_parser.add_argument("task_id", help="Task ID")
    tasks_rm_parser.set_defaults(func=cmd_tasks_rm)

    tasks_logs_parser = tasks_subparsers.add_parser("logs", help="Follow a task's log")
    tasks_logs_parser.add_argument("task_id", help="Task ID")
    tasks_logs_parser.set_defaults(func=cmd_tasks_logs)

    # Workers subcommands
    workers_parser = subparsers.add_parser("workers", help="Manage workers")
    workers_subparsers = workers_parser.add_subparsers(dest="workers_command", help="Workers commands")

    workers_list_parser = workers_subparsers.add_parser("list", help="List workers")
    workers_list_parser.set_defaults(func=cmd_workers_list)

    workers_launch_parser = workers_subparsers.add_parser("launch", help="Launch a worker")
    workers_launch_parser.add_argument("--check-interval", type=float, default=2.0, help="Seconds between queue checks")
    workers_launch_parser.add_argument("--tags", help="Comma-separated worker tags")
    workers_launch_parser.set_defaults(func=cmd_workers_launch)

    workers_stop_parser = workers_subparsers.add_parser("stop", help="Stop a worker")
    workers_stop_parser.add_argument("pid", type=int, help="Worker pid")
    workers_stop_parser.set_defaults(func=cmd_workers_stop)

    # Refresh command
    refresh_parser = subparsers.add_parser("refresh", help="Autorefresh toggle")
    refresh_parser.add_argument("refresh_command", nargs="?", choices=["on", "off", "status"], default="status")
    refresh_parser.set_defaults(func=cmd_refresh)

    # Filter command
    filter_parser = subparsers.add_parser("filter", help="Saved task filter")
    filter_parser.add_argument("filter_command", nargs="?", choices=["show", "set", "clear"], default="show")
    filter_parser.add_argument("--tags", help="Comma-separated required tags")
    filter_parser.add_argument("--types", help="Comma-separated task types")
    filter_parser.add_argument("--states", help="Comma-separated task states")
    filter_parser.add_argument("--start", help="Created on or after (YYYY-MM-DD)")
    filter_parser.add_argument("--end", help="Created on or before (YYYY-MM-DD)")
    filter_parser.set_defaults(func=cmd_filter)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Live task table")
    watch_parser.add_argument("--cycles", type=int, default=0, help="Number of refresh ticks (0 = forever)")
    watch_parser.set_defaults(func=cmd_watch)

    return parser


def main(argv: Optional[List[str]] = None):
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.config:
        args.config = DEFAULT_CONFIG_FILE

    _setup_logging(args.verbose)

    if hasattr(args, 'func'):
        return args.func(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
