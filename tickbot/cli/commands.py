"""CLI commands for tickbot."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from tickbot import __logo__, __version__
from tickbot.config.schema import Config

app = typer.Typer(
    name="tickbot",
    help=f"{__logo__} tickbot - schedules and task queue for your assistant",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"{__logo__} tickbot v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=_version_callback, is_eager=True),
    verbose: bool = typer.Option(False, "--verbose", help="Show log output"),
):
    """tickbot - schedules and task queue."""
    if verbose:
        logger.enable("tickbot")
    else:
        logger.disable("tickbot")


# ============================================================================
# Shared helpers
# ============================================================================


def _load() -> Config:
    from tickbot.config.loader import load_config

    return load_config()


def _make_store(config: Config):
    from tickbot.config.loader import resolve_data_dir
    from tickbot.cron.store import ScheduleStore

    data_dir = resolve_data_dir(config)
    return ScheduleStore(
        data_dir / "schedules",
        data_dir / "schedule_history.json",
        max_history=config.scheduler.max_history,
        default_tz=config.scheduler.timezone,
    )


def _make_queue(config: Config):
    from tickbot.config.loader import resolve_data_dir
    from tickbot.tasks.queue import RetryBackoff, TaskQueue

    return TaskQueue(
        max_retries=config.tasks.max_retries,
        retry_backoff=RetryBackoff(
            base_s=config.tasks.retry_backoff_s,
            factor=config.tasks.retry_backoff_factor,
            max_s=config.tasks.retry_backoff_max_s,
        ),
        path=resolve_data_dir(config) / "tasks.json",
    )


def _fmt_dt(dt: datetime | None) -> str:
    if dt is None:
        return ""
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(1)


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """Show scheduler and queue status."""
    from tickbot.config.loader import get_config_path, resolve_data_dir
    from tickbot.cron.service import SchedulerService
    from tickbot.tasks.types import TaskStatus

    config = _load()
    config_path = get_config_path()
    console.print(f"{__logo__} tickbot status\n")
    console.print(
        f"Config: {config_path} "
        f"{'[green]✓[/green]' if config_path.exists() else '[dim](defaults)[/dim]'}"
    )
    console.print(f"Data:   {resolve_data_dir(config)}")

    info = SchedulerService(_make_store(config)).status()
    state = "[green]enabled[/green]" if config.scheduler.enabled else "[dim]disabled[/dim]"
    console.print(f"Scheduler: {state}, {info['enabled']}/{info['schedules']} schedule(s) active")
    if info["next_wake_at"]:
        console.print(f"Next run:  {_fmt_dt(info['next_wake_at'])}")

    queue = _make_queue(config)
    counts = {s: 0 for s in TaskStatus}
    for task in queue.all_tasks(limit=None):
        counts[task.status] += 1
    summary = ", ".join(f"{s.value}={n}" for s, n in counts.items() if n)
    console.print(f"Tasks:     {summary or 'none'}")


# ============================================================================
# Schedule Commands
# ============================================================================

schedule_app = typer.Typer(help="Manage recurring schedules")
app.add_typer(schedule_app, name="schedule")


@schedule_app.command("list")
def schedule_list(
    all: bool = typer.Option(False, "--all", "-a", help="Include disabled schedules"),
    agent: str | None = typer.Option(None, "--agent", help="Only schedules for this agent"),
):
    """List schedules."""
    store = _make_store(_load())
    entries = store.list_schedules(include_disabled=all, agent_name=agent)

    if not entries:
        console.print("No schedules.")
        return

    table = Table(title="Schedules")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Cron")
    table.add_column("Repeats")
    table.add_column("Agent")
    table.add_column("Status")
    table.add_column("Next Run")
    table.add_column("Last Run")

    for entry in entries:
        state = "[green]enabled[/green]" if entry.enabled else "[dim]disabled[/dim]"
        cron = f"{entry.cron_expression} ({entry.tz})" if entry.tz else entry.cron_expression
        table.add_row(
            entry.id[:8],
            f"{entry.icon} {entry.name}",
            cron,
            entry.repeat_summary,
            entry.agent_name,
            state,
            _fmt_dt(entry.next_run_at),
            _fmt_dt(entry.last_run_at),
        )

    console.print(table)


def _resolve_entry_id(store, prefix: str) -> str:
    """Accept a full id or a unique prefix (as shown by ``schedule list``)."""
    if store.get(prefix):
        return prefix
    matches = [e.id for e in store.list_schedules() if e.id.startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    return prefix


@schedule_app.command("add")
def schedule_add(
    name: str = typer.Option(None, "--name", "-n", help="Schedule name"),
    prompt: str = typer.Option(None, "--prompt", "-p", help="Prompt delivered to the agent"),
    cron_expr: str = typer.Option(None, "--cron", "-c", help="Cron expression (e.g. '0 9 * * *')"),
    agent: str = typer.Option("default", "--agent", help="Target agent"),
    icon: str = typer.Option("⏰", "--icon", help="Icon shown in listings"),
    tz: str | None = typer.Option(None, "--tz", help="IANA timezone (e.g. 'Europe/Berlin')"),
    template: str | None = typer.Option(None, "--template", "-t", help="Start from a built-in template"),
    disabled: bool = typer.Option(False, "--disabled", help="Create the schedule disabled"),
):
    """Add a schedule."""
    from tickbot.cron.types import get_template

    if template:
        tpl = get_template(template)
        if tpl is None:
            _fail(f"unknown template '{template}'")
        name = name or tpl.name
        prompt = prompt or tpl.prompt
        cron_expr = cron_expr or tpl.cron_expression
        icon = tpl.icon if icon == "⏰" else icon

    if not name or not prompt or not cron_expr:
        _fail("--name, --prompt and --cron are required (or use --template)")

    store = _make_store(_load())
    try:
        entry = store.create(
            name,
            cron_expr,
            prompt,
            agent_name=agent,
            icon=icon,
            enabled=not disabled,
            tz=tz,
        )
    except ValueError as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Added schedule '{entry.name}' ({entry.id})")
    console.print(f"  {entry.repeat_summary}, next run {_fmt_dt(entry.next_run_at) or 'never'}")


@schedule_app.command("remove")
def schedule_remove(
    entry_id: str = typer.Argument(..., help="Schedule ID to remove"),
):
    """Remove a schedule."""
    store = _make_store(_load())
    if store.delete(_resolve_entry_id(store, entry_id)):
        console.print(f"[green]✓[/green] Removed schedule {entry_id}")
    else:
        console.print(f"[red]Schedule {entry_id} not found[/red]")


@schedule_app.command("enable")
def schedule_enable(
    entry_id: str = typer.Argument(..., help="Schedule ID"),
    disable: bool = typer.Option(False, "--disable", help="Disable instead of enable"),
):
    """Enable or disable a schedule."""
    store = _make_store(_load())
    entry = store.set_enabled(_resolve_entry_id(store, entry_id), enabled=not disable)
    if entry:
        state = "disabled" if disable else "enabled"
        console.print(f"[green]✓[/green] Schedule '{entry.name}' {state}")
    else:
        console.print(f"[red]Schedule {entry_id} not found[/red]")


@schedule_app.command("run")
def schedule_run(
    entry_id: str = typer.Argument(..., help="Schedule ID to run"),
):
    """Fire a schedule once, now, without moving its next run."""
    from tickbot.cron.service import SchedulerService
    from tickbot.cron.types import ExecutionStatus
    from tickbot.executor import load_executor

    config = _load()
    try:
        executor = load_executor(config.executor.schedules) if config.executor.schedules else None
    except ValueError as e:
        _fail(str(e))

    store = _make_store(config)
    service = SchedulerService(store, executor)
    record = asyncio.run(service.run_now(_resolve_entry_id(store, entry_id)))
    if record is None:
        console.print(f"[red]Schedule {entry_id} not found[/red]")
        raise typer.Exit(1)
    if record.status == ExecutionStatus.SUCCESS:
        console.print(f"[green]✓[/green] Ran '{record.schedule_name}'")
    else:
        console.print(f"[red]'{record.schedule_name}' failed: {record.error_message}[/red]")
        raise typer.Exit(1)


@schedule_app.command("history")
def schedule_history(
    entry_id: str | None = typer.Argument(None, help="Only this schedule"),
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum records"),
):
    """Show recent schedule executions (newest first)."""
    store = _make_store(_load())
    schedule_id = _resolve_entry_id(store, entry_id) if entry_id else None
    records = store.history(schedule_id=schedule_id, limit=limit)
    if not records:
        console.print("No executions recorded.")
        return

    table = Table(title="Schedule History")
    table.add_column("Started")
    table.add_column("Schedule")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Error")
    styles = {"success": "green", "failure": "red", "running": "yellow"}
    for record in records:
        duration = f"{record.duration.total_seconds():.1f}s" if record.duration is not None else ""
        style = styles.get(record.status.value, "white")
        table.add_row(
            _fmt_dt(record.started_at),
            record.schedule_name,
            f"[{style}]{record.status.value}[/{style}]",
            duration,
            record.error_message or "",
        )
    console.print(table)


@schedule_app.command("next")
def schedule_next(
    cron_expr: str = typer.Argument(..., help="Cron expression to preview"),
    count: int = typer.Option(5, "--count", "-n", help="How many occurrences"),
    tz: str | None = typer.Option(None, "--tz", help="IANA timezone"),
):
    """Describe a cron expression and list its next occurrences."""
    from tickbot.cron.expression import CronExpression
    from tickbot.cron.store import resolve_timezone

    expr = CronExpression.parse(cron_expr)
    if expr is None:
        _fail(f"invalid cron expression '{cron_expr}'")
    try:
        zone = resolve_timezone(tz)
    except ValueError as e:
        _fail(str(e))

    console.print(f"{expr.human_readable}")
    current = datetime.now(timezone.utc)
    for _ in range(max(0, count)):
        nxt = expr.next_date(current, zone)
        if nxt is None:
            console.print("[dim]no further occurrences[/dim]")
            break
        console.print(f"  {nxt.strftime('%Y-%m-%d %H:%M %Z')}")
        current = nxt


@schedule_app.command("templates")
def schedule_templates():
    """List built-in schedule templates."""
    from tickbot.cron.types import BUILTIN_TEMPLATES

    table = Table(title="Templates")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Cron")
    table.add_column("Description")
    for tpl in BUILTIN_TEMPLATES:
        table.add_row(tpl.id, f"{tpl.icon} {tpl.name}", tpl.cron_expression, tpl.description)
    console.print(table)


# ============================================================================
# Task Commands
# ============================================================================

tasks_app = typer.Typer(help="Inspect and manage the task queue")
app.add_typer(tasks_app, name="tasks")


@tasks_app.command("list")
def tasks_list(
    limit: int = typer.Option(50, "--limit", "-l", help="Maximum tasks"),
    pending: bool = typer.Option(False, "--pending", help="Only pending tasks, in claim order"),
):
    """List tasks."""
    queue = _make_queue(_load())
    tasks = queue.pending_tasks()[:limit] if pending else queue.all_tasks(limit=limit)
    if not tasks:
        console.print("No tasks.")
        return

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Device")
    table.add_column("Retries")
    table.add_column("Capabilities")
    table.add_column("Updated")
    for task in tasks:
        table.add_row(
            task.short_id,
            task.type.display_name,
            task.priority.value,
            task.status.value,
            task.assigned_device_id or "",
            str(task.retry_count),
            ", ".join(sorted(task.required_capabilities)) or "any",
            _fmt_dt(task.updated_at),
        )
    console.print(table)


@tasks_app.command("enqueue")
def tasks_enqueue(
    task_type: str = typer.Argument(..., help="llm_query, tool_execution, tts_playback, notification, ..."),
    payload: str = typer.Option("{}", "--payload", help="JSON object payload"),
    capability: list[str] = typer.Option([], "--cap", help="Required capability (repeatable)"),
    priority: str = typer.Option("normal", "--priority", help="urgent, high, normal or low"),
    deadline: str | None = typer.Option(None, "--deadline", help="ISO timestamp or seconds from now"),
):
    """Add a task to the queue."""
    from tickbot.utils.helpers import from_iso, now_utc

    deadline_dt = None
    if deadline:
        if deadline.isdigit():
            deadline_dt = now_utc() + timedelta(seconds=int(deadline))
        else:
            deadline_dt = from_iso(deadline)
            if deadline_dt is None:
                _fail(f"invalid deadline '{deadline}'")

    queue = _make_queue(_load())
    try:
        task = queue.enqueue(task_type, payload, capability, priority, deadline_dt)
    except ValueError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] Enqueued {task.type.value} task {task.id}")


def _resolve_task_id(queue, prefix: str) -> str:
    if queue.get(prefix):
        return prefix
    matches = [t.id for t in queue.all_tasks(limit=None) if t.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else prefix


@tasks_app.command("cancel")
def tasks_cancel(
    task_id: str = typer.Argument(..., help="Task ID"),
):
    """Cancel a task that has not finished."""
    queue = _make_queue(_load())
    if queue.cancel(_resolve_task_id(queue, task_id)):
        console.print(f"[green]✓[/green] Cancelled task {task_id}")
    else:
        console.print(f"[red]Task {task_id} not found or already finished[/red]")
        raise typer.Exit(1)


@tasks_app.command("cleanup")
def tasks_cleanup(
    older_than: float = typer.Option(None, "--older-than", help="Age in seconds (default: config)"),
):
    """Remove finished tasks older than the cutoff."""
    config = _load()
    seconds = older_than if older_than is not None else config.tasks.cleanup_after_s
    removed = _make_queue(config).cleanup(timedelta(seconds=seconds))
    console.print(f"[green]✓[/green] Removed {removed} task(s)")


@tasks_app.command("sweep")
def tasks_sweep():
    """Apply deadlines: expired tasks go through the normal failure path."""
    expired = _make_queue(_load()).check_deadlines()
    console.print(f"[green]✓[/green] {len(expired)} task(s) past deadline")


# ============================================================================
# Runner
# ============================================================================


@app.command()
def run():
    """Run the scheduler and the local task worker until interrupted."""
    from tickbot.cron.service import SchedulerService
    from tickbot.executor import load_executor
    from tickbot.tasks.worker import TaskWorker

    config = _load()
    try:
        schedule_executor = load_executor(config.executor.schedules) if config.executor.schedules else None
        task_executor = load_executor(config.executor.tasks) if config.executor.tasks else None
    except ValueError as e:
        _fail(str(e))

    if schedule_executor is None:
        console.print("[yellow]No schedule executor configured; firings will be recorded as failures[/yellow]")

    scheduler = SchedulerService(
        _make_store(config),
        schedule_executor,
        interval_s=config.scheduler.tick_interval_s,
    )
    worker = None
    if task_executor is not None:
        worker = TaskWorker(
            _make_queue(config),
            task_executor,
            config.tasks.device_id,
            config.tasks.capabilities,
            poll_interval_s=config.tasks.poll_interval_s,
            sweep_interval_s=config.tasks.sweep_interval_s,
            cleanup_after=timedelta(seconds=config.tasks.cleanup_after_s),
        )

    async def _main() -> None:
        if config.scheduler.enabled:
            await scheduler.start()
        if worker:
            await worker.start()
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.stop()
            if worker:
                worker.stop()

    console.print(f"{__logo__} tickbot running (Ctrl+C to stop)")
    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        console.print("\nShutting down...")
