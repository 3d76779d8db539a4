"""CLI entrypoint for taskminder."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
import datetime as dt
import logging
from pathlib import Path
import sys
import time
from typing import Annotated, Iterator

import click
import typer

from . import render, storage
from .channels import DesktopNotificationChannel, EmailGatewaySmsChannel, SmtpEmailChannel
from .clock import format_timestamp, parse_when
from .dispatch import Dispatcher, Recipients
from .logging_setup import setup_logging
from .models import (
    VALID_KINDS,
    VALID_PRIORITIES,
    VALID_STATUSES,
    PersistenceFailure,
    StoreSnapshot,
    TaskError,
    TaskValidationError,
)
from .scheduler import ReminderScheduler
from .settings import Settings, resolve_settings
from .store import TaskStore

logger = logging.getLogger(__name__)

DataDirOption = Annotated[
    Path | None,
    typer.Option("--data-dir", help="Data directory (default: $TASKMINDER_HOME or ~/.taskminder)"),
]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Log debug output to stderr")]
TaskIdArgument = Annotated[int, typer.Argument(help="Task id")]
ReminderIdArgument = Annotated[int, typer.Argument(help="Reminder id within the task")]
JsonOption = Annotated[bool, typer.Option("--json")]
PRIORITY_CHOICE = click.Choice(VALID_PRIORITIES)


@dataclass
class CliState:
    data_dir: Path
    verbose: bool = False
    settings: Settings | None = None


app = typer.Typer(
    help="Task manager with scheduled email, SMS and desktop reminders",
    no_args_is_help=True,
)


def _can_render_rich_output() -> bool:
    return sys.stdout.isatty()


def _print_rich(renderable) -> None:
    from rich.console import Console

    Console().print(renderable)


def _warn_config(message: str) -> None:
    typer.echo(f"Warning: {message}", err=True)


def _run_and_handle(fn) -> None:
    try:
        fn()
    except TaskError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _state(ctx: typer.Context) -> CliState:
    state = ctx.find_root().obj
    if not isinstance(state, CliState):
        state = CliState(data_dir=storage.default_data_dir())
        ctx.find_root().obj = state
    return state


def _configure_logging(state: CliState, settings: Settings) -> None:
    cfg = settings.logging
    level = logging.DEBUG if state.verbose else cfg.level_number
    setup_logging(
        log_dir=storage.log_dir(state.data_dir),
        console=state.verbose or cfg.console_output,
        console_level=level,
        file_level=level,
        max_bytes=cfg.max_file_size_mb * 1024 * 1024,
        backup_count=cfg.max_files,
    )


def _settings(ctx: typer.Context) -> Settings:
    state = _state(ctx)
    if state.settings is None:
        storage.ensure_layout(state.data_dir)
        state.settings = resolve_settings(state.data_dir, warn=_warn_config)
        _configure_logging(state, state.settings)
    return state.settings


def _repository(ctx: typer.Context) -> storage.YamlTaskRepository:
    return storage.YamlTaskRepository(storage.tasks_path(_state(ctx).data_dir))


def _open_store(ctx: typer.Context, repository: storage.YamlTaskRepository | None = None) -> TaskStore:
    settings = _settings(ctx)
    return TaskStore.open(repository or _repository(ctx), retry_policy=settings.retry.policy())


@contextmanager
def _editing(ctx: typer.Context) -> Iterator[TaskStore]:
    """Load, mutate and save while holding the task file lock."""
    repository = _repository(ctx)
    with repository.locked():
        store = _open_store(ctx, repository)
        yield store
        _save(store)


def _save(store: TaskStore) -> None:
    if not store.flush():
        raise PersistenceFailure("Unable to save tasks (see log for details)")


def _build_dispatcher(settings: Settings) -> Dispatcher:
    timeout = settings.scheduler.dispatch_timeout_seconds
    email = SmtpEmailChannel(settings.email, timeout=timeout) if settings.email.configured else None
    sms = EmailGatewaySmsChannel(settings.email, timeout=timeout) if settings.sms.configured else None
    return Dispatcher(
        email=email,
        sms=sms,
        notifier=DesktopNotificationChannel(timeout=timeout),
        recipients=Recipients(
            email=settings.email.address,
            phone_number=settings.sms.phone_number,
            carrier=settings.sms.carrier,
        ),
    )


def _parse_when(raw: str) -> dt.datetime:
    try:
        return parse_when(raw)
    except ValueError as exc:
        raise TaskValidationError(str(exc)) from exc


@app.callback()
def root_callback(
    ctx: typer.Context,
    data_dir: DataDirOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Manage tasks and deliver their reminders."""
    root = data_dir.expanduser() if data_dir is not None else storage.default_data_dir()
    ctx.obj = CliState(data_dir=root.resolve(), verbose=verbose)


@app.command("init")
def init_cmd(ctx: typer.Context) -> None:
    """Create the data directory, default config and task file."""

    def _inner() -> None:
        data_dir = _state(ctx).data_dir
        storage.ensure_layout(data_dir)
        wrote_config = storage.write_default_config_if_missing(data_dir)
        tasks_file = storage.tasks_path(data_dir)
        if not tasks_file.exists():
            storage.YamlTaskRepository(tasks_file).save(StoreSnapshot())
        _settings(ctx)

        typer.echo(f"Initialized taskminder data at: {data_dir}")
        cfg_path = storage.config_path(data_dir)
        if wrote_config:
            typer.echo(f"Wrote default config: {cfg_path}")
        else:
            typer.echo(f"Config already exists: {cfg_path}")

    _run_and_handle(_inner)


@app.command("create")
def create_cmd(
    ctx: typer.Context,
    title: Annotated[str, typer.Argument(help="Task title")],
    description: Annotated[str, typer.Option("--description", "-d")] = "",
    priority: Annotated[str, typer.Option("--priority", "-p", click_type=PRIORITY_CHOICE)] = "medium",
    due: Annotated[str | None, typer.Option("--due", help="YYYY-MM-DD [HH:MM], local time")] = None,
    tag: Annotated[list[str], typer.Option("--tag", help="Can be repeated")] = [],
) -> None:
    """Create a pending task."""

    def _inner() -> None:
        due_at = _parse_when(due) if due else None
        with _editing(ctx) as store:
            task_id = store.create_task(
                title,
                description=description,
                priority=priority,
                due_at=due_at,
                tags=tag,
            )
        typer.echo(f"Created: {title.strip()} (#{task_id})")

    _run_and_handle(_inner)


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    status: Annotated[
        str | None,
        typer.Argument(
            help="Optional status filter",
            click_type=click.Choice(VALID_STATUSES),
            show_default=False,
        ),
    ] = None,
    priority: Annotated[str | None, typer.Option("--priority", click_type=PRIORITY_CHOICE)] = None,
    tag: Annotated[list[str], typer.Option("--tag", help="Can be repeated")] = [],
    as_json: JsonOption = False,
) -> None:
    """List tasks grouped by status and sorted by priority and due date."""

    def _inner() -> None:
        store = _open_store(ctx)
        tasks = store.list_tasks(status, priority=priority, include_tags=tag)
        if as_json:
            typer.echo(render.render_task_list_json(tasks, store.retry_policy))
        elif _can_render_rich_output():
            _print_rich(render.render_task_list_rich(tasks, store.retry_policy))
        else:
            typer.echo(render.render_task_list_plain(tasks, store.retry_policy))

    _run_and_handle(_inner)


@app.command("search")
def search_cmd(
    ctx: typer.Context,
    query: Annotated[str, typer.Argument(help="Text to look for in title, description and tags")],
    as_json: JsonOption = False,
) -> None:
    """Search tasks by text."""

    def _inner() -> None:
        store = _open_store(ctx)
        tasks = store.search_tasks(query)
        if as_json:
            typer.echo(render.render_task_list_json(tasks, store.retry_policy))
        elif _can_render_rich_output():
            _print_rich(render.render_task_list_rich(tasks, store.retry_policy))
        else:
            typer.echo(render.render_task_list_plain(tasks, store.retry_policy))

    _run_and_handle(_inner)


@app.command("view")
def view_cmd(ctx: typer.Context, task_id: TaskIdArgument, as_json: JsonOption = False) -> None:
    """Show one task with its reminders."""

    def _inner() -> None:
        store = _open_store(ctx)
        task = store.require_task(task_id)
        if as_json:
            typer.echo(render.render_task_detail_json(task, store.retry_policy))
        elif _can_render_rich_output():
            _print_rich(render.render_task_detail_rich(task, store.retry_policy))
        else:
            typer.echo(render.render_task_detail_plain(task, store.retry_policy))

    _run_and_handle(_inner)


@app.command("update")
def update_cmd(
    ctx: typer.Context,
    task_id: TaskIdArgument,
    title: Annotated[str | None, typer.Option("--title")] = None,
    description: Annotated[str | None, typer.Option("--description", "-d")] = None,
    priority: Annotated[str | None, typer.Option("--priority", "-p", click_type=PRIORITY_CHOICE)] = None,
    due: Annotated[str | None, typer.Option("--due")] = None,
    clear_due: Annotated[bool, typer.Option("--clear-due")] = False,
    tag: Annotated[list[str], typer.Option("--tag")] = [],
    replace_tags: Annotated[bool, typer.Option("--replace-tags")] = False,
) -> None:
    """Update task fields."""

    def _inner() -> None:
        if due and clear_due:
            raise TaskValidationError("--due and --clear-due cannot be combined")
        due_at = _parse_when(due) if due else None
        with _editing(ctx) as store:
            task = store.update_task(
                task_id,
                title=title,
                description=description,
                priority=priority,
                due_at=due_at,
                clear_due=clear_due,
                tags=tag,
                replace_tags=replace_tags,
            )
        typer.echo(f"Updated: {task.title} (#{task.task_id})")

    _run_and_handle(_inner)


def _set_status(ctx: typer.Context, task_id: int, status: str, verb: str) -> None:
    def _inner() -> None:
        with _editing(ctx) as store:
            task = store.update_status(task_id, status)
        typer.echo(f"{verb}: {task.title} (#{task.task_id})")

    _run_and_handle(_inner)


@app.command("start")
def start_cmd(ctx: typer.Context, task_id: TaskIdArgument) -> None:
    """Move a task to in_progress."""
    _set_status(ctx, task_id, "in_progress", "Started")


@app.command("complete")
def complete_cmd(ctx: typer.Context, task_id: TaskIdArgument) -> None:
    """Mark a task completed; its reminders stop firing."""
    _set_status(ctx, task_id, "completed", "Completed")


@app.command("cancel")
def cancel_cmd(ctx: typer.Context, task_id: TaskIdArgument) -> None:
    """Mark a task cancelled; its reminders stop firing."""
    _set_status(ctx, task_id, "cancelled", "Cancelled")


@app.command("delete")
def delete_cmd(ctx: typer.Context, task_id: TaskIdArgument) -> None:
    """Delete a task and its reminders."""

    def _inner() -> None:
        with _editing(ctx) as store:
            store.delete_task(task_id)
        typer.echo(f"Deleted: #{task_id}")

    _run_and_handle(_inner)


@app.command("remind")
def remind_cmd(
    ctx: typer.Context,
    task_id: TaskIdArgument,
    at: Annotated[str | None, typer.Option("--at", help="YYYY-MM-DD [HH:MM], local time")] = None,
    in_minutes: Annotated[int | None, typer.Option("--in-minutes", min=0)] = None,
    kind: Annotated[str, typer.Option("--kind", click_type=click.Choice(VALID_KINDS))] = "email",
    allow_past: Annotated[bool, typer.Option("--allow-past", help="Accept a trigger time in the past")] = False,
) -> None:
    """Schedule a reminder for a task."""

    def _inner() -> None:
        if (at is None) == (in_minutes is None):
            raise TaskValidationError("Provide exactly one of --at or --in-minutes")
        with _editing(ctx) as store:
            if at is not None:
                trigger_at = _parse_when(at)
            else:
                trigger_at = store.clock.now() + dt.timedelta(minutes=in_minutes)
            reminder_id = store.add_reminder(task_id, trigger_at, kind, allow_past=allow_past)
        typer.echo(f"Reminder #{reminder_id} ({kind}) set for task #{task_id} at {format_timestamp(trigger_at)}")

    _run_and_handle(_inner)


@app.command("unremind")
def unremind_cmd(ctx: typer.Context, task_id: TaskIdArgument, reminder_id: ReminderIdArgument) -> None:
    """Remove a reminder from a task."""

    def _inner() -> None:
        with _editing(ctx) as store:
            store.remove_reminder(task_id, reminder_id)
        typer.echo(f"Removed reminder #{reminder_id} from task #{task_id}")

    _run_and_handle(_inner)


@app.command("reset-reminder")
def reset_reminder_cmd(ctx: typer.Context, task_id: TaskIdArgument, reminder_id: ReminderIdArgument) -> None:
    """Clear attempts on a failed reminder so it is retried."""

    def _inner() -> None:
        with _editing(ctx) as store:
            store.reset_reminder(task_id, reminder_id)
        typer.echo(f"Reset reminder #{reminder_id} of task #{task_id}")

    _run_and_handle(_inner)


@app.command("due")
def due_cmd(ctx: typer.Context, as_json: JsonOption = False) -> None:
    """Show reminders due now and reminders that ran out of attempts."""

    def _inner() -> None:
        store = _open_store(ctx)
        due = store.list_due(store.clock.now())
        exhausted = store.list_exhausted()
        if as_json:
            typer.echo(render.render_due_json(due, exhausted, store.retry_policy))
        elif _can_render_rich_output():
            _print_rich(render.render_due_rich(due, exhausted, store.retry_policy))
        else:
            typer.echo(render.render_due_plain(due, exhausted, store.retry_policy))

    _run_and_handle(_inner)


@app.command("tick")
def tick_cmd(ctx: typer.Context) -> None:
    """Run one scheduler cycle and exit."""

    def _inner() -> None:
        settings = _settings(ctx)
        store = _open_store(ctx)
        scheduler = ReminderScheduler(store, _build_dispatcher(settings))
        report = scheduler.run_cycle()
        typer.echo(render.render_cycle_report(report))
        if not report.saved:
            raise PersistenceFailure("Delivery results could not be saved")

    _run_and_handle(_inner)


@app.command("run")
def run_cmd(
    ctx: typer.Context,
    interval: Annotated[
        float | None,
        typer.Option("--interval", min=0.5, help="Seconds between cycles (default from config)"),
    ] = None,
) -> None:
    """Run the reminder scheduler in the foreground until interrupted."""

    def _inner() -> None:
        settings = _settings(ctx)
        store = _open_store(ctx)
        poll = interval if interval is not None else settings.scheduler.poll_interval_seconds
        scheduler = ReminderScheduler(
            store,
            _build_dispatcher(settings),
            poll_interval=poll,
            reload_each_cycle=True,
        )
        scheduler.start()
        typer.echo(f"Scheduler running every {poll:g}s. Press Ctrl+C to stop.")
        try:
            while scheduler.running:
                time.sleep(0.5)
        except KeyboardInterrupt:
            typer.echo("Stopping scheduler...")
        finally:
            if not scheduler.stop(timeout=settings.scheduler.dispatch_timeout_seconds + 5):
                logger.warning("Scheduler thread did not stop in time")
        _save(store)
        typer.echo(f"Scheduler stopped after {scheduler.cycles} cycles.")

    _run_and_handle(_inner)


@app.command("test-email")
def test_email_cmd(
    ctx: typer.Context,
    to: Annotated[str | None, typer.Option("--to", help="Recipient (default: email.address)")] = None,
) -> None:
    """Send a test message through the configured SMTP server."""

    def _inner() -> None:
        settings = _settings(ctx)
        if not settings.email.configured:
            raise TaskValidationError(
                f"Email is not configured. Set email.address, email.smtp_server and email.username in "
                f"{storage.config_path(_state(ctx).data_dir)}"
            )
        recipient = to or settings.email.address
        channel = SmtpEmailChannel(settings.email, timeout=settings.scheduler.dispatch_timeout_seconds)
        channel.send(
            recipient,
            "Test Email from Task Scheduler",
            "This is a test email from your task scheduler. If you receive this, email is configured correctly.",
        )
        typer.echo(f"Test email sent to {recipient}")

    _run_and_handle(_inner)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
