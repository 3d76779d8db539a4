"""Renderers for list, detail and scheduler command output."""

from __future__ import annotations

import json
from typing import Any, Iterable

from .clock import format_timestamp, to_iso
from .models import STATUS_DISPLAY_ORDER, Reminder, Task
from .retry import RetryPolicy
from .scheduler import CycleReport

STATUS_LABELS = {
    "pending": "PENDING",
    "in_progress": "IN PROGRESS",
    "completed": "DONE",
    "cancelled": "CANCELLED",
}
LIST_COLUMNS = (
    ("id", 4),
    ("title", 32),
    ("status", 11),
    ("priority", 8),
    ("due", 16),
    ("reminders", 9),
    ("tags", 20),
)
NOTE_WIDTH = 100


def _priority_style(priority: str) -> str:
    return {
        "critical": "bold red",
        "high": "bold yellow",
        "medium": "cyan",
        "low": "dim",
    }.get(priority, "white")


def _status_style(status: str) -> str:
    return {
        "pending": "magenta",
        "in_progress": "cyan",
        "completed": "green",
        "cancelled": "dim",
    }.get(status, "white")


def _state_style(label: str) -> str:
    return {
        "pending": "magenta",
        "delivered": "green",
        "failed": "yellow",
        "partial": "yellow",
        "exhausted": "bold red",
    }.get(label, "white")


def _truncate(value: str, width: int) -> str:
    if width <= 0:
        return ""
    if len(value) <= width:
        return value
    if width == 1:
        return "…"
    return f"{value[: width - 1]}…"


def reminder_label(reminder: Reminder, policy: RetryPolicy) -> str:
    """One word summarizing where a reminder is in its delivery lifecycle."""
    if policy.is_exhausted(reminder):
        return "exhausted"
    if reminder.is_partial:
        return "partial"
    return reminder.state


def _exhausted(task: Task, policy: RetryPolicy) -> list[Reminder]:
    return [reminder for reminder in task.reminders if policy.is_exhausted(reminder)]


def _reminder_summary(task: Task, policy: RetryPolicy) -> str:
    if not task.reminders:
        return "-"
    open_count = sum(1 for reminder in task.reminders if reminder.state != "delivered")
    summary = f"{open_count}/{len(task.reminders)}"
    return f"{summary} !" if _exhausted(task, policy) else summary


def _exhausted_notes(task: Task, policy: RetryPolicy) -> list[str]:
    """One line per reminder that ran out of attempts, for list output."""
    return [
        _truncate(
            f"! #{task.task_id} reminder #{reminder.reminder_id} exhausted "
            f"({reminder.attempts}/{policy.max_attempts}): {reminder.last_error or 'no error recorded'}",
            NOTE_WIDTH,
        )
        for reminder in _exhausted(task, policy)
    ]


def _task_list_row(task: Task, policy: RetryPolicy) -> dict[str, str]:
    return {
        "id": str(task.task_id),
        "title": task.title,
        "status": task.status,
        "priority": task.priority,
        "due": format_timestamp(task.due_at),
        "reminders": _reminder_summary(task, policy),
        "tags": ", ".join(task.tags) or "-",
    }


def reminder_to_payload(reminder: Reminder, policy: RetryPolicy) -> dict[str, Any]:
    return {
        "reminder_id": reminder.reminder_id,
        "trigger_at": to_iso(reminder.trigger_at),
        "kind": reminder.kind,
        "channels": list(reminder.channels),
        "state": reminder.state,
        "attempts": reminder.attempts,
        "last_attempt_at": to_iso(reminder.last_attempt_at),
        "last_error": reminder.last_error,
        "delivered_channels": list(reminder.delivered_channels),
        "exhausted": policy.is_exhausted(reminder),
        "next_retry_at": to_iso(policy.next_retry_at(reminder)),
    }


def task_to_payload(task: Task, policy: RetryPolicy) -> dict[str, Any]:
    return {
        "task_id": task.task_id,
        "title": task.title,
        "description": task.description,
        "priority": task.priority,
        "status": task.status,
        "due_at": to_iso(task.due_at),
        "tags": list(task.tags),
        "created_at": to_iso(task.created_at),
        "updated_at": to_iso(task.updated_at),
        "reminders": [reminder_to_payload(reminder, policy) for reminder in task.reminders],
    }


def render_task_list_plain(tasks: Iterable[Task], policy: RetryPolicy) -> str:
    task_list = list(tasks)
    if not task_list:
        return "No tasks found."

    lines = []
    lines.append("  ".join(name.ljust(width) for name, width in LIST_COLUMNS))
    lines.append("  ".join("-" * width for _, width in LIST_COLUMNS))
    for task in task_list:
        row = _task_list_row(task, policy)
        lines.append(
            "  ".join(_truncate(row[name], width).ljust(width) for name, width in LIST_COLUMNS).rstrip()
        )
        lines.extend(f"      {note}" for note in _exhausted_notes(task, policy))
    return "\n".join(lines)


def render_task_list_rich(tasks: Iterable[Task], policy: RetryPolicy):
    from rich import box
    from rich.console import Group
    from rich.table import Table
    from rich.text import Text

    task_list = list(tasks)
    if not task_list:
        return "No tasks found."

    by_status: dict[str, list[Task]] = {status: [] for status in STATUS_DISPLAY_ORDER}
    for task in task_list:
        by_status.setdefault(task.status, []).append(task)

    renderables = []
    for status, bucket in by_status.items():
        if not bucket:
            continue
        renderables.append(
            Text(
                f"{STATUS_LABELS.get(status, status.upper())} ({len(bucket)})",
                style=f"bold {_status_style(status)}",
            )
        )

        table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold white", pad_edge=False)
        for name, width in LIST_COLUMNS:
            table.add_column(
                name,
                style="bold" if name == "title" else ("dim" if name == "id" else ""),
                min_width=width,
                max_width=width,
                overflow="ellipsis",
                no_wrap=True,
            )
        notes = []
        for task in bucket:
            row = _task_list_row(task, policy)
            notes.extend(_exhausted_notes(task, policy))
            table.add_row(
                row["id"],
                row["title"],
                Text(row["status"], style=_status_style(row["status"])),
                Text(row["priority"], style=_priority_style(row["priority"])),
                row["due"],
                Text(row["reminders"], style=_state_style("exhausted") if row["reminders"].endswith("!") else ""),
                row["tags"],
            )
        renderables.append(table)
        renderables.extend(Text(note, style=_state_style("exhausted")) for note in notes)
        renderables.append(Text(""))

    if renderables and isinstance(renderables[-1], Text) and not renderables[-1].plain:
        renderables.pop()
    return Group(*renderables)


def render_task_list_json(tasks: Iterable[Task], policy: RetryPolicy) -> str:
    return json.dumps([task_to_payload(task, policy) for task in tasks], indent=2)


def _reminder_line(reminder: Reminder, policy: RetryPolicy) -> str:
    parts = [
        f"#{reminder.reminder_id}",
        format_timestamp(reminder.trigger_at),
        reminder.kind,
        reminder_label(reminder, policy),
        f"attempts={reminder.attempts}/{policy.max_attempts}",
    ]
    if reminder.delivered_channels and reminder.state != "delivered":
        parts.append(f"sent={','.join(reminder.delivered_channels)}")
    next_retry = policy.next_retry_at(reminder)
    if next_retry is not None:
        parts.append(f"retry_at={format_timestamp(next_retry)}")
    line = "  ".join(parts)
    if reminder.last_error:
        line = f"{line}\n      error: {reminder.last_error}"
    return line


def render_task_detail_plain(task: Task, policy: RetryPolicy) -> str:
    tags = ", ".join(task.tags) if task.tags else "-"
    lines = [
        f"{task.title} (#{task.task_id})",
        f"[{task.status}] [{task.priority}]",
        f"due: {format_timestamp(task.due_at)}    tags: {tags}",
        f"created: {format_timestamp(task.created_at)}    updated: {format_timestamp(task.updated_at)}",
        "",
        task.description or "(no description)",
        "",
    ]
    if task.reminders:
        lines.append("reminders:")
        lines.extend(f"  {_reminder_line(reminder, policy)}" for reminder in task.reminders)
    else:
        lines.append("reminders: -")
    return "\n".join(lines)


def _reminder_table(rows: list[tuple[Task | None, Reminder]], policy: RetryPolicy):
    from rich import box
    from rich.table import Table
    from rich.text import Text

    show_task = any(task is not None for task, _ in rows)
    table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold white", pad_edge=False)
    if show_task:
        table.add_column("task", style="bold", no_wrap=True)
    table.add_column("id", style="dim")
    table.add_column("trigger")
    table.add_column("kind")
    table.add_column("state")
    table.add_column("attempts", justify="right")
    table.add_column("next retry")
    table.add_column("last error", overflow="fold")

    for task, reminder in rows:
        label = reminder_label(reminder, policy)
        values: list[str | Text] = []
        if show_task and task is not None:
            values.append(f"{task.title} (#{task.task_id})")
        values.extend(
            [
                str(reminder.reminder_id),
                format_timestamp(reminder.trigger_at),
                reminder.kind,
                Text(label, style=_state_style(label)),
                f"{reminder.attempts}/{policy.max_attempts}",
                format_timestamp(policy.next_retry_at(reminder)),
                reminder.last_error or "-",
            ]
        )
        table.add_row(*values)
    return table


def render_task_detail_rich(task: Task, policy: RetryPolicy):
    from rich.console import Group
    from rich.text import Text

    title = Text()
    title.append(task.title, style="bold")
    title.append(f" (#{task.task_id})", style="dim")

    chips = Text()
    chips.append(f"[{task.status}]", style=_status_style(task.status))
    chips.append(" ")
    chips.append(f"[{task.priority}]", style=_priority_style(task.priority))

    tags = ", ".join(task.tags) if task.tags else "-"
    renderables = [
        title,
        chips,
        Text(f"due: {format_timestamp(task.due_at)}    tags: {tags}"),
        Text(
            f"created: {format_timestamp(task.created_at)}    "
            f"updated: {format_timestamp(task.updated_at)}",
            style="dim",
        ),
        Text(""),
        Text(task.description or "(no description)"),
        Text(""),
    ]
    if task.reminders:
        renderables.append(Text("reminders", style="bold"))
        renderables.append(_reminder_table([(None, reminder) for reminder in task.reminders], policy))
    else:
        renderables.append(Text("reminders: -"))
    return Group(*renderables)


def render_task_detail_json(task: Task, policy: RetryPolicy) -> str:
    return json.dumps(task_to_payload(task, policy), indent=2)


def render_due_plain(
    due: list[tuple[Task, Reminder]],
    exhausted: list[tuple[Task, Reminder]],
    policy: RetryPolicy,
) -> str:
    lines = []
    if due:
        lines.append(f"Due now ({len(due)}):")
        lines.extend(f"  {task.title} (#{task.task_id}) {_reminder_line(reminder, policy)}" for task, reminder in due)
    else:
        lines.append("No reminders due.")
    if exhausted:
        lines.append("")
        lines.append(f"Exhausted ({len(exhausted)}), use reset-reminder to retry:")
        lines.extend(
            f"  {task.title} (#{task.task_id}) {_reminder_line(reminder, policy)}" for task, reminder in exhausted
        )
    return "\n".join(lines)


def render_due_rich(
    due: list[tuple[Task, Reminder]],
    exhausted: list[tuple[Task, Reminder]],
    policy: RetryPolicy,
):
    from rich.console import Group
    from rich.text import Text

    renderables = []
    if due:
        renderables.append(Text(f"DUE NOW ({len(due)})", style="bold magenta"))
        renderables.append(_reminder_table(list(due), policy))
    else:
        renderables.append(Text("No reminders due.", style="dim"))
    if exhausted:
        renderables.append(Text(""))
        renderables.append(Text(f"EXHAUSTED ({len(exhausted)})", style="bold red"))
        renderables.append(_reminder_table(list(exhausted), policy))
    return Group(*renderables)


def render_due_json(
    due: list[tuple[Task, Reminder]],
    exhausted: list[tuple[Task, Reminder]],
    policy: RetryPolicy,
) -> str:
    def _rows(pairs: list[tuple[Task, Reminder]]) -> list[dict[str, Any]]:
        return [
            {"task_id": task.task_id, "title": task.title, **reminder_to_payload(reminder, policy)}
            for task, reminder in pairs
        ]

    return json.dumps({"due": _rows(due), "exhausted": _rows(exhausted)}, indent=2)


def render_cycle_report(report: CycleReport) -> str:
    line = f"Cycle complete: {report.summary()}"
    if not report.saved:
        line = f"{line} (save failed, see log)"
    return line
