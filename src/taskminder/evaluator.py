"""Pure queries deciding which reminders are due at a given moment."""

from __future__ import annotations

import datetime as dt
from typing import Iterable

from .models import PRIORITY_RANK, Reminder, Task
from .retry import RetryPolicy


def is_due(task: Task, reminder: Reminder, now: dt.datetime, policy: RetryPolicy) -> bool:
    if not task.is_active:
        return False
    if reminder.state == "pending":
        return reminder.trigger_at <= now
    if reminder.state == "failed":
        next_retry = policy.next_retry_at(reminder)
        return next_retry is not None and next_retry <= now
    return False


def due_sort_key(pair: tuple[Task, Reminder]) -> tuple:
    task, reminder = pair
    return (
        reminder.trigger_at,
        -PRIORITY_RANK.get(task.priority, 0),
        task.task_id,
        reminder.reminder_id,
    )


def due_reminders(
    tasks: Iterable[Task],
    now: dt.datetime,
    policy: RetryPolicy,
) -> list[tuple[Task, Reminder]]:
    """Return (task, reminder) pairs due at ``now`` in dispatch order.

    Order: trigger time ascending, then task priority descending, then task id
    and reminder id ascending.
    """
    due: list[tuple[Task, Reminder]] = []
    for task in tasks:
        if not task.is_active:
            continue
        for reminder in task.reminders:
            if is_due(task, reminder, now, policy):
                due.append((task, reminder))
    return sorted(due, key=due_sort_key)


def exhausted_reminders(tasks: Iterable[Task], policy: RetryPolicy) -> list[tuple[Task, Reminder]]:
    rows: list[tuple[Task, Reminder]] = []
    for task in tasks:
        for reminder in task.reminders:
            if policy.is_exhausted(reminder):
                rows.append((task, reminder))
    return sorted(rows, key=lambda pair: (pair[0].task_id, pair[1].reminder_id))
