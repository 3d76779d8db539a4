from __future__ import annotations

import datetime as dt

from taskminder import evaluator
from taskminder.models import Reminder, Task
from taskminder.retry import RetryPolicy

from fakes import START


def _task(task_id: int, *reminders: Reminder, priority: str = "medium", status: str = "pending") -> Task:
    return Task(
        task_id=task_id,
        title=f"task {task_id}",
        created_at=START,
        updated_at=START,
        priority=priority,
        status=status,
        reminders=list(reminders),
    )


def _at(minutes: int) -> dt.datetime:
    return START + dt.timedelta(minutes=minutes)


def test_pending_reminder_due_once_trigger_passes() -> None:
    task = _task(1, Reminder(reminder_id=1, trigger_at=_at(10)))
    policy = RetryPolicy()
    assert evaluator.due_reminders([task], _at(9), policy) == []
    assert len(evaluator.due_reminders([task], _at(10), policy)) == 1


def test_closed_tasks_and_delivered_reminders_are_never_due() -> None:
    policy = RetryPolicy()
    done = _task(1, Reminder(reminder_id=1, trigger_at=_at(0)), status="completed")
    cancelled = _task(2, Reminder(reminder_id=1, trigger_at=_at(0)), status="cancelled")
    delivered = _task(3, Reminder(reminder_id=1, trigger_at=_at(0), state="delivered", attempts=1))
    assert evaluator.due_reminders([done, cancelled, delivered], _at(60), policy) == []


def test_failed_reminder_waits_for_backoff() -> None:
    policy = RetryPolicy.from_seconds(300, 3600, 3)
    reminder = Reminder(
        reminder_id=1,
        trigger_at=_at(0),
        state="failed",
        attempts=2,
        last_attempt_at=_at(0),
        last_error="failed email: boom",
    )
    task = _task(1, reminder)
    # Second failure backs off base * 2.
    assert not evaluator.is_due(task, reminder, _at(9), policy)
    assert evaluator.is_due(task, reminder, _at(10), policy)


def test_exhausted_reminder_is_reported_not_due() -> None:
    policy = RetryPolicy.from_seconds(60, 600, 2)
    reminder = Reminder(
        reminder_id=4,
        trigger_at=_at(0),
        state="failed",
        attempts=2,
        last_attempt_at=_at(0),
        last_error="failed email: boom",
    )
    task = _task(1, reminder)
    assert evaluator.due_reminders([task], _at(600), policy) == []
    assert [(t.task_id, r.reminder_id) for t, r in evaluator.exhausted_reminders([task], policy)] == [(1, 4)]


def test_due_order_is_trigger_then_priority_then_ids() -> None:
    low = _task(1, Reminder(reminder_id=1, trigger_at=_at(5)), priority="low")
    critical = _task(2, Reminder(reminder_id=1, trigger_at=_at(5)), priority="critical")
    early = _task(3, Reminder(reminder_id=2, trigger_at=_at(1)), Reminder(reminder_id=1, trigger_at=_at(1)))

    due = evaluator.due_reminders([low, critical, early], _at(10), RetryPolicy())
    assert [(task.task_id, reminder.reminder_id) for task, reminder in due] == [
        (3, 1),
        (3, 2),
        (2, 1),
        (1, 1),
    ]
