from __future__ import annotations

import datetime as dt

import pytest

from taskminder.models import (
    ChannelResult,
    DeliveryOutcome,
    RetryExhausted,
    TaskNotFoundError,
    TaskValidationError,
)
from taskminder.retry import RetryPolicy
from taskminder.store import TaskStore

from fakes import START, FakeClock, MemoryRepository


def _store(policy: RetryPolicy | None = None) -> tuple[TaskStore, MemoryRepository, FakeClock]:
    repo = MemoryRepository()
    clock = FakeClock()
    return TaskStore.open(repo, retry_policy=policy, clock=clock), repo, clock


def _failed(channel: str = "email", at: dt.datetime = START) -> DeliveryOutcome:
    return DeliveryOutcome(attempted_at=at, results=(ChannelResult(channel, False, "boom"),))


def test_create_task_assigns_increasing_ids_and_normalizes() -> None:
    store, _, _ = _store()
    first = store.create_task("  Pay bill  ", priority="high", tags=["money", " bills ", "money"])
    second = store.create_task("Call mom")
    assert (first, second) == (1, 2)

    task = store.require_task(first)
    assert task.title == "Pay bill"
    assert task.status == "pending"
    assert task.tags == ["bills", "money"]
    assert task.created_at == START


def test_create_task_validates_fields() -> None:
    store, _, _ = _store()
    with pytest.raises(TaskValidationError):
        store.create_task("   ")
    with pytest.raises(TaskValidationError):
        store.create_task("x", priority="urgent")


def test_ids_are_not_reused_after_delete_and_reload() -> None:
    store, repo, clock = _store()
    store.create_task("a")
    store.create_task("b")
    store.delete_task(2)
    assert store.flush()

    reopened = TaskStore.open(repo, clock=clock)
    assert reopened.create_task("c") == 3


def test_unknown_task_and_reminder_raise_not_found() -> None:
    store, _, _ = _store()
    task_id = store.create_task("a")
    with pytest.raises(TaskNotFoundError):
        store.require_task(99)
    with pytest.raises(TaskNotFoundError):
        store.update_status(99, "completed")
    with pytest.raises(TaskNotFoundError):
        store.remove_reminder(task_id, 5)
    assert store.get_task(99) is None


def test_returned_tasks_are_detached_copies() -> None:
    store, _, _ = _store()
    task_id = store.create_task("a")
    copy = store.require_task(task_id)
    copy.title = "changed"
    copy.reminders.append(None)
    assert store.require_task(task_id).title == "a"
    assert store.require_task(task_id).reminders == []


def test_update_task_merges_or_replaces_tags_and_clears_due() -> None:
    store, _, clock = _store()
    task_id = store.create_task("a", tags=["x"], due_at=START + dt.timedelta(days=1))
    clock.advance(minutes=1)

    task = store.update_task(task_id, tags=["y"], description=" notes ")
    assert task.tags == ["x", "y"]
    assert task.description == "notes"
    assert task.updated_at == START + dt.timedelta(minutes=1)

    task = store.update_task(task_id, tags=["z"], replace_tags=True, clear_due=True)
    assert task.tags == ["z"]
    assert task.due_at is None


def test_list_tasks_filters_and_sorts() -> None:
    store, _, _ = _store()
    low = store.create_task("low", priority="low", tags=["home"])
    crit = store.create_task("crit", priority="critical", tags=["work"])
    doing = store.create_task("doing", priority="low")
    done = store.create_task("done", priority="critical")
    store.update_status(doing, "in_progress")
    store.update_status(done, "completed")

    assert [task.task_id for task in store.list_tasks()] == [doing, crit, low, done]
    assert [task.task_id for task in store.list_tasks("pending")] == [crit, low]
    assert [task.task_id for task in store.list_tasks(priority="critical")] == [crit, done]
    assert [task.task_id for task in store.list_tasks(include_tags=["home"])] == [low]
    assert [task.task_id for task in store.list_tasks(min_priority="high")] == [crit, done]
    with pytest.raises(TaskValidationError):
        store.list_tasks("blocked")


def test_search_matches_title_description_and_tags() -> None:
    store, _, _ = _store()
    a = store.create_task("Pay electricity BILL")
    b = store.create_task("Groceries", description="remember the bill for milk")
    c = store.create_task("Gym", tags=["billable"])
    store.create_task("Unrelated")
    assert {task.task_id for task in store.search_tasks("bill")} == {a, b, c}
    with pytest.raises(TaskValidationError):
        store.search_tasks("  ")


def test_add_reminder_rejects_past_unless_allowed() -> None:
    store, _, _ = _store()
    task_id = store.create_task("a")
    past = START - dt.timedelta(minutes=1)
    with pytest.raises(TaskValidationError):
        store.add_reminder(task_id, past)
    assert store.add_reminder(task_id, past, allow_past=True) == 1
    assert store.add_reminder(task_id, START + dt.timedelta(hours=1), "both") == 2
    with pytest.raises(TaskValidationError):
        store.add_reminder(task_id, START, "pager")


def test_reminder_ids_stay_unique_after_removal() -> None:
    store, _, _ = _store()
    task_id = store.create_task("a")
    first = store.add_reminder(task_id, START)
    store.remove_reminder(task_id, first)
    assert store.add_reminder(task_id, START) == first + 1


def test_list_due_excludes_closed_tasks() -> None:
    store, _, clock = _store()
    open_id = store.create_task("open")
    closed_id = store.create_task("closed")
    store.add_reminder(open_id, START)
    store.add_reminder(closed_id, START)
    store.update_status(closed_id, "cancelled")

    due = store.list_due(clock.now())
    assert [(task.task_id, reminder.reminder_id) for task, reminder in due] == [(open_id, 1)]
    assert not store.is_dispatchable(closed_id, 1)
    assert store.is_dispatchable(open_id, 1)


def test_record_delivery_result_and_reset() -> None:
    store, _, clock = _store(RetryPolicy.from_seconds(60, 600, 1))
    task_id = store.create_task("a")
    reminder_id = store.add_reminder(task_id, START)

    reminder = store.record_delivery_result(task_id, reminder_id, _failed())
    assert reminder.state == "failed"
    assert [r.reminder_id for _, r in store.list_exhausted()] == [reminder_id]
    assert store.list_due(clock.advance(hours=1)) == []

    with pytest.raises(RetryExhausted):
        store.record_delivery_result(task_id, reminder_id, _failed())

    reset = store.reset_reminder(task_id, reminder_id)
    assert reset.state == "pending"
    assert reset.attempts == 0
    assert len(store.list_due(clock.now())) == 1


def test_reset_rejects_delivered_reminder() -> None:
    store, _, _ = _store()
    task_id = store.create_task("a")
    reminder_id = store.add_reminder(task_id, START)
    ok = DeliveryOutcome(attempted_at=START, results=(ChannelResult("email", True),))
    store.record_delivery_result(task_id, reminder_id, ok)
    with pytest.raises(TaskValidationError):
        store.reset_reminder(task_id, reminder_id)


def test_flush_only_writes_when_dirty_and_survives_save_failure() -> None:
    store, repo, _ = _store()
    assert store.flush()
    assert repo.saves == 0

    store.create_task("a")
    repo.fail_saves = True
    assert not store.flush()
    assert store.dirty

    repo.fail_saves = False
    assert store.flush()
    assert not store.dirty
    assert repo.saves == 1
    assert [task.title for task in repo.snapshot.tasks] == ["a"]


def _delivered(channel: str = "email") -> DeliveryOutcome:
    return DeliveryOutcome(attempted_at=START, results=(ChannelResult(channel, True),))


def test_flush_merges_changes_saved_by_another_store() -> None:
    repo, clock = MemoryRepository(), FakeClock()
    scheduler_side = TaskStore.open(repo, clock=clock)
    task_id = scheduler_side.create_task("a")
    reminder_id = scheduler_side.add_reminder(task_id, START)
    assert scheduler_side.flush()

    editor = TaskStore.open(repo, clock=clock)
    editor.update_task(task_id, title="renamed")
    assert editor.create_task("from editor") == 2
    assert editor.flush()

    scheduler_side.record_delivery_result(task_id, reminder_id, _delivered())
    assert scheduler_side.create_task("from scheduler side") == 2
    assert scheduler_side.flush()

    stored = {task.task_id: task for task in repo.snapshot.tasks}
    assert {task_id: task.title for task_id, task in stored.items()} == {
        1: "renamed",
        2: "from editor",
        3: "from scheduler side",
    }
    assert stored[1].reminders[0].state == "delivered"
    assert repo.snapshot.next_task_id == 4
    assert scheduler_side.require_task(1).title == "renamed"
    assert scheduler_side.require_task(3).title == "from scheduler side"
    assert not scheduler_side.dirty


def test_local_edit_keeps_delivery_recorded_elsewhere() -> None:
    repo, clock = MemoryRepository(), FakeClock()
    seed = TaskStore.open(repo, clock=clock)
    task_id = seed.create_task("a")
    reminder_id = seed.add_reminder(task_id, START)
    assert seed.flush()

    editor = TaskStore.open(repo, clock=clock)
    delivering = TaskStore.open(repo, clock=clock)
    delivering.record_delivery_result(task_id, reminder_id, _delivered())
    assert delivering.flush()

    editor.update_task(task_id, priority="high")
    assert editor.flush()
    stored = repo.snapshot.tasks[0]
    assert stored.priority == "high"
    assert stored.reminders[0].state == "delivered"
    assert stored.reminders[0].attempts == 1


def test_edits_to_task_deleted_elsewhere_are_dropped() -> None:
    repo, clock = MemoryRepository(), FakeClock()
    seed = TaskStore.open(repo, clock=clock)
    task_id = seed.create_task("a")
    assert seed.flush()

    editor = TaskStore.open(repo, clock=clock)
    deleter = TaskStore.open(repo, clock=clock)
    deleter.delete_task(task_id)
    assert deleter.flush()

    editor.update_status(task_id, "completed")
    assert editor.flush()
    assert repo.snapshot.tasks == []
    assert editor.get_task(task_id) is None
