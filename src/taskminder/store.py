"""Thread-safe in-memory task store backed by a persistence repository."""

from __future__ import annotations

import copy
import datetime as dt
import logging
import threading
from typing import Iterable

from . import evaluator, retry
from .clock import Clock, SystemClock, to_utc
from .models import (
    PRIORITY_RANK,
    STATUS_RANK,
    VALID_KINDS,
    VALID_PRIORITIES,
    VALID_STATUSES,
    DeliveryOutcome,
    PersistenceFailure,
    Reminder,
    StoreSnapshot,
    Task,
    TaskNotFoundError,
    TaskValidationError,
)
from .retry import RetryPolicy
from .storage import TaskRepository

logger = logging.getLogger(__name__)


def _normalize_tags(tags: Iterable[str] | None) -> list[str]:
    if not tags:
        return []
    return sorted({tag.strip() for tag in tags if tag.strip()})


def _require_title(title: str | None) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise TaskValidationError("title is required")
    return cleaned


def _require_choice(value: str, valid: tuple[str, ...], label: str) -> str:
    if value not in valid:
        raise TaskValidationError(f"Invalid {label}: {value}. Expected one of: {', '.join(valid)}")
    return value


def _copy_delivery_state(source: Reminder, target: Reminder) -> None:
    target.state = source.state
    target.attempts = source.attempts
    target.last_attempt_at = source.last_attempt_at
    target.last_error = source.last_error
    target.delivered_channels = list(source.delivered_channels)


class TaskStore:
    """Owns the task set shared by the CLI and the scheduler thread.

    Every public method takes the store lock for its whole body and hands out
    detached copies, so callers never hold references into shared state.
    Mutations are tracked per task and per reminder; ``flush`` merges them
    into whatever is on disk at that moment, so writes made by other
    processes since the last load survive.
    """

    def __init__(
        self,
        repository: TaskRepository,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self._lock = threading.RLock()
        self._tasks: dict[int, Task] = {}
        self._next_task_id = 1
        self._loaded_ids: set[int] = set()
        self._edited: set[int] = set()
        self._deleted: set[int] = set()
        self._delivery_updates: set[tuple[int, int]] = set()

    @classmethod
    def open(
        cls,
        repository: TaskRepository,
        *,
        retry_policy: RetryPolicy | None = None,
        clock: Clock | None = None,
    ) -> TaskStore:
        store = cls(repository, retry_policy=retry_policy, clock=clock)
        store.load()
        return store

    # ---- persistence ----

    def load(self) -> None:
        """Replace in-memory state from the repository; PersistenceFailure propagates."""
        snapshot = self._repository.load()
        with self._lock:
            self._adopt(snapshot.tasks, snapshot.next_task_id)
        logger.debug("TaskStore ready tasks=%s next_id=%s", len(snapshot.tasks), self._next_task_id)

    def _adopt(self, tasks: Iterable[Task], next_task_id: int) -> None:
        self._tasks = {task.task_id: task for task in tasks}
        highest = max(self._tasks, default=0)
        self._next_task_id = max(next_task_id, highest + 1)
        self._loaded_ids = set(self._tasks)
        self._edited.clear()
        self._deleted.clear()
        self._delivery_updates.clear()

    @property
    def dirty(self) -> bool:
        with self._lock:
            return bool(self._edited or self._deleted or self._delivery_updates)

    def _touch(self, task: Task) -> None:
        task.updated_at = self.clock.now()
        self._edited.add(task.task_id)

    def flush(self) -> bool:
        """Merge pending changes into the stored task set. Returns False when that failed.

        Runs under the repository lock: the file is re-read, this store's
        task edits, deletions and delivery results are applied on top of it,
        and the result is written back and adopted in memory.
        """
        with self._lock:
            if not self.dirty:
                return True
            try:
                with self._repository.locked():
                    current = self._repository.load()
                    tasks, next_task_id = self._merge(current)
                    self._repository.save(StoreSnapshot(tasks=list(tasks.values()), next_task_id=next_task_id))
            except PersistenceFailure:
                logger.exception("Saving tasks failed; keeping in-memory state until next flush")
                return False
            self._adopt(tasks.values(), next_task_id)
            return True

    def _merge(self, current: StoreSnapshot) -> tuple[dict[int, Task], int]:
        merged = {task.task_id: task for task in current.tasks}
        next_task_id = max(current.next_task_id, self._next_task_id)

        for task_id in self._deleted:
            if task_id in self._loaded_ids:
                merged.pop(task_id, None)

        # Delivery results on tasks not edited here land on the stored copy.
        for task_id, reminder_id in self._delivery_updates:
            if task_id in self._edited:
                continue
            local, stored = self._tasks.get(task_id), merged.get(task_id)
            if local is None or stored is None:
                continue
            source, target = local.find_reminder(reminder_id), stored.find_reminder(reminder_id)
            if source is not None and target is not None:
                _copy_delivery_state(source, target)

        for task_id in sorted(self._edited):
            local = self._tasks.get(task_id)
            if local is None:
                continue
            if task_id in self._loaded_ids and task_id not in merged:
                logger.info("Task %s was deleted elsewhere; dropping local edits", task_id)
                continue
            task = copy.deepcopy(local)
            stored = merged.get(task_id)
            if task_id not in self._loaded_ids and stored is not None:
                # Created here while another writer took the same id.
                task.task_id = next_task_id
                next_task_id += 1
                logger.warning("Task id %s was taken elsewhere; saved as %s", task_id, task.task_id)
                stored = None
            if stored is not None:
                # Keep delivery progress recorded elsewhere for reminders untouched here.
                for reminder in task.reminders:
                    if (task_id, reminder.reminder_id) in self._delivery_updates:
                        continue
                    other = stored.find_reminder(reminder.reminder_id)
                    if other is not None:
                        _copy_delivery_state(other, reminder)
            merged[task.task_id] = task

        next_task_id = max(next_task_id, max(merged, default=0) + 1)
        return merged, next_task_id

    # ---- lookups ----

    def _get(self, task_id: int) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def _get_reminder(self, task: Task, reminder_id: int) -> Reminder:
        reminder = task.find_reminder(reminder_id)
        if reminder is None:
            raise TaskNotFoundError(f"Reminder {reminder_id} not found on task {task.task_id}")
        return reminder

    def get_task(self, task_id: int) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task is not None else None

    def require_task(self, task_id: int) -> Task:
        with self._lock:
            return copy.deepcopy(self._get(task_id))

    def is_dispatchable(self, task_id: int, reminder_id: int) -> bool:
        """True while the task is still active and the reminder not yet delivered."""
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or not task.is_active:
                return False
            reminder = task.find_reminder(reminder_id)
            return reminder is not None and reminder.state != "delivered"

    def list_tasks(
        self,
        status: str | None = None,
        *,
        priority: str | None = None,
        include_tags: Iterable[str] | None = None,
        min_priority: str | None = None,
    ) -> list[Task]:
        if status is not None:
            _require_choice(status, VALID_STATUSES, "status")
        if priority is not None:
            _require_choice(priority, VALID_PRIORITIES, "priority")
        if min_priority is not None:
            _require_choice(min_priority, VALID_PRIORITIES, "priority")
        tag_set = set(_normalize_tags(include_tags))

        with self._lock:
            tasks = copy.deepcopy(list(self._tasks.values()))

        if status:
            tasks = [task for task in tasks if task.status == status]
        if priority:
            tasks = [task for task in tasks if task.priority == priority]
        if min_priority:
            floor = PRIORITY_RANK[min_priority]
            tasks = [task for task in tasks if PRIORITY_RANK[task.priority] >= floor]
        if tag_set:
            tasks = [task for task in tasks if tag_set.intersection(task.tags)]

        far_future = dt.datetime.max.replace(tzinfo=dt.timezone.utc)
        return sorted(
            tasks,
            key=lambda task: (
                STATUS_RANK.get(task.status, 99),
                -PRIORITY_RANK.get(task.priority, 0),
                task.due_at or far_future,
                task.task_id,
            ),
        )

    def search_tasks(self, query: str) -> list[Task]:
        needle = query.strip().lower()
        if not needle:
            raise TaskValidationError("search query is required")
        return [
            task
            for task in self.list_tasks()
            if needle in task.title.lower()
            or needle in task.description.lower()
            or any(needle in tag.lower() for tag in task.tags)
        ]

    # ---- task mutations ----

    def create_task(
        self,
        title: str,
        *,
        description: str = "",
        priority: str = "medium",
        due_at: dt.datetime | None = None,
        tags: Iterable[str] | None = None,
    ) -> int:
        cleaned_title = _require_title(title)
        _require_choice(priority, VALID_PRIORITIES, "priority")

        with self._lock:
            now = self.clock.now()
            task_id = self._next_task_id
            self._next_task_id += 1
            self._tasks[task_id] = Task(
                task_id=task_id,
                title=cleaned_title,
                description=description.strip(),
                priority=priority,
                status="pending",
                due_at=to_utc(due_at) if due_at is not None else None,
                tags=_normalize_tags(tags),
                created_at=now,
                updated_at=now,
            )
            self._edited.add(task_id)
        logger.debug("Task created id=%s priority=%s due_at=%s", task_id, priority, due_at)
        return task_id

    def update_task(
        self,
        task_id: int,
        *,
        title: str | None = None,
        description: str | None = None,
        priority: str | None = None,
        due_at: dt.datetime | None = None,
        clear_due: bool = False,
        tags: Iterable[str] | None = None,
        replace_tags: bool = False,
    ) -> Task:
        if title is not None:
            title = _require_title(title)
        if priority is not None:
            _require_choice(priority, VALID_PRIORITIES, "priority")

        with self._lock:
            task = self._get(task_id)
            if title is not None:
                task.title = title
            if description is not None:
                task.description = description.strip()
            if priority is not None:
                task.priority = priority
            if clear_due:
                task.due_at = None
            elif due_at is not None:
                task.due_at = to_utc(due_at)
            if replace_tags:
                task.tags = _normalize_tags(tags)
            elif tags:
                task.tags = _normalize_tags([*task.tags, *list(tags)])
            self._touch(task)
            return copy.deepcopy(task)

    def update_status(self, task_id: int, status: str) -> Task:
        _require_choice(status, VALID_STATUSES, "status")
        with self._lock:
            task = self._get(task_id)
            if task.status != status:
                logger.info("Task %s status %s -> %s", task_id, task.status, status)
                task.status = status
                self._touch(task)
            return copy.deepcopy(task)

    def delete_task(self, task_id: int) -> None:
        with self._lock:
            self._get(task_id)
            del self._tasks[task_id]
            self._deleted.add(task_id)
            self._edited.discard(task_id)
            self._delivery_updates.difference_update(
                [key for key in self._delivery_updates if key[0] == task_id]
            )
        logger.info("Task %s deleted", task_id)

    # ---- reminder mutations ----

    def add_reminder(
        self,
        task_id: int,
        trigger_at: dt.datetime,
        kind: str = "email",
        *,
        allow_past: bool = False,
    ) -> int:
        _require_choice(kind, VALID_KINDS, "reminder kind")
        trigger_at = to_utc(trigger_at)
        with self._lock:
            task = self._get(task_id)
            if not allow_past and trigger_at < self.clock.now():
                raise TaskValidationError("Reminder time is in the past. Use allow_past to override.")
            reminder_id = task.next_reminder_id
            task.next_reminder_id += 1
            task.reminders.append(Reminder(reminder_id=reminder_id, trigger_at=trigger_at, kind=kind))
            self._touch(task)
        logger.debug("Reminder %s added to task %s kind=%s at=%s", reminder_id, task_id, kind, trigger_at)
        return reminder_id

    def remove_reminder(self, task_id: int, reminder_id: int) -> None:
        with self._lock:
            task = self._get(task_id)
            reminder = self._get_reminder(task, reminder_id)
            task.reminders.remove(reminder)
            self._touch(task)

    def reset_reminder(self, task_id: int, reminder_id: int) -> Reminder:
        """Clear attempts and error so a failed reminder becomes eligible again."""
        with self._lock:
            task = self._get(task_id)
            reminder = self._get_reminder(task, reminder_id)
            if reminder.state == "delivered":
                raise TaskValidationError(f"Reminder {reminder_id} was already delivered")
            retry.reset(reminder)
            self._touch(task)
            self._delivery_updates.add((task_id, reminder_id))
            return copy.deepcopy(reminder)

    # ---- scheduler API ----

    def list_due(self, now: dt.datetime) -> list[tuple[Task, Reminder]]:
        """Detached snapshot of due (task, reminder) pairs in dispatch order."""
        with self._lock:
            pairs = evaluator.due_reminders(self._tasks.values(), now, self.retry_policy)
            return [
                (copy.deepcopy(task), copy.deepcopy(reminder))
                for task, reminder in pairs
            ]

    def list_exhausted(self) -> list[tuple[Task, Reminder]]:
        with self._lock:
            pairs = evaluator.exhausted_reminders(self._tasks.values(), self.retry_policy)
            return [(copy.deepcopy(task), copy.deepcopy(reminder)) for task, reminder in pairs]

    def record_delivery_result(
        self,
        task_id: int,
        reminder_id: int,
        outcome: DeliveryOutcome,
    ) -> Reminder:
        """Fold a dispatch outcome into the stored reminder.

        Recorded even if the task was closed while the dispatch was in flight.
        """
        with self._lock:
            task = self._get(task_id)
            reminder = self._get_reminder(task, reminder_id)
            before = (reminder.state, reminder.attempts)
            retry.apply_outcome(task_id, reminder, outcome, self.retry_policy)
            if (reminder.state, reminder.attempts) != before:
                self._delivery_updates.add((task_id, reminder_id))
            return copy.deepcopy(reminder)
