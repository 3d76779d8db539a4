"""Core task and reminder models, constants and errors."""

from __future__ import annotations

from dataclasses import dataclass, field
import datetime as dt

VALID_STATUSES = ("pending", "in_progress", "completed", "cancelled")
CLOSED_STATUSES = ("completed", "cancelled")
STATUS_DISPLAY_ORDER = ("in_progress", "pending", "completed", "cancelled")
STATUS_RANK = {name: rank for rank, name in enumerate(STATUS_DISPLAY_ORDER)}
VALID_PRIORITIES = ("low", "medium", "high", "critical")
PRIORITY_RANK = {name: rank for rank, name in enumerate(VALID_PRIORITIES)}

KIND_CHANNELS = {
    "email": ("email",),
    "notification": ("notification",),
    "sms": ("sms",),
    "both": ("email", "notification"),
    "all": ("email", "sms", "notification"),
}
VALID_KINDS = tuple(KIND_CHANNELS)
DELIVERY_STATES = ("pending", "delivered", "failed")


@dataclass(slots=True)
class Reminder:
    reminder_id: int
    trigger_at: dt.datetime
    kind: str = "email"
    state: str = "pending"
    attempts: int = 0
    last_attempt_at: dt.datetime | None = None
    last_error: str | None = None
    delivered_channels: list[str] = field(default_factory=list)

    @property
    def channels(self) -> tuple[str, ...]:
        return KIND_CHANNELS[self.kind]

    @property
    def outstanding_channels(self) -> tuple[str, ...]:
        """Channels that still need a successful send."""
        done = set(self.delivered_channels)
        return tuple(channel for channel in self.channels if channel not in done)

    @property
    def is_partial(self) -> bool:
        return self.state == "failed" and bool(self.delivered_channels)


@dataclass(slots=True)
class Task:
    task_id: int
    title: str
    created_at: dt.datetime
    updated_at: dt.datetime
    description: str = ""
    priority: str = "medium"
    status: str = "pending"
    due_at: dt.datetime | None = None
    tags: list[str] = field(default_factory=list)
    reminders: list[Reminder] = field(default_factory=list)
    next_reminder_id: int = 1

    @property
    def is_active(self) -> bool:
        return self.status not in CLOSED_STATUSES

    def find_reminder(self, reminder_id: int) -> Reminder | None:
        for reminder in self.reminders:
            if reminder.reminder_id == reminder_id:
                return reminder
        return None


@dataclass(slots=True)
class StoreSnapshot:
    """Everything the persistence layer reads and writes in one go."""

    tasks: list[Task] = field(default_factory=list)
    next_task_id: int = 1


@dataclass(frozen=True, slots=True)
class ChannelResult:
    channel: str
    ok: bool
    error: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    attempted_at: dt.datetime
    results: tuple[ChannelResult, ...] = ()

    @property
    def attempted(self) -> bool:
        return bool(self.results)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def succeeded_channels(self) -> list[str]:
        return [result.channel for result in self.results if result.ok]

    @property
    def failed(self) -> list[ChannelResult]:
        return [result for result in self.results if not result.ok]


class TaskError(Exception):
    """Base error for task operations."""


class TaskValidationError(TaskError):
    """Raised when task or reminder fields are invalid."""


class TaskNotFoundError(TaskError):
    """Raised when a task or reminder cannot be located."""


class PersistenceFailure(TaskError):
    """Raised when the task set cannot be read or written."""


class DeliveryFailure(TaskError):
    """Raised by a channel when a send fails."""

    def __init__(self, channel: str, reason: str) -> None:
        super().__init__(f"{channel}: {reason}")
        self.channel = channel
        self.reason = reason


class RetryExhausted(TaskError):
    """Raised when a reminder has used all of its delivery attempts."""

    def __init__(self, task_id: int, reminder_id: int, attempts: int) -> None:
        super().__init__(
            f"Reminder {reminder_id} of task {task_id} exhausted after {attempts} attempts"
        )
        self.task_id = task_id
        self.reminder_id = reminder_id
        self.attempts = attempts
