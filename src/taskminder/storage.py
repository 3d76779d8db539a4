"""Filesystem layout, YAML config IO and the YAML task repository."""

from __future__ import annotations

from contextlib import contextmanager
import fcntl
import logging
import os
from pathlib import Path
import threading
from typing import Any, Callable, ContextManager, Iterator, Protocol

import yaml

from .clock import from_iso, to_iso
from .models import (
    DELIVERY_STATES,
    VALID_KINDS,
    VALID_PRIORITIES,
    VALID_STATUSES,
    PersistenceFailure,
    Reminder,
    StoreSnapshot,
    Task,
)

logger = logging.getLogger(__name__)

HOME_ENV = "TASKMINDER_HOME"
TASKS_FILE = "tasks.yaml"
CONFIG_FILE = "config.yaml"
LOG_DIR = "logs"
FORMAT_VERSION = 1


class TaskRepository(Protocol):
    """Persistence port used by the task store."""

    def load(self) -> StoreSnapshot: ...

    def save(self, snapshot: StoreSnapshot) -> None: ...

    def locked(self) -> ContextManager[None]: ...



def default_data_dir() -> Path:
    raw = os.getenv(HOME_ENV)
    if raw and raw.strip():
        return Path(raw).expanduser()
    return Path.home() / ".taskminder"


def ensure_layout(data_dir: Path) -> None:
    (data_dir / LOG_DIR).mkdir(parents=True, exist_ok=True)


def tasks_path(data_dir: Path) -> Path:
    return data_dir / TASKS_FILE


def config_path(data_dir: Path) -> Path:
    return data_dir / CONFIG_FILE


def log_dir(data_dir: Path) -> Path:
    return data_dir / LOG_DIR


def default_config() -> dict[str, Any]:
    return {
        "scheduler": {
            "poll_interval_seconds": 30,
            "dispatch_timeout_seconds": 30,
        },
        "retry": {
            "base_delay_seconds": 300,
            "max_delay_seconds": 3600,
            "max_attempts": 3,
        },
        "email": {
            "address": "",
            "smtp_server": "",
            "smtp_port": 587,
            "username": "",
            "password": "",
            "use_tls": True,
        },
        "sms": {
            "phone_number": "",
            "carrier": "",
            "enabled": False,
        },
        "logging": {
            "level": "info",
            "console_output": False,
            "max_file_size_mb": 10,
            "max_files": 5,
        },
    }


def write_default_config_if_missing(data_dir: Path) -> bool:
    path = config_path(data_dir)
    if path.exists():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = yaml.safe_dump(default_config(), sort_keys=False, default_flow_style=False)
    path.write_text(payload, encoding="utf-8")
    return True


def read_config(data_dir: Path, warn: Callable[[str], None] | None = None) -> dict[str, Any]:
    path = config_path(data_dir)
    if not path.exists():
        return {}
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except Exception:
        if warn is not None:
            warn(f"Unable to parse config at {path}. Falling back to defaults.")
        return {}
    if not isinstance(payload, dict):
        if warn is not None:
            warn(f"Invalid config format at {path}. Falling back to defaults.")
        return {}
    return payload


def reminder_to_dict(reminder: Reminder) -> dict[str, Any]:
    return {
        "reminder_id": reminder.reminder_id,
        "trigger_at": to_iso(reminder.trigger_at),
        "kind": reminder.kind,
        "state": reminder.state,
        "attempts": reminder.attempts,
        "last_attempt_at": to_iso(reminder.last_attempt_at),
        "last_error": reminder.last_error,
        "delivered_channels": list(reminder.delivered_channels),
    }


def task_to_dict(task: Task) -> dict[str, Any]:
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
        "next_reminder_id": task.next_reminder_id,
        "reminders": [reminder_to_dict(reminder) for reminder in task.reminders],
    }


def _choice(value: Any, valid: tuple[str, ...], default: str) -> str:
    text = str(value) if value is not None else default
    return text if text in valid else default


def reminder_from_dict(data: dict[str, Any]) -> Reminder:
    trigger_at = from_iso(data.get("trigger_at"))
    if trigger_at is None:
        raise ValueError(f"Reminder {data.get('reminder_id')} has no trigger_at")
    state = _choice(data.get("state"), DELIVERY_STATES, "pending")
    return Reminder(
        reminder_id=int(data["reminder_id"]),
        trigger_at=trigger_at,
        kind=_choice(data.get("kind"), VALID_KINDS, "email"),
        state=state,
        attempts=int(data.get("attempts") or 0),
        last_attempt_at=from_iso(data.get("last_attempt_at")),
        last_error=data.get("last_error") if state == "failed" else None,
        delivered_channels=[str(channel) for channel in data.get("delivered_channels") or []],
    )


def task_from_dict(data: dict[str, Any]) -> Task:
    created_at = from_iso(data.get("created_at"))
    if created_at is None:
        raise ValueError(f"Task {data.get('task_id')} has no created_at")
    reminders = [reminder_from_dict(item) for item in data.get("reminders") or []]
    highest = max((reminder.reminder_id for reminder in reminders), default=0)
    return Task(
        task_id=int(data["task_id"]),
        title=str(data.get("title") or ""),
        description=str(data.get("description") or ""),
        priority=_choice(data.get("priority"), VALID_PRIORITIES, "medium"),
        status=_choice(data.get("status"), VALID_STATUSES, "pending"),
        due_at=from_iso(data.get("due_at")),
        tags=sorted({str(tag) for tag in data.get("tags") or []}),
        created_at=created_at,
        updated_at=from_iso(data.get("updated_at")) or created_at,
        reminders=reminders,
        next_reminder_id=max(int(data.get("next_reminder_id") or 1), highest + 1),
    )


def snapshot_to_document(snapshot: StoreSnapshot) -> dict[str, Any]:
    return {
        "version": FORMAT_VERSION,
        "next_task_id": snapshot.next_task_id,
        "tasks": [task_to_dict(task) for task in sorted(snapshot.tasks, key=lambda t: t.task_id)],
    }


def snapshot_from_document(document: Any) -> StoreSnapshot:
    if document is None:
        return StoreSnapshot()
    if not isinstance(document, dict):
        raise ValueError("top-level document must be a mapping")
    raw_tasks = document.get("tasks") or []
    if not isinstance(raw_tasks, list):
        raise ValueError("'tasks' must be a list")
    tasks = [task_from_dict(item) for item in raw_tasks]
    seen: set[int] = set()
    for task in tasks:
        if task.task_id in seen:
            raise ValueError(f"Duplicate task_id found: {task.task_id}")
        seen.add(task.task_id)
    highest = max(seen, default=0)
    next_task_id = max(int(document.get("next_task_id") or 1), highest + 1)
    return StoreSnapshot(tasks=tasks, next_task_id=next_task_id)


class YamlTaskRepository:
    """Stores the whole task set as one YAML document.

    ``locked()`` takes an exclusive ``flock`` on a sibling lock file, so one
    load-modify-save sequence at a time runs across processes. It is
    re-entrant within a process.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(f".{self.path.name}.lock")
        self._thread_lock = threading.RLock()
        self._lock_depth = 0
        self._lock_file = None

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._thread_lock:
            if self._lock_depth == 0:
                self._acquire_file_lock()
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0:
                    self._release_file_lock()

    def _acquire_file_lock(self) -> None:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.lock_path, "a", encoding="utf-8")
        except OSError as exc:
            raise PersistenceFailure(f"Unable to lock {self.path}: {exc}") from exc
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        except OSError as exc:
            handle.close()
            raise PersistenceFailure(f"Unable to lock {self.path}: {exc}") from exc
        self._lock_file = handle

    def _release_file_lock(self) -> None:
        handle, self._lock_file = self._lock_file, None
        if handle is not None:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()

    def load(self) -> StoreSnapshot:
        if not self.path.exists():
            logger.info("No task file at %s; starting empty", self.path)
            return StoreSnapshot()
        try:
            text = self.path.read_text(encoding="utf-8")
            if not text.strip():
                return StoreSnapshot()
            snapshot = snapshot_from_document(yaml.safe_load(text))
        except (OSError, yaml.YAMLError, ValueError, KeyError, TypeError) as exc:
            raise PersistenceFailure(f"Unable to load tasks from {self.path}: {exc}") from exc
        logger.debug("Loaded %s tasks from %s", len(snapshot.tasks), self.path)
        return snapshot

    def save(self, snapshot: StoreSnapshot) -> None:
        payload = yaml.safe_dump(
            snapshot_to_document(snapshot),
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceFailure(f"Unable to save tasks to {self.path}: {exc}") from exc
        logger.debug("Saved %s tasks to %s", len(snapshot.tasks), self.path)
