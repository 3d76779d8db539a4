from __future__ import annotations

import datetime as dt
from pathlib import Path
import threading

import pytest
import yaml

from taskminder import storage
from taskminder.models import PersistenceFailure, Reminder, StoreSnapshot, Task
from taskminder.storage import YamlTaskRepository

from fakes import START


def _snapshot() -> StoreSnapshot:
    reminder = Reminder(
        reminder_id=2,
        trigger_at=START,
        kind="both",
        state="failed",
        attempts=1,
        last_attempt_at=START + dt.timedelta(minutes=1),
        last_error="partial delivery; failed notification: boom",
        delivered_channels=["email"],
    )
    task = Task(
        task_id=3,
        title="Pay bill",
        created_at=START,
        updated_at=START,
        priority="high",
        due_at=START + dt.timedelta(days=2),
        tags=["money"],
        reminders=[reminder],
        next_reminder_id=3,
    )
    return StoreSnapshot(tasks=[task], next_task_id=5)


def test_missing_or_empty_file_loads_empty(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    assert YamlTaskRepository(path).load() == StoreSnapshot()
    path.write_text("\n", encoding="utf-8")
    assert YamlTaskRepository(path).load() == StoreSnapshot()


def test_save_writes_readable_yaml_document(tmp_path: Path) -> None:
    path = tmp_path / "data" / "tasks.yaml"
    YamlTaskRepository(path).save(_snapshot())

    document = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert document["version"] == storage.FORMAT_VERSION
    assert document["next_task_id"] == 5
    task = document["tasks"][0]
    assert task["title"] == "Pay bill"
    assert task["due_at"] == "2026-03-03T09:00:00+00:00"
    assert task["reminders"][0]["delivered_channels"] == ["email"]
    assert not (path.parent / ".tasks.yaml.tmp").exists()


def test_save_then_load_keeps_delivery_state(tmp_path: Path) -> None:
    repo = YamlTaskRepository(tmp_path / "tasks.yaml")
    repo.save(_snapshot())
    loaded = repo.load()
    assert loaded == _snapshot()


def test_load_repairs_counters_below_existing_ids(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(
        (
            "next_task_id: 1\n"
            "tasks:\n"
            "  - task_id: 4\n"
            "    title: a\n"
            "    created_at: '2026-03-01T09:00:00+00:00'\n"
            "    next_reminder_id: 1\n"
            "    reminders:\n"
            "      - reminder_id: 6\n"
            "        trigger_at: '2026-03-01T10:00:00+00:00'\n"
            "        state: delivered\n"
            "        last_error: stale\n"
        ),
        encoding="utf-8",
    )
    snapshot = YamlTaskRepository(path).load()
    assert snapshot.next_task_id == 5
    task = snapshot.tasks[0]
    assert task.next_reminder_id == 7
    assert task.priority == "medium"
    assert task.updated_at == task.created_at
    assert task.reminders[0].last_error is None


@pytest.mark.parametrize(
    "content",
    [
        "tasks: [",
        "- just\n- a list\n",
        "tasks:\n  - task_id: 1\n    title: a\n",
        (
            "tasks:\n"
            "  - {task_id: 1, title: a, created_at: '2026-03-01T09:00:00+00:00'}\n"
            "  - {task_id: 1, title: b, created_at: '2026-03-01T09:00:00+00:00'}\n"
        ),
    ],
)
def test_corrupt_file_raises_persistence_failure(tmp_path: Path, content: str) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        YamlTaskRepository(path).load()


def test_save_failure_raises_persistence_failure(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    with pytest.raises(PersistenceFailure):
        YamlTaskRepository(blocker / "tasks.yaml").save(StoreSnapshot())


def test_default_data_dir_honours_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv(storage.HOME_ENV, str(tmp_path / "home"))
    assert storage.default_data_dir() == tmp_path / "home"
    monkeypatch.delenv(storage.HOME_ENV)
    assert storage.default_data_dir() == Path.home() / ".taskminder"


def test_write_default_config_never_overwrites(tmp_path: Path) -> None:
    assert storage.write_default_config_if_missing(tmp_path)
    path = storage.config_path(tmp_path)
    assert yaml.safe_load(path.read_text(encoding="utf-8")) == storage.default_config()

    path.write_text("retry:\n  max_attempts: 9\n", encoding="utf-8")
    assert not storage.write_default_config_if_missing(tmp_path)
    assert "max_attempts: 9" in path.read_text(encoding="utf-8")


def test_read_config_warns_on_invalid_yaml(tmp_path: Path) -> None:
    storage.config_path(tmp_path).write_text("retry: [", encoding="utf-8")
    warnings: list[str] = []
    assert storage.read_config(tmp_path, warn=warnings.append) == {}
    assert warnings and "Unable to parse config" in warnings[0]


def test_locked_is_reentrant_and_excludes_other_holders(tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    repo = YamlTaskRepository(path)
    acquired = threading.Event()

    def hold_lock() -> None:
        with YamlTaskRepository(path).locked():
            acquired.set()

    with repo.locked():
        with repo.locked():
            repo.save(StoreSnapshot(next_task_id=2))
        assert repo.lock_path.exists()
        other = threading.Thread(target=hold_lock)
        other.start()
        assert not acquired.wait(0.2)

    assert acquired.wait(5)
    other.join(5)
    assert repo.load().next_task_id == 2
