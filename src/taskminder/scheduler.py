"""Background reminder scheduler.

A small polling loop that, every ``poll_interval`` seconds:
- optionally reloads the task set written by other processes,
- snapshots the due reminders from the store (under the store lock),
- dispatches each one through the Dispatcher (outside the lock),
- folds each outcome back into the store (under the lock, one write each),
- flushes the store, merging into whatever other processes saved meanwhile.

Per-item errors are logged and never end the loop. ``stop()`` asks the loop
to finish its current cycle and exit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import threading

from .clock import Clock
from .dispatch import Dispatcher
from .models import PersistenceFailure, RetryExhausted, TaskError
from .store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0


@dataclass(slots=True)
class CycleReport:
    due: int = 0
    delivered: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    saved: bool = True

    def summary(self) -> str:
        return (
            f"due={self.due} delivered={self.delivered} failed={self.failed} "
            f"exhausted={self.exhausted} skipped={self.skipped} errors={len(self.errors)}"
        )


class ReminderScheduler:
    def __init__(
        self,
        store: TaskStore,
        dispatcher: Dispatcher,
        *,
        clock: Clock | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        reload_each_cycle: bool = False,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or store.clock
        self.poll_interval = max(0.01, float(poll_interval))
        self.reload_each_cycle = reload_each_cycle
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.cycles = 0

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        if self.reload_each_cycle and not self.store.dirty:
            # Pick up edits written by other processes since the last flush.
            try:
                self.store.load()
            except PersistenceFailure:
                logger.exception("Reloading tasks failed; continuing with in-memory state")
        now = self.clock.now()
        try:
            due = self.store.list_due(now)
        except Exception:
            logger.exception("list_due failed")
            due = []
        report.due = len(due)

        for task, reminder in due:
            task_id, reminder_id = task.task_id, reminder.reminder_id
            try:
                # The task may have been closed or deleted since the snapshot.
                if not self.store.is_dispatchable(task_id, reminder_id):
                    report.skipped += 1
                    continue
                outcome = self.dispatcher.dispatch(task, reminder)
                updated = self.store.record_delivery_result(task_id, reminder_id, outcome)
            except RetryExhausted as exc:
                logger.info("%s", exc)
                report.exhausted += 1
                continue
            except TaskError as exc:
                logger.warning("Reminder %s of task %s not processed: %s", reminder_id, task_id, exc)
                report.errors.append(str(exc))
                continue
            except Exception as exc:
                logger.exception("Reminder %s of task %s failed unexpectedly", reminder_id, task_id)
                report.errors.append(f"{type(exc).__name__}: {exc}")
                continue

            if updated.state == "delivered":
                report.delivered += 1
            else:
                report.failed += 1
                if self.store.retry_policy.is_exhausted(updated):
                    report.exhausted += 1

        report.saved = self.store.flush()
        self.cycles += 1
        if report.due:
            logger.info("Scheduler cycle %s: %s", self.cycles, report.summary())
        else:
            logger.debug("Scheduler cycle %s: nothing due", self.cycles)
        return report

    def run(self) -> None:
        """Loop until stop() is called; each cycle finishes before exiting."""
        logger.info("Reminder scheduler started (poll=%ss)", self.poll_interval)
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Scheduler cycle failed")
            self._stop_event.wait(self.poll_interval)
        logger.info("Reminder scheduler stopped")

    def start(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="reminder-scheduler", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None) -> bool:
        """Signal shutdown and wait for the loop; True when it has exited."""
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
