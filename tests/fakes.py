"""In-memory stand-ins for the clock, channels and repository."""

from __future__ import annotations

from contextlib import contextmanager
import copy
import datetime as dt
import threading
from typing import Iterator

from taskminder.models import DeliveryFailure, PersistenceFailure, StoreSnapshot

START = dt.datetime(2026, 3, 1, 9, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    def __init__(self, start: dt.datetime = START) -> None:
        self.current = start

    def now(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs: float) -> dt.datetime:
        self.current = self.current + dt.timedelta(**kwargs)
        return self.current


class _ScriptedChannel:
    """Fails while ``failures`` is positive, then succeeds."""

    channel = ""

    def __init__(self, failures: int = 0, reason: str = "unreachable") -> None:
        self.failures = failures
        self.reason = reason
        self.calls: list[tuple[str, ...]] = []

    def _record(self, *args: str) -> None:
        self.calls.append(args)
        if self.failures > 0:
            self.failures -= 1
            raise DeliveryFailure(self.channel, self.reason)


class FakeEmail(_ScriptedChannel):
    channel = "email"

    def send(self, recipient: str, subject: str, body: str) -> None:
        self._record(recipient, subject, body)


class FakeSms(_ScriptedChannel):
    channel = "sms"

    def send(self, phone_number: str, carrier: str, message: str) -> None:
        self._record(phone_number, carrier, message)


class FakeNotifier(_ScriptedChannel):
    channel = "notification"

    def notify(self, title: str, body: str) -> None:
        self._record(title, body)


class MemoryRepository:
    def __init__(self, snapshot: StoreSnapshot | None = None) -> None:
        self.snapshot = snapshot or StoreSnapshot()
        self.saves = 0
        self.fail_saves = False
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def load(self) -> StoreSnapshot:
        return copy.deepcopy(self.snapshot)

    def save(self, snapshot: StoreSnapshot) -> None:
        if self.fail_saves:
            raise PersistenceFailure("disk full")
        self.snapshot = copy.deepcopy(snapshot)
        self.saves += 1
