"""Retry policy and the reminder delivery state machine.

State transitions for a reminder:

    pending --(all channels ok)--> delivered            (terminal)
    pending --(any channel failed)--> failed             attempts += 1
    failed  --(retry time reached, attempts < max)--> dispatched again
    failed  --(attempts == max)--> exhausted              (terminal failed)

Backoff is deterministic: ``base_delay * 2 ** (attempts - 1)`` capped at
``max_delay``, measured from the last attempt.
"""

from __future__ import annotations

from dataclasses import dataclass
import datetime as dt
import logging

from .models import DeliveryOutcome, Reminder, RetryExhausted

logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_SECONDS = 300
DEFAULT_MAX_DELAY_SECONDS = 3600
DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    base_delay: dt.timedelta = dt.timedelta(seconds=DEFAULT_BASE_DELAY_SECONDS)
    max_delay: dt.timedelta = dt.timedelta(seconds=DEFAULT_MAX_DELAY_SECONDS)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < dt.timedelta(0) or self.max_delay < dt.timedelta(0):
            raise ValueError("retry delays must not be negative")

    @classmethod
    def from_seconds(
        cls,
        base_delay_seconds: float = DEFAULT_BASE_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> RetryPolicy:
        return cls(
            base_delay=dt.timedelta(seconds=base_delay_seconds),
            max_delay=dt.timedelta(seconds=max_delay_seconds),
            max_attempts=max_attempts,
        )

    def backoff(self, attempts: int) -> dt.timedelta:
        if attempts < 1:
            return dt.timedelta(0)
        return min(self.base_delay * (2 ** (attempts - 1)), self.max_delay)

    def next_retry_at(self, reminder: Reminder) -> dt.datetime | None:
        if reminder.state != "failed" or reminder.last_attempt_at is None:
            return None
        if self.is_exhausted(reminder):
            return None
        return reminder.last_attempt_at + self.backoff(reminder.attempts)

    def is_exhausted(self, reminder: Reminder) -> bool:
        return reminder.state == "failed" and reminder.attempts >= self.max_attempts


def describe_failure(reminder: Reminder, outcome: DeliveryOutcome) -> str:
    failed = "; ".join(f"{result.channel}: {result.error or 'unknown error'}" for result in outcome.failed)
    if reminder.delivered_channels:
        return f"partial delivery; failed {failed}"
    return f"failed {failed}"


def apply_outcome(
    task_id: int,
    reminder: Reminder,
    outcome: DeliveryOutcome,
    policy: RetryPolicy,
) -> Reminder:
    """Fold one dispatch outcome into ``reminder`` in place and return it.

    A delivered reminder or an empty outcome leaves the reminder untouched.
    Raises RetryExhausted when the reminder has no attempts left.
    """
    if reminder.state == "delivered" or not outcome.attempted:
        return reminder
    if reminder.attempts >= policy.max_attempts:
        raise RetryExhausted(task_id, reminder.reminder_id, reminder.attempts)

    reminder.attempts += 1
    reminder.last_attempt_at = outcome.attempted_at
    for channel in outcome.succeeded_channels:
        if channel not in reminder.delivered_channels:
            reminder.delivered_channels.append(channel)

    if not reminder.outstanding_channels:
        reminder.state = "delivered"
        reminder.last_error = None
        return reminder

    reminder.state = "failed"
    reminder.last_error = describe_failure(reminder, outcome)
    if reminder.attempts >= policy.max_attempts:
        logger.warning(
            "Reminder %s of task %s exhausted after %s attempts: %s",
            reminder.reminder_id,
            task_id,
            reminder.attempts,
            reminder.last_error,
        )
    return reminder


def reset(reminder: Reminder) -> Reminder:
    """Manual retry: clear attempts and error but remember delivered channels."""
    if reminder.state == "delivered":
        return reminder
    reminder.state = "pending"
    reminder.attempts = 0
    reminder.last_error = None
    reminder.last_attempt_at = None
    return reminder
