"""Routes a due reminder to its delivery channels."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from .channels import EmailChannel, NotificationChannel, SmsChannel, truncate_sms
from .clock import Clock, SystemClock, format_timestamp
from .models import ChannelResult, DeliveryFailure, DeliveryOutcome, Reminder, Task

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Recipients:
    email: str = ""
    phone_number: str = ""
    carrier: str = ""


def email_subject(task: Task) -> str:
    return f"Reminder: {task.title}"


def email_body(task: Task) -> str:
    return (
        f"This is a reminder for your task: {task.title}\n\n"
        f"Description: {task.description or '-'}\n\n"
        f"Due: {format_timestamp(task.due_at, empty='not set')}\n\n"
        f"Priority: {task.priority}"
    )


def sms_text(task: Task) -> str:
    due = format_timestamp(task.due_at, empty="")
    suffix = f" (due {due})" if due else ""
    return truncate_sms(f"Reminder: {task.title}{suffix}")


def notification_title(task: Task) -> str:
    return f"Task Reminder: {task.title}"


class Dispatcher:
    """One send per outstanding channel per call; never retries by itself."""

    def __init__(
        self,
        *,
        email: EmailChannel | None = None,
        sms: SmsChannel | None = None,
        notifier: NotificationChannel | None = None,
        recipients: Recipients | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.email = email
        self.sms = sms
        self.notifier = notifier
        self.recipients = recipients or Recipients()
        self.clock = clock or SystemClock()

    def dispatch(self, task: Task, reminder: Reminder) -> DeliveryOutcome:
        attempted_at = self.clock.now()
        if reminder.state == "delivered":
            logger.debug("Reminder %s of task %s already delivered; skipping", reminder.reminder_id, task.task_id)
            return DeliveryOutcome(attempted_at=attempted_at)

        results = [self._deliver(channel, task) for channel in reminder.outstanding_channels]
        outcome = DeliveryOutcome(attempted_at=attempted_at, results=tuple(results))
        logger.info(
            "Dispatched reminder %s of task %s ok=%s failed=%s",
            reminder.reminder_id,
            task.task_id,
            outcome.succeeded_channels,
            [result.channel for result in outcome.failed],
        )
        return outcome

    def _deliver(self, channel: str, task: Task) -> ChannelResult:
        try:
            if channel == "email":
                self._send_email(task)
            elif channel == "sms":
                self._send_sms(task)
            elif channel == "notification":
                self._send_notification(task)
            else:
                raise DeliveryFailure(channel, "unknown channel")
        except DeliveryFailure as exc:
            logger.warning("Delivery failed task=%s channel=%s: %s", task.task_id, channel, exc.reason)
            return ChannelResult(channel=channel, ok=False, error=exc.reason)
        except Exception as exc:
            logger.exception("Unexpected delivery error task=%s channel=%s", task.task_id, channel)
            return ChannelResult(channel=channel, ok=False, error=str(exc) or type(exc).__name__)
        return ChannelResult(channel=channel, ok=True)

    def _send_email(self, task: Task) -> None:
        if self.email is None:
            raise DeliveryFailure("email", "Email channel not configured")
        if not self.recipients.email:
            raise DeliveryFailure("email", "No email recipient configured")
        self.email.send(self.recipients.email, email_subject(task), email_body(task))

    def _send_sms(self, task: Task) -> None:
        if self.sms is None:
            raise DeliveryFailure("sms", "SMS channel not configured")
        if not (self.recipients.phone_number and self.recipients.carrier):
            raise DeliveryFailure("sms", "No phone number or carrier configured")
        self.sms.send(self.recipients.phone_number, self.recipients.carrier, sms_text(task))

    def _send_notification(self, task: Task) -> None:
        if self.notifier is None:
            raise DeliveryFailure("notification", "Desktop notifications not configured")
        self.notifier.notify(notification_title(task), task.description or task.title)
