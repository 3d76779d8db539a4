"""Delivery channel ports and their concrete adapters.

The dispatcher only depends on the Protocols below; the adapters wrap SMTP,
email-to-SMS carrier gateways and ``notify-send``. Every adapter reports a
failed send by raising DeliveryFailure.
"""

from __future__ import annotations

from email.message import EmailMessage
import logging
import re
import shutil
import smtplib
import subprocess
from typing import Protocol

from .models import DeliveryFailure
from .settings import EmailSettings

logger = logging.getLogger(__name__)

SMS_MAX_LENGTH = 160

CARRIER_GATEWAYS = {
    "att": "txt.att.net",
    "at&t": "txt.att.net",
    "verizon": "vtext.com",
    "tmobile": "tmomail.net",
    "t-mobile": "tmomail.net",
    "sprint": "messaging.sprintpcs.com",
    "boost": "myboostmobile.com",
    "cricket": "sms.cricketwireless.net",
    "metropcs": "mymetropcs.com",
    "virgin": "vmobl.com",
    "uscellular": "email.uscc.net",
}


class EmailChannel(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> None: ...


class SmsChannel(Protocol):
    def send(self, phone_number: str, carrier: str, message: str) -> None: ...


class NotificationChannel(Protocol):
    def notify(self, title: str, body: str) -> None: ...


def truncate_sms(message: str) -> str:
    if len(message) <= SMS_MAX_LENGTH:
        return message
    return f"{message[: SMS_MAX_LENGTH - 3]}..."


def sms_gateway_address(phone_number: str, carrier: str) -> str:
    digits = re.sub(r"\D", "", phone_number)
    if not digits:
        raise DeliveryFailure("sms", f"Invalid phone number: {phone_number!r}")
    domain = CARRIER_GATEWAYS.get(carrier.strip().lower())
    if domain is None:
        raise DeliveryFailure("sms", f"Unsupported carrier: {carrier}")
    return f"{digits}@{domain}"


class SmtpEmailChannel:
    """Sends plain-text mail through an SMTP relay (STARTTLS by default)."""

    def __init__(self, settings: EmailSettings, *, timeout: float = 30.0, channel: str = "email") -> None:
        self.settings = settings
        self.timeout = timeout
        self.channel = channel

    def _sender(self, display_name: str) -> str:
        return f"{display_name} <{self.settings.address}>"

    def send(self, recipient: str, subject: str, body: str, *, display_name: str = "Task Scheduler") -> None:
        if not self.settings.configured:
            raise DeliveryFailure(self.channel, "Email configuration is incomplete")

        message = EmailMessage()
        message["From"] = self._sender(display_name)
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)

        try:
            with smtplib.SMTP(self.settings.smtp_server, self.settings.smtp_port, timeout=self.timeout) as smtp:
                if self.settings.use_tls:
                    smtp.starttls()
                if self.settings.username:
                    smtp.login(self.settings.username, self.settings.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryFailure(self.channel, f"SMTP send failed: {exc}") from exc
        logger.info("%s sent to %s subject=%r", self.channel, recipient, subject)


class EmailGatewaySmsChannel:
    """SMS through the carrier's email-to-SMS gateway, reusing an SMTP sender."""

    def __init__(self, email_settings: EmailSettings, *, timeout: float = 30.0) -> None:
        self._mailer = SmtpEmailChannel(email_settings, timeout=timeout, channel="sms")

    def send(self, phone_number: str, carrier: str, message: str) -> None:
        address = sms_gateway_address(phone_number, carrier)
        # Gateways ignore the subject line.
        self._mailer.send(address, "", truncate_sms(message), display_name="Task Reminder")


class DesktopNotificationChannel:
    """Desktop notifications through the freedesktop ``notify-send`` tool."""

    def __init__(self, *, timeout: float = 10.0, expire_ms: int = 5000, command: str = "notify-send") -> None:
        self.timeout = timeout
        self.expire_ms = expire_ms
        self.command = command

    def notify(self, title: str, body: str) -> None:
        executable = shutil.which(self.command)
        if executable is None:
            raise DeliveryFailure("notification", f"`{self.command}` not found")
        cmd = [executable, "--icon=calendar", f"--expire-time={self.expire_ms}", title, body]
        try:
            result = subprocess.run(cmd, check=False, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise DeliveryFailure("notification", f"`{self.command}` timed out") from exc
        except OSError as exc:
            raise DeliveryFailure("notification", f"Unable to run `{self.command}` ({exc})") from exc
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit code {result.returncode}"
            raise DeliveryFailure("notification", detail)
