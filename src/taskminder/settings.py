"""Typed settings resolved from ``config.yaml`` with per-key fallbacks."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from typing import Any, Callable

from . import storage
from .retry import RetryPolicy

SMTP_PASSWORD_ENV = "TASKMINDER_SMTP_PASSWORD"
VALID_LOG_LEVELS = ("debug", "info", "warning", "error")


@dataclass(slots=True)
class SchedulerSettings:
    poll_interval_seconds: float = 30.0
    dispatch_timeout_seconds: float = 30.0


@dataclass(slots=True)
class RetrySettings:
    base_delay_seconds: float = 300.0
    max_delay_seconds: float = 3600.0
    max_attempts: int = 3

    def policy(self) -> RetryPolicy:
        return RetryPolicy.from_seconds(
            self.base_delay_seconds,
            self.max_delay_seconds,
            self.max_attempts,
        )


@dataclass(slots=True)
class EmailSettings:
    address: str = ""
    smtp_server: str = ""
    smtp_port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True

    @property
    def configured(self) -> bool:
        return bool(self.address and self.smtp_server and self.username)


@dataclass(slots=True)
class SmsSettings:
    phone_number: str = ""
    carrier: str = ""
    enabled: bool = False

    @property
    def configured(self) -> bool:
        return self.enabled and bool(self.phone_number and self.carrier)


@dataclass(slots=True)
class LoggingSettings:
    level: str = "info"
    console_output: bool = False
    max_file_size_mb: int = 10
    max_files: int = 5

    @property
    def level_number(self) -> int:
        return logging.getLevelName(self.level.upper())


@dataclass(slots=True)
class Settings:
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    email: EmailSettings = field(default_factory=EmailSettings)
    sms: SmsSettings = field(default_factory=SmsSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)


Warn = Callable[[str], None]


def _warn(warn: Warn | None, message: str) -> None:
    if warn is not None:
        warn(message)


def _section(data: dict[str, Any], name: str, where: Path, warn: Warn | None) -> dict[str, Any]:
    section = data.get(name, {})
    if section is None:
        return {}
    if not isinstance(section, dict):
        _warn(warn, f"Invalid {name} section in {where}. Using defaults.")
        return {}
    return section


def _number(
    section: dict[str, Any],
    key: str,
    default: float,
    *,
    label: str,
    minimum: float,
    integer: bool = False,
    warn: Warn | None,
) -> Any:
    value = section.get(key)
    if value is None:
        return default
    valid_type = int if integer else (int, float)
    if isinstance(value, bool) or not isinstance(value, valid_type) or value < minimum:
        _warn(warn, f"Invalid {label}.{key}. Using default '{default}'.")
        return default
    return value


def _text(section: dict[str, Any], key: str, default: str, *, label: str, warn: Warn | None) -> str:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        _warn(warn, f"Invalid {label}.{key}. Using default '{default}'.")
        return default
    return value.strip()


def _flag(section: dict[str, Any], key: str, default: bool, *, label: str, warn: Warn | None) -> bool:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        _warn(warn, f"Invalid {label}.{key}. Using default '{default}'.")
        return default
    return value


def _unknown_keys(section: dict[str, Any], known: set[str], label: str, where: Path, warn: Warn | None) -> None:
    for key in section:
        if key not in known:
            _warn(warn, f"Unsupported {label} key '{key}' in {where}. Ignoring.")


def resolve_settings(data_dir: Path, warn: Warn | None = None) -> Settings:
    data = storage.read_config(data_dir, warn=warn)
    where = storage.config_path(data_dir)
    defaults = Settings()

    known_sections = {"scheduler", "retry", "email", "sms", "logging"}
    for key in data:
        if key not in known_sections:
            _warn(warn, f"Unsupported config key '{key}' in {where}. Ignoring.")

    raw = _section(data, "scheduler", where, warn)
    _unknown_keys(raw, {"poll_interval_seconds", "dispatch_timeout_seconds"}, "scheduler", where, warn)
    scheduler = SchedulerSettings(
        poll_interval_seconds=float(
            _number(raw, "poll_interval_seconds", defaults.scheduler.poll_interval_seconds,
                    label="scheduler", minimum=0.5, warn=warn)
        ),
        dispatch_timeout_seconds=float(
            _number(raw, "dispatch_timeout_seconds", defaults.scheduler.dispatch_timeout_seconds,
                    label="scheduler", minimum=1, warn=warn)
        ),
    )

    raw = _section(data, "retry", where, warn)
    _unknown_keys(raw, {"base_delay_seconds", "max_delay_seconds", "max_attempts"}, "retry", where, warn)
    retry = RetrySettings(
        base_delay_seconds=float(
            _number(raw, "base_delay_seconds", defaults.retry.base_delay_seconds,
                    label="retry", minimum=0, warn=warn)
        ),
        max_delay_seconds=float(
            _number(raw, "max_delay_seconds", defaults.retry.max_delay_seconds,
                    label="retry", minimum=0, warn=warn)
        ),
        max_attempts=int(
            _number(raw, "max_attempts", defaults.retry.max_attempts,
                    label="retry", minimum=1, integer=True, warn=warn)
        ),
    )
    if retry.max_delay_seconds < retry.base_delay_seconds:
        _warn(warn, "retry.max_delay_seconds is below retry.base_delay_seconds; using base delay as cap.")
        retry.max_delay_seconds = retry.base_delay_seconds

    raw = _section(data, "email", where, warn)
    _unknown_keys(
        raw,
        {"address", "smtp_server", "smtp_port", "username", "password", "use_tls"},
        "email",
        where,
        warn,
    )
    email = EmailSettings(
        address=_text(raw, "address", "", label="email", warn=warn),
        smtp_server=_text(raw, "smtp_server", "", label="email", warn=warn),
        smtp_port=int(
            _number(raw, "smtp_port", defaults.email.smtp_port,
                    label="email", minimum=1, integer=True, warn=warn)
        ),
        username=_text(raw, "username", "", label="email", warn=warn),
        password=_text(raw, "password", "", label="email", warn=warn),
        use_tls=_flag(raw, "use_tls", True, label="email", warn=warn),
    )
    env_password = os.getenv(SMTP_PASSWORD_ENV)
    if env_password:
        email.password = env_password

    raw = _section(data, "sms", where, warn)
    _unknown_keys(raw, {"phone_number", "carrier", "enabled"}, "sms", where, warn)
    sms = SmsSettings(
        phone_number=_text(raw, "phone_number", "", label="sms", warn=warn),
        carrier=_text(raw, "carrier", "", label="sms", warn=warn),
        enabled=_flag(raw, "enabled", False, label="sms", warn=warn),
    )

    raw = _section(data, "logging", where, warn)
    _unknown_keys(raw, {"level", "console_output", "max_file_size_mb", "max_files"}, "logging", where, warn)
    level = _text(raw, "level", defaults.logging.level, label="logging", warn=warn).lower()
    if level not in VALID_LOG_LEVELS:
        _warn(warn, f"Invalid logging.level '{level}'. Using default '{defaults.logging.level}'.")
        level = defaults.logging.level
    logging_settings = LoggingSettings(
        level=level,
        console_output=_flag(raw, "console_output", False, label="logging", warn=warn),
        max_file_size_mb=int(
            _number(raw, "max_file_size_mb", defaults.logging.max_file_size_mb,
                    label="logging", minimum=1, integer=True, warn=warn)
        ),
        max_files=int(
            _number(raw, "max_files", defaults.logging.max_files,
                    label="logging", minimum=1, integer=True, warn=warn)
        ),
    )

    return Settings(
        scheduler=scheduler,
        retry=retry,
        email=email,
        sms=sms,
        logging=logging_settings,
    )
