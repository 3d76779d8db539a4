from __future__ import annotations

import datetime as dt
import logging
from pathlib import Path

import pytest

from taskminder.settings import SMTP_PASSWORD_ENV, resolve_settings


def _write_config(data_dir: Path, content: str) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "config.yaml").write_text(content, encoding="utf-8")


def test_defaults_when_config_missing(tmp_path: Path) -> None:
    warnings: list[str] = []
    settings = resolve_settings(tmp_path, warn=warnings.append)
    assert warnings == []
    assert settings.scheduler.poll_interval_seconds == 30
    assert settings.retry.max_attempts == 3
    policy = settings.retry.policy()
    assert policy.base_delay == dt.timedelta(seconds=300)
    assert policy.max_delay == dt.timedelta(hours=1)
    assert settings.email.smtp_port == 587
    assert not settings.email.configured
    assert not settings.sms.configured
    assert settings.logging.level_number == logging.INFO


def test_reads_valid_sections(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        (
            "scheduler:\n"
            "  poll_interval_seconds: 5\n"
            "retry:\n"
            "  base_delay_seconds: 60\n"
            "  max_delay_seconds: 120\n"
            "  max_attempts: 5\n"
            "email:\n"
            "  address: me@example.com\n"
            "  smtp_server: smtp.example.com\n"
            "  username: me\n"
            "  password: secret\n"
            "sms:\n"
            "  phone_number: 5551234567\n"
            "  carrier: verizon\n"
            "  enabled: true\n"
            "logging:\n"
            "  level: DEBUG\n"
        ),
    )
    warnings: list[str] = []
    settings = resolve_settings(tmp_path, warn=warnings.append)
    assert warnings == []
    assert settings.scheduler.poll_interval_seconds == 5.0
    assert settings.retry.policy().backoff(3) == dt.timedelta(seconds=120)
    assert settings.retry.max_attempts == 5
    assert settings.email.configured
    assert settings.email.password == "secret"
    assert settings.sms.phone_number == "5551234567"
    assert settings.sms.configured
    assert settings.logging.level == "debug"


def test_invalid_values_warn_and_fall_back(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        (
            "scheduler:\n"
            "  poll_interval_seconds: -1\n"
            "  colour: blue\n"
            "retry:\n"
            "  max_attempts: 0\n"
            "email: nope\n"
            "sms:\n"
            "  enabled: 'yes'\n"
            "logging:\n"
            "  level: loud\n"
            "theme: dark\n"
        ),
    )
    warnings: list[str] = []
    settings = resolve_settings(tmp_path, warn=warnings.append)
    assert settings.scheduler.poll_interval_seconds == 30
    assert settings.retry.max_attempts == 3
    assert settings.sms.enabled is False
    assert settings.logging.level == "info"
    joined = "\n".join(warnings)
    assert "Unsupported config key 'theme'" in joined
    assert "Unsupported scheduler key 'colour'" in joined
    assert "Invalid scheduler.poll_interval_seconds" in joined
    assert "Invalid retry.max_attempts" in joined
    assert "Invalid email section" in joined
    assert "Invalid sms.enabled" in joined
    assert "Invalid logging.level 'loud'" in joined


def test_max_delay_below_base_is_raised_to_base(tmp_path: Path) -> None:
    _write_config(tmp_path, "retry:\n  base_delay_seconds: 600\n  max_delay_seconds: 60\n")
    warnings: list[str] = []
    settings = resolve_settings(tmp_path, warn=warnings.append)
    assert settings.retry.max_delay_seconds == 600
    assert len(warnings) == 1


def test_password_env_overrides_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _write_config(tmp_path, "email:\n  password: from-file\n")
    monkeypatch.setenv(SMTP_PASSWORD_ENV, "from-env")
    assert resolve_settings(tmp_path).email.password == "from-env"
