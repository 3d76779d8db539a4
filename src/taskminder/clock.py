"""Wall-clock source and timestamp parsing/formatting helpers."""

from __future__ import annotations

import datetime as dt
from typing import Protocol

INPUT_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d")
DISPLAY_FORMAT = "%Y-%m-%d %H:%M"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Clock(Protocol):
    def now(self) -> dt.datetime: ...


class SystemClock:
    def now(self) -> dt.datetime:
        return utc_now()


def to_utc(value: dt.datetime) -> dt.datetime:
    """Attach the local zone to naive values and convert to UTC."""
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(dt.timezone.utc)


def parse_when(raw: str) -> dt.datetime:
    """Parse user input such as '2026-03-01 09:30' (local time) into UTC."""
    text = raw.strip()
    if not text:
        raise ValueError("empty date/time")
    for fmt in INPUT_FORMATS:
        try:
            return to_utc(dt.datetime.strptime(text, fmt))
        except ValueError:
            continue
    try:
        return to_utc(dt.datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError(
            f"Invalid date/time '{raw}'. Use YYYY-MM-DD HH:MM, YYYY-MM-DD or ISO-8601"
        ) from exc


def format_timestamp(value: dt.datetime | None, *, empty: str = "-") -> str:
    if value is None:
        return empty
    return value.astimezone().strftime(DISPLAY_FORMAT)


def to_iso(value: dt.datetime | None) -> str | None:
    if value is None:
        return None
    return to_utc(value).isoformat()


def from_iso(raw: object) -> dt.datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, dt.datetime):
        return to_utc(raw)
    return to_utc(dt.datetime.fromisoformat(str(raw)))
