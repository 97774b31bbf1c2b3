from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def parse_hhmm(value: Any) -> dt_time:
    s = str(value or "").strip()
    if not s or ":" not in s:
        raise ValueError(f"Invalid time (expected HH:MM): {value!r}")
    hh_str, mm_str = s.split(":", 1)
    try:
        hour = int(hh_str)
        minute = int(mm_str)
    except ValueError as exc:
        raise ValueError(f"Invalid time (expected HH:MM): {value!r}") from exc
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time (expected HH:MM): {value!r}")
    return dt_time(hour=hour, minute=minute)


def load_timezone(name: str) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name!r}") from exc


@dataclass(frozen=True)
class MaintenanceWindow:
    """
    Recurring window during which alert dispatch is suppressed.

    `every` lists the weekdays on which the window starts; empty means every day.
    """

    start: dt_time
    duration: timedelta
    every: tuple[str, ...] = ()
    enabled: bool = True
    tz: tzinfo = field(default=timezone.utc)

    def __post_init__(self) -> None:
        if self.duration <= timedelta(0) or self.duration > timedelta(days=1):
            raise ValueError(f"Maintenance duration must be within (0, 24h], got {self.duration}")
        for day in self.every:
            if day not in WEEKDAYS:
                raise ValueError(f"Invalid maintenance day: {day!r}")

    def is_active(self, now: datetime | None = None) -> bool:
        if not self.enabled:
            return False
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(self.tz)

        # A window that started yesterday may still be running past midnight.
        for days_back in (0, 1):
            day = local.date() - timedelta(days=days_back)
            if self.every and WEEKDAYS[day.weekday()] not in self.every:
                continue
            window_start = datetime.combine(day, self.start, tzinfo=self.tz)
            if window_start <= local < window_start + self.duration:
                return True
        return False
