from __future__ import annotations

import re
from typing import Any


_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
    "d": 86400.0,
}

_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h|d)")
_FULL_RE = re.compile(r"^(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h|d))+$")


def is_duration_literal(text: str) -> bool:
    return bool(_FULL_RE.match(str(text or "").strip()))


def parse_duration(value: Any) -> float:
    """
    Parse "300ms", "1h30m", "4h" (or a bare number of seconds) into seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)

    s = str(value or "").strip()
    if not s:
        raise ValueError("Invalid duration: empty")
    try:
        return float(s)
    except ValueError:
        pass
    if not _FULL_RE.match(s):
        raise ValueError(f"Invalid duration: {value!r}")
    return sum(float(num) * _UNIT_SECONDS[unit] for num, unit in _PART_RE.findall(s))


def format_duration(seconds: float) -> str:
    seconds = float(seconds)
    if seconds < 1.0:
        return f"{seconds * 1000.0:.0f}ms"
    if seconds < 60.0:
        return f"{seconds:g}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if secs:
        out += f"{secs}s"
    return out or "0s"
