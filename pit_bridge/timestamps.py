"""Discord timestamp markup helpers.

Discord renders ``<t:UNIX:STYLE>`` in each reader's own locale and timezone,
so every instant shown to users goes through these functions.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

STYLES = {"t", "T", "d", "D", "f", "F", "R"}

_COUNTDOWN_RE = re.compile(r"^(?:(\d+)m)?(?:(\d+)s)?$")


def _to_unix(when: datetime | float | int) -> int:
    if isinstance(when, datetime):
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return int(when.timestamp())
    return int(when)


def format_discord_timestamp(when: datetime | float | int, style: str = "f") -> str:
    """Return ``<t:UNIX:STYLE>`` for a datetime or epoch seconds."""
    if style not in STYLES:
        raise ValueError(f"Unknown Discord timestamp style: {style!r}")
    return f"<t:{_to_unix(when)}:{style}>"


def relative_time(when: datetime | float | int) -> str:
    return format_discord_timestamp(when, "R")


def full_datetime(when: datetime | float | int) -> str:
    return format_discord_timestamp(when, "F")


def short_time(when: datetime | float | int) -> str:
    return format_discord_timestamp(when, "t")


def time_and_countdown(when: datetime | float | int, include_emoji: bool = True) -> str:
    """Short clock time plus a live countdown, e.g. ``⌛ <t:1:t> (<t:1:R>)``."""
    text = f"{short_time(when)} ({relative_time(when)})"
    return f"⌛ {text}" if include_emoji else text


def parse_countdown(text: str) -> timedelta | None:
    """Parse the game's ``38m0s`` / ``10s`` countdowns. None if malformed."""
    m = _COUNTDOWN_RE.match(text.strip())
    if not m or not (m.group(1) or m.group(2)):
        return None
    minutes = int(m.group(1) or 0)
    seconds = int(m.group(2) or 0)
    return timedelta(minutes=minutes, seconds=seconds)


def format_duration(seconds: float) -> str:
    """Format a duration as ``Hh Mm``."""
    total_minutes = int(max(seconds, 0) // 60)
    hours, minutes = divmod(total_minutes, 60)
    return f"{hours}h {minutes}m"
