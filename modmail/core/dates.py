"""Date/time normalization helpers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from instrukt_ai_logging import get_logger

logger = get_logger(__name__)

_DELAY_PART = re.compile(r"(\d+)([wdhms])?", re.IGNORECASE)
_DELAY_STRING = re.compile(r"^(?:\d+[wdhms]?)+$", re.IGNORECASE)
_UNIT_SECONDS = {"w": 7 * 86400, "d": 86400, "h": 3600, "m": 60, "s": 1}
_HUMANIZE_UNITS = (("year", 365 * 86400), ("day", 86400), ("hour", 3600), ("minute", 60), ("second", 1))


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialize for storage.

    Always carries microseconds so stored values compare correctly as text.
    """
    return ensure_utc(value).isoformat(timespec="microseconds")


def parse_iso_datetime(value: object) -> datetime | None:
    """Parse ISO datetime string, normalizing to UTC.

    Handles string inputs, datetime objects (normalized to UTC),
    and returns None for other types.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if not isinstance(value, str):
        logger.warning("Attempted to parse non-string datetime: %s (type: %s)", value, type(value))
        return None

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return ensure_utc(parsed)
    except ValueError:
        logger.warning("Failed to parse ISO datetime string: %s", value)
        return None


def format_log_timestamp(value: datetime) -> str:
    """Format as `YYYY-MM-DD HH:MM:SS` in UTC for transcripts."""
    return ensure_utc(value).strftime("%Y-%m-%d %H:%M:%S")


def format_clock(value: datetime) -> str:
    """Format as `HH:MM` in UTC for thread timestamps."""
    return ensure_utc(value).strftime("%H:%M")


def parse_delay(text: str) -> timedelta | None:
    """Parse a delay string such as `1d2h`, `30m`, or `90` (bare numbers are minutes).

    Returns:
        The delay, or None when the string is not a valid positive delay
    """
    text = text.strip()
    if not _DELAY_STRING.match(text):
        return None

    total = 0
    for match in _DELAY_PART.finditer(text):
        unit = (match.group(2) or "m").lower()
        total += int(match.group(1)) * _UNIT_SECONDS[unit]

    if total <= 0:
        return None
    return timedelta(seconds=total)


def humanize_delta(delta: timedelta, *, largest: int = 2) -> str:
    """Render a duration like `3 days, 4 hours`.

    Args:
        delta: Duration to render (negative values render as their absolute value)
        largest: Maximum number of units to include
    """
    remaining = abs(int(delta.total_seconds()))
    parts: list[str] = []
    for name, seconds in _HUMANIZE_UNITS:
        if remaining >= seconds:
            amount, remaining = divmod(remaining, seconds)
            parts.append(f"{amount} {name}{'' if amount == 1 else 's'}")
        if len(parts) == largest:
            break
    return ", ".join(parts) if parts else "0 seconds"
