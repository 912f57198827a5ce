from datetime import datetime, timezone, timedelta
from typing import Optional, Union
import re

from .errors import ParseError

# e.g., "20s", "5m", "1h30m", "2d3h", "90m", "  2h  "
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")

# e.g., "5 minutes", "1 hour", "2 days"
LONG_DELAY_RE = re.compile(r"(?i)^\s*(\d+)\s+(second|minute|hour|day|week)s?\s*$")

UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 604800,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'.

    Always carries microseconds so stored values compare correctly as text.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return to_iso(utcnow())


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_delay_to_seconds(s: str) -> int:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h', '90m' or
    '5 minutes', '2 hours', '1 day'.
    Returns total seconds (int). Raises ParseError on bad input.
    """
    if not s or not s.strip():
        raise ParseError("delay string is empty")
    m = LONG_DELAY_RE.match(s)
    if m:
        return int(m.group(1)) * UNIT_SECONDS[m.group(2).lower()]
    m = DELAY_RE.match(s)
    if not m or not any(m.groups()):
        raise ParseError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = m.groups()
    total = 0
    if d:  total += int(d) * 86400
    if h:  total += int(h) * 3600
    if m_: total += int(m_) * 60
    if s_: total += int(s_)
    return total


def resolve_time(value: Union[str, datetime, None], now: Optional[datetime] = None) -> datetime:
    """
    Turn a schedule expression into an absolute UTC datetime.

    Accepts a datetime (naive values are taken as UTC), None/'now'/'immediate',
    a relative delay ('5m', '1h30m', '2 hours') or an ISO-8601 date string.
    """
    now = now or utcnow()
    if value is None:
        return now
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    text = value.strip()
    if text.lower() in ("now", "immediate"):
        return now
    if not text:
        raise ParseError("time expression is empty")

    if LONG_DELAY_RE.match(text) or DELAY_RE.match(text):
        try:
            return now + timedelta(seconds=parse_delay_to_seconds(text))
        except ParseError:
            pass

    try:
        return parse_iso(text).astimezone(timezone.utc)
    except ValueError:
        raise ParseError(f"Unable to parse date: {value!r}")


def format_relative(dt: datetime, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    diff = (dt - now).total_seconds()
    if diff < 0:
        return "overdue"

    minutes = int(diff // 60)
    hours = int(diff // 3600)
    days = int(diff // 86400)
    if minutes < 1:
        return "in less than a minute"
    if minutes < 60:
        return f"in {minutes} minute{'' if minutes == 1 else 's'}"
    if hours < 24:
        return f"in {hours} hour{'' if hours == 1 else 's'}"
    return f"in {days} day{'' if days == 1 else 's'}"


def backoff_delay(retry_count: int, base: float = 60) -> float:
    """Seconds to wait after `retry_count` earlier retries: base * 2**retry_count."""
    if retry_count < 0:
        raise ValueError("retry_count must be >= 0")
    return base * (2 ** retry_count)
