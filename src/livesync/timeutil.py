"""UTC timestamp helpers. Stored timestamps use the Helix format, e.g. 2024-01-01T12:00:00Z."""

from datetime import datetime, timedelta, timezone
from typing import Optional

TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format an aware or naive-UTC datetime as a stored timestamp."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(TIMESTAMP_FORMAT)


def now_timestamp() -> str:
    return format_timestamp(utcnow())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the Helix 'Z' suffix, explicit offsets, fractional seconds and
    SQLite's 'YYYY-MM-DD HH:MM:SS'. Returns None for anything unparsable.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def cutoff_timestamp(days: float, now: Optional[datetime] = None) -> str:
    """Stored-format timestamp for `days` before now."""
    return format_timestamp((now or utcnow()) - timedelta(days=days))
