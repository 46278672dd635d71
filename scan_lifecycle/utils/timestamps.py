from datetime import datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Normalise a DB or JSON timestamp to an aware UTC datetime.

    SQLite hands back naive datetimes and PostgREST hands back ISO strings;
    both are treated as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def minutes_between(earlier: Optional[datetime], later: datetime) -> float:
    if earlier is None:
        return 0.0
    return (later - earlier).total_seconds() / 60.0
