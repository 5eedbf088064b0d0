from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an upstream timestamp; anything unparseable becomes ``None``."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, dict):
        # protobuf Timestamp rendered as {"seconds": ..., "nanos": ...}
        seconds = value.get("seconds")
        if seconds is None:
            return None
        try:
            return datetime.fromtimestamp(int(seconds), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw or raw.startswith("0001-01-01"):
        return None
    raw = raw.replace("Z", "+00:00")
    # Go emits nanosecond precision; fromisoformat accepts at most microseconds.
    head, dot, tail = raw.partition(".")
    if dot:
        digits = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                tail = tail[index:]
                break
            digits += char
        else:
            tail = ""
        raw = f"{head}.{digits[:6].ljust(6, '0')}{tail}"
    try:
        return as_utc(datetime.fromisoformat(raw))
    except ValueError:
        return None


def as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw in {"1", "true", "yes", "on"}:
            return True
        if raw in {"0", "false", "no", "off"}:
            return False
    return None


def split_tags(raw: Any) -> list[str]:
    """Normalize a comma separated string or an iterable of tags."""
    if raw is None:
        return []
    items: Iterable[Any] = raw.split(",") if isinstance(raw, str) else raw
    tags: list[str] = []
    for item in items:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags
