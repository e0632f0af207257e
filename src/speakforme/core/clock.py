"""UTC helpers shared by every time-windowed predicate."""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from engines that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def elapsed_ms(start: datetime | None, end: datetime | None) -> int | None:
    """Milliseconds from *start* to *end*, or None when either is missing."""
    if start is None or end is None:
        return None
    delta = ensure_utc(end) - ensure_utc(start)  # type: ignore[operator]
    return int(delta.total_seconds() * 1000)
