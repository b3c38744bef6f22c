from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt


def to_iso(dt: datetime) -> str:
    ensure_aware(dt)
    # store as ISO 8601 with offset, always UTC
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(s: str) -> datetime:
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def to_iso_or_none(dt: Optional[datetime]) -> Optional[str]:
    return to_iso(dt) if dt is not None else None


def from_iso_or_none(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return from_iso(s)


def elapsed_ms(earlier: datetime, later: datetime) -> float:
    """Milliseconds from `earlier` to `later` (negative if the clock went back)."""
    return (later - earlier) / timedelta(milliseconds=1)
