from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from taskmatrix.domain.tasks.ports import Clock


class SystemClock(Clock):
    """Wall clock. Timestamps are stored in UTC; `tz_name` only changes the offset they carry."""

    def __init__(self, tz_name: str = "UTC") -> None:
        self._tz = timezone.utc if tz_name == "UTC" else ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(self._tz)
