from __future__ import annotations

import datetime as dt
import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Seconds on a monotonic timeline (only differences are meaningful)."""
        ...

    def utcnow(self) -> dt.datetime:
        ...


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def utcnow(self) -> dt.datetime:
        return dt.datetime.now(dt.timezone.utc)


system_clock = SystemClock()
