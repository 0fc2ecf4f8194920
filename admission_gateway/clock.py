"""Injectable time sources.

Every expiry in the engine (windows, blocks, blacklist entries, lockdown) is
evaluated lazily against a clock rather than through live timers. Production
code uses SystemClock; tests drive a ManualClock.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now_ms(self) -> int:
        ...


class SystemClock:
    """Wall-clock epoch milliseconds."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Deterministic clock for tests and replays."""

    def __init__(self, start_ms: int = 0):
        self._lock = threading.Lock()
        self._now = int(start_ms)

    def now_ms(self) -> int:
        with self._lock:
            return self._now

    def advance(self, ms: int) -> int:
        with self._lock:
            self._now += int(ms)
            return self._now

    def set(self, ms: int) -> None:
        with self._lock:
            self._now = int(ms)


def ms_to_iso(ms: Optional[int]) -> Optional[str]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).isoformat()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
