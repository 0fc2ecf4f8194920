"""Emergency lockdown.

Goal
----
Fail-closed on operator demand.

While a lockdown is active every admission check is denied regardless of
per-action state, policy registration, or IP reputation. A lockdown ends when
it is deactivated explicitly or when its expiry passes; expiry is evaluated
lazily against the clock, there is no timer.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .clock import ms_to_iso
from .config import HOUR_MS


@dataclass(frozen=True)
class LockdownState:
    active: bool
    reason: Optional[str] = None
    activated_at_ms: Optional[int] = None
    expires_at_ms: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "reason": self.reason,
            "activated_at_ms": self.activated_at_ms,
            "activated_at": ms_to_iso(self.activated_at_ms),
            "expires_at_ms": self.expires_at_ms,
            "expires_at": ms_to_iso(self.expires_at_ms),
        }


_INACTIVE = LockdownState(active=False)


class EmergencyLockdown:
    """Global override; state is swapped atomically as one immutable value."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state: LockdownState = _INACTIVE

    def activate(self, reason: str, duration_ms: int, now_ms: int) -> LockdownState:
        if duration_ms is None or int(duration_ms) <= 0:
            duration_ms = HOUR_MS
        state = LockdownState(
            active=True,
            reason=reason,
            activated_at_ms=now_ms,
            expires_at_ms=now_ms + int(duration_ms),
        )
        with self._lock:
            self._state = state
        return state

    def deactivate(self, now_ms: int) -> bool:
        """Clear the lockdown. Returns True if one was in force."""
        with self._lock:
            was_active = self._is_active(self._state, now_ms)
            self._state = _INACTIVE
        return was_active

    @staticmethod
    def _is_active(state: LockdownState, now_ms: int) -> bool:
        if not state.active:
            return False
        return state.expires_at_ms is None or now_ms < state.expires_at_ms

    def is_active(self, now_ms: int) -> bool:
        return self._is_active(self._state, now_ms)

    def state(self, now_ms: int) -> LockdownState:
        state = self._state
        if state.active and not self._is_active(state, now_ms):
            return _INACTIVE
        return state
