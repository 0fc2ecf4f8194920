"""Per-action operational counters.

Notes
-----
- Counters reset on process restart.
- Do not treat these as audit evidence. Use the audit sink for evidence.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    total_checks: int = 0
    total_attempts: int = 0
    total_blocks: int = 0
    denials_by_reason: Dict[str, int] = field(default_factory=dict)


class ActionStats:
    def __init__(self, created_at_ms: int) -> None:
        self._lock = threading.Lock()
        self._last_reset_ms = created_at_ms
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_check(self, allowed: bool, reason: str) -> None:
        with self._lock:
            self._c.total_checks += 1
            if not allowed:
                self._inc_map(self._c.denials_by_reason, reason or "unknown")

    def record_attempt(self) -> None:
        with self._lock:
            self._c.total_attempts += 1

    def record_block(self) -> None:
        with self._lock:
            self._c.total_blocks += 1

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "total_checks": c.total_checks,
                "total_attempts": c.total_attempts,
                "total_blocks": c.total_blocks,
                "denials_by_reason": dict(c.denials_by_reason),
                "last_reset_ms": self._last_reset_ms,
            }
        if extra:
            snap.update(extra)
        return snap
