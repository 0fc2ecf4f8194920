"""Active block records keyed by (action_id, identifier).

Expiry is lazy: a record with blocked_until <= now reads as absent. Expired
records are only physically removed by sweep() or when overwritten.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .clock import ms_to_iso
from .locks import KeyedLockTable

# Manual blocks bypass escalation and carry this sentinel level.
MANUAL_BLOCK_LEVEL = 999


@dataclass(frozen=True)
class BlockRecord:
    blocked_at_ms: int
    blocked_until_ms: int
    level: int
    reason: str
    attempts_at_block_time: int
    manual: bool = False

    def is_active(self, now_ms: int) -> bool:
        return now_ms < self.blocked_until_ms

    def remaining_ms(self, now_ms: int) -> int:
        return max(0, self.blocked_until_ms - now_ms)


@dataclass(frozen=True)
class BlockInfo:
    """Administrative view of an active block."""

    identifier: str
    blocked_at_ms: int
    blocked_until_ms: int
    remaining_ms: int
    level: int
    reason: str
    total_attempts: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "blocked_at_ms": self.blocked_at_ms,
            "blocked_at": ms_to_iso(self.blocked_at_ms),
            "blocked_until_ms": self.blocked_until_ms,
            "blocked_until": ms_to_iso(self.blocked_until_ms),
            "remaining_ms": self.remaining_ms,
            "level": self.level,
            "reason": self.reason,
            "total_attempts": self.total_attempts,
        }


class BlockStore:
    def __init__(self, locks: Optional[KeyedLockTable] = None):
        self._locks = locks or KeyedLockTable()
        self._blocks: Dict[Tuple[str, str], BlockRecord] = {}

    def get_active(self, action_id: str, identifier: str, now_ms: int) -> Optional[BlockRecord]:
        with self._locks.lock_for(action_id, identifier):
            rec = self._blocks.get((action_id, identifier))
        if rec is None or not rec.is_active(now_ms):
            return None
        return rec

    def put(self, action_id: str, identifier: str, record: BlockRecord) -> None:
        with self._locks.lock_for(action_id, identifier):
            self._blocks[(action_id, identifier)] = record

    def clear(self, action_id: str, identifier: str) -> bool:
        """Remove any record (active or expired). Returns True if one existed."""
        with self._locks.lock_for(action_id, identifier):
            return self._blocks.pop((action_id, identifier), None) is not None

    def active_for_action(self, action_id: str, now_ms: int) -> List[Tuple[str, BlockRecord]]:
        return [
            (ident, rec)
            for (a, ident), rec in list(self._blocks.items())
            if a == action_id and rec.is_active(now_ms)
        ]

    def count_active(self, action_id: str, now_ms: int) -> int:
        return len(self.active_for_action(action_id, now_ms))

    def sweep(self, now_ms: int) -> int:
        removed = 0
        for key, rec in list(self._blocks.items()):
            if rec.is_active(now_ms):
                continue
            with self._locks.lock_for(*key):
                current = self._blocks.get(key)
                if current is not None and not current.is_active(now_ms):
                    del self._blocks[key]
                    removed += 1
        return removed
