"""Attempt tracking: per-identifier sliding windows and per-action global streams.

Counting is pure: windowed_count() filters without mutating. Physical pruning
is a separate step that runs once a window grows past `prune_threshold`
records and only drops entries older than `prune_windows` windows, so the
lifetime count used for escalation survives ordinary pruning.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from .locks import KeyedLockTable


class AttemptOutcome(Enum):
    SUCCESS = "success"
    FAILURE = "failure"

    @classmethod
    def coerce(cls, value: Any) -> "AttemptOutcome":
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            return cls.SUCCESS if value else cls.FAILURE
        if isinstance(value, str):
            v = value.strip().lower()
            if v in ("success", "successful", "ok"):
                return cls.SUCCESS
            if v in ("failure", "failed", "fail"):
                return cls.FAILURE
        raise ValueError(f"unsupported attempt outcome: {value!r}")


@dataclass(frozen=True)
class AttemptRecord:
    timestamp_ms: int
    outcome: AttemptOutcome
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        return d


StreamEntry = Tuple[str, AttemptRecord]


class AttemptTracker:
    """Keyed attempt history (volatile, rebuildable from zero)."""

    def __init__(
        self,
        locks: Optional[KeyedLockTable] = None,
        *,
        prune_threshold: int = 100,
        prune_windows: int = 5,
        stream_max_entries: int = 100_000,
        stream_min_retention_ms: int = 60 * 60 * 1000,
    ):
        self._locks = locks or KeyedLockTable()
        self.prune_threshold = int(prune_threshold)
        self.prune_windows = int(prune_windows)
        self.stream_max_entries = int(stream_max_entries)
        self.stream_min_retention_ms = int(stream_min_retention_ms)
        # (action_id, identifier) -> attempts in insertion order
        self._windows: Dict[Tuple[str, str], List[AttemptRecord]] = {}
        # action_id -> (identifier, record) oldest-first
        self._streams: Dict[str, Deque[StreamEntry]] = {}
        self._stream_locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _stream_lock(self, action_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._stream_locks.get(action_id)
            if lock is None:
                lock = threading.Lock()
                self._stream_locks[action_id] = lock
                self._streams[action_id] = deque()
            return lock

    def horizon_ms(self, window_ms: int) -> int:
        return self.prune_windows * int(window_ms)

    def stream_retention_ms(self, window_ms: int) -> int:
        return max(self.stream_min_retention_ms, self.horizon_ms(window_ms))

    # ------------------------------------------------------------------
    # identifier windows
    # ------------------------------------------------------------------

    def record(
        self,
        action_id: str,
        identifier: str,
        record: AttemptRecord,
        *,
        window_ms: int,
        track_globally: bool = True,
    ) -> int:
        """Append an attempt. Returns the lifetime count after appending."""
        key = (action_id, identifier)
        with self._locks.lock_for(*key):
            attempts = self._windows.setdefault(key, [])
            attempts.append(record)
            if len(attempts) > self.prune_threshold:
                horizon = self.horizon_ms(window_ms)
                now = record.timestamp_ms
                attempts[:] = [a for a in attempts if now - a.timestamp_ms < horizon]
            count = len(attempts)
        if track_globally:
            self._append_stream(action_id, identifier, record, window_ms)
        return count

    def windowed_count(self, action_id: str, identifier: str, window_ms: int, now_ms: int) -> int:
        window_start = now_ms - int(window_ms)
        with self._locks.lock_for(action_id, identifier):
            attempts = self._windows.get((action_id, identifier), ())
            return sum(1 for a in attempts if a.timestamp_ms > window_start)

    def oldest_in_window(self, action_id: str, identifier: str, window_ms: int, now_ms: int) -> Optional[int]:
        window_start = now_ms - int(window_ms)
        with self._locks.lock_for(action_id, identifier):
            attempts = self._windows.get((action_id, identifier), ())
            stamps = [a.timestamp_ms for a in attempts if a.timestamp_ms > window_start]
        return min(stamps) if stamps else None

    def lifetime_count(self, action_id: str, identifier: str) -> int:
        with self._locks.lock_for(action_id, identifier):
            return len(self._windows.get((action_id, identifier), ()))

    def window(self, action_id: str, identifier: str) -> List[AttemptRecord]:
        with self._locks.lock_for(action_id, identifier):
            return list(self._windows.get((action_id, identifier), ()))

    def clear(self, action_id: str, identifier: str) -> bool:
        with self._locks.lock_for(action_id, identifier):
            return self._windows.pop((action_id, identifier), None) is not None

    def identifier_count(self, action_id: str) -> int:
        return sum(1 for (a, _) in list(self._windows.keys()) if a == action_id)

    # ------------------------------------------------------------------
    # global streams
    # ------------------------------------------------------------------

    def _append_stream(self, action_id: str, identifier: str, record: AttemptRecord, window_ms: int) -> None:
        lock = self._stream_lock(action_id)
        retention = self.stream_retention_ms(window_ms)
        with lock:
            stream = self._streams[action_id]
            stream.append((identifier, record))
            self._prune_stream(stream, record.timestamp_ms, retention)

    def _prune_stream(self, stream: Deque[StreamEntry], now_ms: int, retention_ms: int) -> None:
        while stream and now_ms - stream[0][1].timestamp_ms >= retention_ms:
            stream.popleft()
        while len(stream) > self.stream_max_entries:
            stream.popleft()

    def recent_stream(self, action_id: str, now_ms: int, horizon_ms: int) -> List[StreamEntry]:
        """Snapshot of stream entries newer than `horizon_ms`."""
        lock = self._stream_lock(action_id)
        with lock:
            return [(ident, rec) for ident, rec in self._streams[action_id] if now_ms - rec.timestamp_ms < horizon_ms]

    def stream_length(self, action_id: str) -> int:
        lock = self._stream_lock(action_id)
        with lock:
            return len(self._streams[action_id])

    # ------------------------------------------------------------------
    # memory hygiene
    # ------------------------------------------------------------------

    def sweep(self, now_ms: int, window_ms_by_action: Dict[str, int]) -> int:
        """Drop windows whose newest record has aged past the pruning horizon.

        Actions missing from `window_ms_by_action` are left alone.
        """
        removed = 0
        for key in list(self._windows.keys()):
            action_id, identifier = key
            window_ms = window_ms_by_action.get(action_id)
            if window_ms is None:
                continue
            horizon = self.horizon_ms(window_ms)
            with self._locks.lock_for(*key):
                attempts = self._windows.get(key)
                if attempts is None:
                    continue
                kept = [a for a in attempts if now_ms - a.timestamp_ms < horizon]
                if kept:
                    attempts[:] = kept
                else:
                    del self._windows[key]
                    removed += 1
        for action_id, window_ms in window_ms_by_action.items():
            lock = self._stream_lock(action_id)
            with lock:
                self._prune_stream(self._streams[action_id], now_ms, self.stream_retention_ms(window_ms))
        return removed
