"""Sharded lock table for per-key exclusive access.

A fixed pool of locks indexed by the hash of a key. Two keys only contend
when they land on the same shard, and the pool never grows with key
cardinality.
"""

from __future__ import annotations

import threading
from typing import Hashable, List


class KeyedLockTable:
    def __init__(self, shards: int = 64):
        n = int(shards) if int(shards) > 0 else 64
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(n)]

    def lock_for(self, *key: Hashable) -> threading.RLock:
        return self._locks[hash(key) % len(self._locks)]

    def __len__(self) -> int:
        return len(self._locks)
