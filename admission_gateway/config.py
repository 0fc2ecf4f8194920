"""Engine configuration.

Environment variables (all optional):
- ADM_PRUNE_THRESHOLD: window length that triggers physical pruning (100).
- ADM_PRUNE_WINDOWS: pruning horizon in multiples of the action window (5).
- ADM_STREAM_MAX_ENTRIES: hard cap per action global attempt stream (100000).
- ADM_LOCK_SHARDS: number of per-key lock shards (64).
- ADM_AUDIT_QUEUE_SIZE: audit dispatcher queue bound (10000).
- ADM_AUDIT_FALLBACK_SIZE: local buffer for undeliverable events (100).
- ADM_PATTERN_WORKERS: background pattern analysis threads (1).
- ADM_PATTERN_HORIZON_MS, ADM_PATTERN_DISTRIBUTED_IPS,
  ADM_PATTERN_DISTRIBUTED_TOTAL, ADM_PATTERN_STUFFING_IDENTIFIERS,
  ADM_PATTERN_STUFFING_TOTAL, ADM_PATTERN_CONCENTRATED_TOTAL,
  ADM_PATTERN_BLACKLIST_MS: pattern detector thresholds.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except Exception:
        return default


@dataclass(frozen=True)
class PatternThresholds:
    """Signatures evaluated by the pattern detector over the global stream."""

    horizon_ms: int = HOUR_MS
    distributed_unique_ips: int = 50
    distributed_total: int = 500
    stuffing_unique_identifiers: int = 20
    stuffing_total: int = 100
    concentrated_total: int = 200
    auto_blacklist_ms: int = DAY_MS

    @classmethod
    def from_env(cls) -> "PatternThresholds":
        horizon = _get_int("ADM_PATTERN_HORIZON_MS", cls.horizon_ms)
        blacklist_ms = _get_int("ADM_PATTERN_BLACKLIST_MS", cls.auto_blacklist_ms)
        return cls(
            horizon_ms=max(1000, horizon),
            distributed_unique_ips=max(1, _get_int("ADM_PATTERN_DISTRIBUTED_IPS", cls.distributed_unique_ips)),
            distributed_total=max(1, _get_int("ADM_PATTERN_DISTRIBUTED_TOTAL", cls.distributed_total)),
            stuffing_unique_identifiers=max(
                1, _get_int("ADM_PATTERN_STUFFING_IDENTIFIERS", cls.stuffing_unique_identifiers)
            ),
            stuffing_total=max(1, _get_int("ADM_PATTERN_STUFFING_TOTAL", cls.stuffing_total)),
            concentrated_total=max(1, _get_int("ADM_PATTERN_CONCENTRATED_TOTAL", cls.concentrated_total)),
            auto_blacklist_ms=max(1000, blacklist_ms),
        )


@dataclass(frozen=True)
class EngineConfig:
    prune_threshold: int = 100
    prune_windows: int = 5
    stream_max_entries: int = 100_000
    lock_shards: int = 64
    audit_queue_size: int = 10_000
    audit_fallback_size: int = 100
    pattern_workers: int = 1
    patterns: PatternThresholds = field(default_factory=PatternThresholds)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        # Clamp to sensible bounds
        return cls(
            prune_threshold=max(1, min(_get_int("ADM_PRUNE_THRESHOLD", cls.prune_threshold), 1_000_000)),
            prune_windows=max(1, min(_get_int("ADM_PRUNE_WINDOWS", cls.prune_windows), 1000)),
            stream_max_entries=max(1000, min(_get_int("ADM_STREAM_MAX_ENTRIES", cls.stream_max_entries), 10_000_000)),
            lock_shards=max(1, min(_get_int("ADM_LOCK_SHARDS", cls.lock_shards), 4096)),
            audit_queue_size=max(1, _get_int("ADM_AUDIT_QUEUE_SIZE", cls.audit_queue_size)),
            audit_fallback_size=max(1, _get_int("ADM_AUDIT_FALLBACK_SIZE", cls.audit_fallback_size)),
            pattern_workers=max(1, min(_get_int("ADM_PATTERN_WORKERS", cls.pattern_workers), 32)),
            patterns=PatternThresholds.from_env(),
        )
