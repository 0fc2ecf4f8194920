"""Policy catalog: per-action admission parameters and escalation tables.

An ActionPolicy is immutable once registered. Re-registering an action
replaces its policy and escalation table but never touches the attempt
windows or blocks already accumulated for it.

Option effects
--------------
max_attempts        attempts allowed inside one window before a block
window_ms           rolling window length used for counting
base_block_ms       level-1 block duration; higher levels multiply it
escalation_enabled  if False every block is level 1 for base_block_ms
bypass_whitelist    if True a whitelisted IP skips every further check
track_globally      if False attempts are not fed to the pattern detector
"""

from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import DAY_MS, HOUR_MS

logger = logging.getLogger("admission_gateway")

MINUTE_MS = 60 * 1000

TRIGGER_MULTIPLIERS: Tuple[int, ...] = (1, 2, 3, 5, 10)
BLOCK_MULTIPLIERS: Tuple[int, ...] = (1, 2, 4, 8)
LEVEL_DESCRIPTIONS: Tuple[str, ...] = (
    "Initial rate limit",
    "Escalated rate limit",
    "High-risk activity detected",
    "Potential attack - extended block",
    "Persistent abuse - long-term block",
)

# snake_case field -> accepted config keys (the camelCase spellings are the
# ones used by existing JSON catalogs)
_FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "max_attempts": ("max_attempts", "maxAttempts"),
    "window_ms": ("window_ms", "windowMs"),
    "base_block_ms": ("base_block_ms", "blockDurationMs", "block_duration_ms"),
    "escalation_enabled": ("escalation_enabled", "escalationEnabled"),
    "bypass_whitelist": ("bypass_whitelist", "bypassWhitelist"),
    "track_globally": ("track_globally", "trackGlobally"),
}
_INT_FIELDS = ("max_attempts", "window_ms", "base_block_ms")
_BOOL_FIELDS = ("escalation_enabled", "bypass_whitelist", "track_globally")


@dataclass(frozen=True)
class ActionPolicy:
    action_id: str
    max_attempts: int = 5
    window_ms: int = 15 * MINUTE_MS
    base_block_ms: int = 15 * MINUTE_MS
    escalation_enabled: bool = True
    bypass_whitelist: bool = True
    track_globally: bool = True

    @classmethod
    def from_config(cls, action_id: str, config: Optional[Mapping[str, Any]] = None) -> "ActionPolicy":
        """Merge a loosely-typed mapping over the defaults.

        Malformed values are ignored (the default is kept) rather than
        rejected, so a bad catalog entry never takes an action offline.
        """
        policy = cls(action_id=str(action_id))
        if not config:
            return policy
        if not isinstance(config, Mapping):
            logger.warning("Ignoring non-mapping policy config for action %r", action_id)
            return policy

        updates: Dict[str, Any] = {}
        for name, aliases in _FIELD_ALIASES.items():
            for key in aliases:
                if key not in config:
                    continue
                value = config[key]
                if name in _INT_FIELDS:
                    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                        logger.warning("Ignoring invalid %s=%r for action %r", key, value, action_id)
                        continue
                    updates[name] = int(value)
                elif name in _BOOL_FIELDS:
                    if not isinstance(value, bool):
                        logger.warning("Ignoring invalid %s=%r for action %r", key, value, action_id)
                        continue
                    updates[name] = value
                break
        return replace(policy, **updates) if updates else policy

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EscalationLevel:
    level: int
    trigger_count: int
    block_ms: int
    description: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_escalation_levels(policy: ActionPolicy) -> List[EscalationLevel]:
    """Derive the five escalation levels for a policy.

    Level 5 is a fixed 24h block. When 8x the base block already exceeds a
    day, level 5 is lifted to level 4's duration so durations never decrease.
    """
    levels: List[EscalationLevel] = []
    for idx, trigger_mult in enumerate(TRIGGER_MULTIPLIERS):
        if idx < len(BLOCK_MULTIPLIERS):
            block_ms = policy.base_block_ms * BLOCK_MULTIPLIERS[idx]
        else:
            block_ms = max(DAY_MS, levels[-1].block_ms)
        levels.append(
            EscalationLevel(
                level=idx + 1,
                trigger_count=policy.max_attempts * trigger_mult,
                block_ms=block_ms,
                description=LEVEL_DESCRIPTIONS[idx],
            )
        )
    return levels


class PolicyCatalog:
    """Registry of action policies and their escalation tables."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._policies: Dict[str, ActionPolicy] = {}
        self._levels: Dict[str, List[EscalationLevel]] = {}

    def register(self, action_id: str, config: Optional[Mapping[str, Any]] = None) -> ActionPolicy:
        policy = ActionPolicy.from_config(action_id, config)
        levels = build_escalation_levels(policy)
        with self._lock:
            self._policies[policy.action_id] = policy
            self._levels[policy.action_id] = levels
        return policy

    def get(self, action_id: str) -> Optional[ActionPolicy]:
        with self._lock:
            return self._policies.get(action_id)

    def levels(self, action_id: str) -> List[EscalationLevel]:
        with self._lock:
            return list(self._levels.get(action_id, ()))

    def actions(self) -> List[str]:
        with self._lock:
            return list(self._policies.keys())

    def policies(self) -> Dict[str, ActionPolicy]:
        with self._lock:
            return dict(self._policies)

    def __contains__(self, action_id: object) -> bool:
        with self._lock:
            return action_id in self._policies

    def __len__(self) -> int:
        with self._lock:
            return len(self._policies)


# Stock catalog for common sensitive operations. Not registered implicitly.
DEFAULT_ACTION_POLICIES: Dict[str, Dict[str, Any]] = {
    "login": {"max_attempts": 5, "window_ms": 15 * MINUTE_MS, "base_block_ms": 15 * MINUTE_MS},
    "password_reset": {"max_attempts": 3, "window_ms": HOUR_MS, "base_block_ms": HOUR_MS},
    "api_call": {
        "max_attempts": 100,
        "window_ms": MINUTE_MS,
        "base_block_ms": MINUTE_MS,
        "escalation_enabled": False,
    },
    "file_upload": {"max_attempts": 10, "window_ms": MINUTE_MS, "base_block_ms": 5 * MINUTE_MS},
    "email_send": {"max_attempts": 50, "window_ms": HOUR_MS, "base_block_ms": HOUR_MS},
    "sms_send": {"max_attempts": 10, "window_ms": HOUR_MS, "base_block_ms": HOUR_MS},
    "data_export": {"max_attempts": 5, "window_ms": HOUR_MS, "base_block_ms": HOUR_MS},
    "account_creation": {"max_attempts": 3, "window_ms": HOUR_MS, "base_block_ms": DAY_MS},
    "payment_process": {"max_attempts": 3, "window_ms": 30 * MINUTE_MS, "base_block_ms": HOUR_MS},
    "search": {
        "max_attempts": 60,
        "window_ms": MINUTE_MS,
        "base_block_ms": MINUTE_MS,
        "escalation_enabled": False,
    },
    "bulk_pay_statements": {"max_attempts": 5, "window_ms": 30 * MINUTE_MS, "base_block_ms": 15 * MINUTE_MS},
    "calculate_employee_pay": {
        "max_attempts": 200,
        "window_ms": 5 * MINUTE_MS,
        "base_block_ms": MINUTE_MS,
        "escalation_enabled": False,
        "track_globally": False,
    },
}
