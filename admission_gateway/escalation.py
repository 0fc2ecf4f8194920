"""Escalation policy: lifetime attempt count -> penalty level -> block duration."""

from __future__ import annotations

from typing import Sequence

from .policy import ActionPolicy, EscalationLevel


def level_for(levels: Sequence[EscalationLevel], lifetime_count: int, escalation_enabled: bool = True) -> int:
    """Highest level whose trigger_count <= lifetime_count.

    Level 1 is the floor: once a block is triggered at all it is at least a
    level-1 block, even when the lifetime count is below the first trigger
    (possible after pruning).
    """
    if not escalation_enabled or not levels:
        return 1
    for rule in sorted(levels, key=lambda r: r.level, reverse=True):
        if lifetime_count >= rule.trigger_count:
            return rule.level
    return 1


def duration_for(levels: Sequence[EscalationLevel], level: int, policy: ActionPolicy) -> int:
    if not policy.escalation_enabled or not levels:
        return policy.base_block_ms
    for rule in levels:
        if rule.level == level:
            return rule.block_ms
    return levels[0].block_ms
