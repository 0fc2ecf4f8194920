"""Admission engine.

Composes the policy catalog, attempt tracker, block store, reputation lists,
pattern detector and emergency lockdown into the two primitives callers use:

    decision = engine.check_limit("login", user_email, {"ip": ip})
    if decision.allowed:
        ok = do_login()
        engine.record_attempt("login", user_email, "success" if ok else "failure", {"ip": ip})

check_limit() never mutates attempt history, so a caller may check freely without
side effects. record_attempt() is the only way attempts are counted, and a
successful attempt clears both the identifier's window and any block on it.
check_and_record() bundles the two for callers who do not need to observe the
real outcome first.

Availability note for integrators: an action that was never registered is
admitted with reason ``no_policy``. Register every protected action at
startup.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from . import metrics
from .audit import AuditDispatcher, AuditSink, LoggingAuditSink, Severity
from .blocks import MANUAL_BLOCK_LEVEL, BlockInfo, BlockRecord, BlockStore
from .clock import Clock, SystemClock, ms_to_iso
from .config import DAY_MS, HOUR_MS, EngineConfig
from .errors import ADM_E_BAD_SNAPSHOT, ADM_E_INTERNAL, admission_error
from .escalation import duration_for, level_for
from .lockdown import EmergencyLockdown, LockdownState
from .locks import KeyedLockTable
from .patterns import PatternDetector
from .policy import DEFAULT_ACTION_POLICIES, ActionPolicy, PolicyCatalog
from .reputation import ReputationEntry, ReputationStore
from .schema import validate_snapshot
from .stats import ActionStats
from .tracker import AttemptOutcome, AttemptRecord, AttemptTracker

logger = logging.getLogger("admission_gateway")

REASON_NO_POLICY = "no_policy"
REASON_EMERGENCY_LOCKDOWN = "emergency_lockdown"
REASON_BLACKLISTED = "blacklisted"
REASON_WHITELISTED = "whitelisted"
REASON_RATE_LIMITED = "rate_limited"
REASON_WITHIN_LIMITS = "within_limits"
REASON_INTERNAL_ERROR = "internal_error"

UNKNOWN_IDENTIFIER = "unknown"
SNAPSHOT_VERSION = 1


@dataclass(frozen=True)
class AdmissionContext:
    """Caller-supplied correlation keys. Never interpreted beyond identity."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    fingerprint: Optional[str] = None

    @classmethod
    def coerce(cls, context: Any) -> "AdmissionContext":
        if context is None:
            return cls()
        if isinstance(context, cls):
            return context
        if isinstance(context, Mapping):

            def _pick(*keys: str) -> Optional[str]:
                for k in keys:
                    v = context.get(k)
                    if v:
                        return str(v)
                return None

            return cls(
                ip=_pick("ip", "ip_address"),
                user_agent=_pick("user_agent", "userAgent"),
                fingerprint=_pick("fingerprint", "device_fingerprint", "deviceFingerprint"),
            )
        return cls()


@dataclass(frozen=True)
class Decision:
    """Outcome of an admission check.

    reset_time_ms is when the oldest attempt still inside the window slides
    out of it (oldest in-window timestamp + window_ms), i.e. when one more
    attempt becomes available. With no attempts in the window it is
    now + window_ms.
    """

    allowed: bool
    reason: str
    message: Optional[str] = None
    retry_after_ms: Optional[int] = None
    block_level: Optional[int] = None
    remaining_ms: Optional[int] = None
    remaining: Optional[int] = None
    reset_time_ms: Optional[int] = None
    attempts_used: Optional[int] = None
    max_attempts: Optional[int] = None
    window_ms: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"allowed": self.allowed, "reason": self.reason}
        for name in (
            "message",
            "retry_after_ms",
            "block_level",
            "remaining_ms",
            "remaining",
            "reset_time_ms",
            "attempts_used",
            "max_attempts",
            "window_ms",
        ):
            value = getattr(self, name)
            if value is not None:
                d[name] = value
        if self.retry_after_ms is not None:
            d["retry_after"] = ms_to_iso(self.retry_after_ms)
        if self.reset_time_ms is not None:
            d["reset_time"] = ms_to_iso(self.reset_time_ms)
        return d


def _normalize_identifier(identifier: Any) -> str:
    if identifier is None:
        return UNKNOWN_IDENTIFIER
    s = str(identifier).strip()
    return s or UNKNOWN_IDENTIFIER


class AdmissionEngine:
    """In-memory admission control and abuse detection service.

    State is volatile working-set data; nothing survives a restart except
    what the caller restores through import_config().
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        audit_sink: Optional[AuditSink] = None,
        config: Optional[EngineConfig] = None,
        *,
        detector: Optional[PatternDetector] = None,
    ):
        self.config = config or EngineConfig.from_env()
        self.clock: Clock = clock or SystemClock()
        self._locks = KeyedLockTable(self.config.lock_shards)
        self.catalog = PolicyCatalog()
        self.tracker = AttemptTracker(
            self._locks,
            prune_threshold=self.config.prune_threshold,
            prune_windows=self.config.prune_windows,
            stream_max_entries=self.config.stream_max_entries,
            stream_min_retention_ms=self.config.patterns.horizon_ms,
        )
        self.blocks = BlockStore(self._locks)
        self.reputation = ReputationStore(on_expire=self._on_blacklist_expired)
        self.lockdown = EmergencyLockdown()
        self.detector = detector or PatternDetector(self.config.patterns)
        self.audit = AuditDispatcher(
            audit_sink if audit_sink is not None else LoggingAuditSink(),
            max_queue=self.config.audit_queue_size,
            fallback_size=self.config.audit_fallback_size,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.pattern_workers, thread_name_prefix="admission-patterns"
        )
        self._pending: Set[Future] = set()
        self._pending_lock = threading.Lock()
        # action -> deferred trigger (None while only the current run is pending)
        self._analysis_inflight: Dict[str, Optional[Tuple[str, AdmissionContext, int]]] = {}
        self.analysis_coalesced = 0
        self._stats: Dict[str, ActionStats] = {}
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> "AdmissionEngine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait for background pattern analysis and queued audit events."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            _, not_done = wait(pending, timeout=timeout)
            if not_done:
                return False
        return self.audit.flush(timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self.audit.close()

    # ------------------------------------------------------------------
    # policy catalog
    # ------------------------------------------------------------------

    def register_action(self, action_id: str, config: Optional[Mapping[str, Any]] = None) -> ActionPolicy:
        policy = self.catalog.register(action_id, config)
        with self._stats_lock:
            if policy.action_id not in self._stats:
                self._stats[policy.action_id] = ActionStats(self.clock.now_ms())
        logger.debug("Registered admission policy %s", policy)
        return policy

    def register_default_actions(self) -> List[str]:
        for action_id, cfg in DEFAULT_ACTION_POLICIES.items():
            self.register_action(action_id, cfg)
        return list(DEFAULT_ACTION_POLICIES.keys())

    def _stats_for(self, action_id: str) -> Optional[ActionStats]:
        with self._stats_lock:
            return self._stats.get(action_id)

    # ------------------------------------------------------------------
    # admission
    # ------------------------------------------------------------------

    def check_limit(self, action_id: str, identifier: Any = None, context: Any = None) -> Decision:
        """Decide whether `identifier` may perform `action_id` now. Always returns a Decision."""
        ident = _normalize_identifier(identifier)
        try:
            decision = self._check(action_id, ident, AdmissionContext.coerce(context))
        except Exception:
            logger.exception("Admission check failed for action=%r identifier=%r; denying", action_id, ident)
            decision = Decision(
                allowed=False,
                reason=REASON_INTERNAL_ERROR,
                message="Admission temporarily unavailable",
            )
        self._observe(action_id, decision)
        return decision

    def _observe(self, action_id: str, decision: Decision) -> None:
        stats = self._stats_for(action_id)
        if stats is not None:
            stats.record_check(decision.allowed, decision.reason)
        metrics.record_decision(action_id if stats is not None else "_unregistered", decision.reason)

    def _check(self, action_id: str, identifier: str, ctx: AdmissionContext) -> Decision:
        now = self.clock.now_ms()

        state = self.lockdown.state(now)
        if state.active:
            return Decision(
                allowed=False,
                reason=REASON_EMERGENCY_LOCKDOWN,
                message="System is in emergency lockdown",
                retry_after_ms=state.expires_at_ms,
                remaining_ms=(state.expires_at_ms - now) if state.expires_at_ms is not None else None,
            )

        policy = self.catalog.get(action_id)
        if policy is None:
            logger.warning("No admission policy registered for action %r; admitting", action_id)
            return Decision(allowed=True, reason=REASON_NO_POLICY, message="No policy registered for action")

        if self.reputation.is_blacklisted(ctx.ip, now):
            self._emit(
                "rate_limit_blacklist_hit",
                {
                    "component": action_id,
                    "rate_limit_identifier": identifier,
                    "ip_address": ctx.ip,
                    "reason": "IP blacklisted",
                },
                Severity.HIGH,
            )
            return Decision(allowed=False, reason=REASON_BLACKLISTED, message="Access denied from this location")

        if policy.bypass_whitelist and self.reputation.is_whitelisted(ctx.ip):
            return Decision(allowed=True, reason=REASON_WHITELISTED)

        created: Optional[BlockRecord] = None
        with self._locks.lock_for(action_id, identifier):
            block = self.blocks.get_active(action_id, identifier, now)
            if block is not None:
                self._validate_block(block)
            else:
                windowed = self.tracker.windowed_count(action_id, identifier, policy.window_ms, now)
                if windowed < policy.max_attempts:
                    oldest = self.tracker.oldest_in_window(action_id, identifier, policy.window_ms, now)
                    return Decision(
                        allowed=True,
                        reason=REASON_WITHIN_LIMITS,
                        remaining=policy.max_attempts - windowed,
                        reset_time_ms=(oldest if oldest is not None else now) + policy.window_ms,
                        window_ms=policy.window_ms,
                    )
                created = self._create_block(policy, identifier, windowed, now)
                block = created

        if created is None:
            self._emit(
                "rate_limit_block_active",
                {
                    "component": action_id,
                    "rate_limit_identifier": identifier,
                    "rate_limit_block_level": block.level,
                    "rate_limit_block_remaining_ms": block.remaining_ms(now),
                    "original_reason": block.reason,
                },
                Severity.MEDIUM,
            )
            return Decision(
                allowed=False,
                reason=REASON_RATE_LIMITED,
                message=f"Too many attempts. Try again in {-(-block.remaining_ms(now) // 1000)} seconds.",
                retry_after_ms=block.blocked_until_ms,
                block_level=block.level,
                remaining_ms=block.remaining_ms(now),
            )

        duration = created.blocked_until_ms - created.blocked_at_ms
        windowed = self.tracker.windowed_count(action_id, identifier, policy.window_ms, now)
        stats = self._stats_for(action_id)
        if stats is not None:
            stats.record_block()
        metrics.record_block(action_id, created.level)
        self._emit(
            "rate_limit_exceeded",
            {
                "component": action_id,
                "rate_limit_identifier": identifier,
                "rate_limit_attempts": windowed,
                "rate_limit_max_attempts": policy.max_attempts,
                "rate_limit_block_level": created.level,
                "rate_limit_block_duration_ms": duration,
                "ip_address": ctx.ip,
                "user_agent": ctx.user_agent,
                "fingerprint": ctx.fingerprint,
            },
            Severity.HIGH if created.level >= 3 else Severity.MEDIUM,
        )
        if policy.track_globally:
            self._submit_pattern_analysis(action_id, identifier, ctx, now)
        return Decision(
            allowed=False,
            reason=REASON_RATE_LIMITED,
            message=f"Rate limit exceeded. Blocked for {-(-duration // 1000)} seconds.",
            retry_after_ms=created.blocked_until_ms,
            block_level=created.level,
            remaining_ms=duration,
            attempts_used=windowed,
            max_attempts=policy.max_attempts,
        )

    def _create_block(self, policy: ActionPolicy, identifier: str, windowed: int, now: int) -> BlockRecord:
        # caller holds the key lock
        action_id = policy.action_id
        lifetime = self.tracker.lifetime_count(action_id, identifier)
        levels = self.catalog.levels(action_id)
        level = level_for(levels, lifetime, policy.escalation_enabled)
        duration = duration_for(levels, level, policy)
        record = BlockRecord(
            blocked_at_ms=now,
            blocked_until_ms=now + duration,
            level=level,
            reason=f"rate limit exceeded ({windowed}/{policy.max_attempts})",
            attempts_at_block_time=lifetime,
        )
        self.blocks.put(action_id, identifier, record)
        return record

    @staticmethod
    def _validate_block(block: BlockRecord) -> None:
        if block.level < 1 or block.blocked_until_ms < block.blocked_at_ms:
            raise admission_error(ADM_E_INTERNAL, "corrupt block record", http_status=500, level=block.level)

    def record_attempt(
        self,
        action_id: str,
        identifier: Any = None,
        outcome: Any = AttemptOutcome.FAILURE,
        context: Any = None,
    ) -> None:
        """Append an attempt; a success clears the identifier's window and block."""
        policy = self.catalog.get(action_id)
        if policy is None:
            logger.debug("Ignoring attempt for unregistered action %r", action_id)
            return
        ident = _normalize_identifier(identifier)
        try:
            result = AttemptOutcome.coerce(outcome)
        except ValueError:
            logger.warning("Unrecognised attempt outcome %r for action %r; counting as failure", outcome, action_id)
            result = AttemptOutcome.FAILURE
        ctx = AdmissionContext.coerce(context)
        now = self.clock.now_ms()
        record = AttemptRecord(
            timestamp_ms=now,
            outcome=result,
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            fingerprint=ctx.fingerprint,
        )
        with self._locks.lock_for(action_id, ident):
            self.tracker.record(
                action_id, ident, record, window_ms=policy.window_ms, track_globally=policy.track_globally
            )
            if result is AttemptOutcome.SUCCESS:
                self.tracker.clear(action_id, ident)
                self.blocks.clear(action_id, ident)
        stats = self._stats_for(action_id)
        if stats is not None:
            stats.record_attempt()
        metrics.record_attempt(action_id, result.value)

    def check_and_record(
        self,
        action_id: str,
        identifier: Any = None,
        outcome: Any = AttemptOutcome.FAILURE,
        context: Any = None,
    ) -> Decision:
        """Check, and count the attempt only if it was admitted."""
        decision = self.check_limit(action_id, identifier, context)
        if decision.allowed:
            self.record_attempt(action_id, identifier, outcome, context)
        return decision

    def reset(self, action_id: str, identifier: Any) -> bool:
        ident = _normalize_identifier(identifier)
        with self._locks.lock_for(action_id, ident):
            had_window = self.tracker.clear(action_id, ident)
            had_block = self.blocks.clear(action_id, ident)
        return had_window or had_block

    # ------------------------------------------------------------------
    # pattern detection (background)
    # ------------------------------------------------------------------

    def _submit_pattern_analysis(self, action_id: str, identifier: str, ctx: AdmissionContext, now: int) -> None:
        # at most one analysis per action is queued or running; later triggers
        # replace any deferred one and run after it finishes
        trigger = (identifier, ctx, now)
        with self._pending_lock:
            if action_id in self._analysis_inflight:
                self._analysis_inflight[action_id] = trigger
                self.analysis_coalesced += 1
                return
            self._analysis_inflight[action_id] = None
        try:
            fut = self._executor.submit(self._run_pattern_analysis, action_id, trigger)
        except RuntimeError as e:
            # executor already shut down
            with self._pending_lock:
                self._analysis_inflight.pop(action_id, None)
            logger.warning("Pattern analysis skipped for %s: %s", action_id, e)
            return
        with self._pending_lock:
            self._pending.add(fut)
        fut.add_done_callback(self._discard_pending)

    def _discard_pending(self, fut: Future) -> None:
        with self._pending_lock:
            self._pending.discard(fut)

    def _run_pattern_analysis(self, action_id: str, trigger: Optional[Tuple[str, AdmissionContext, int]]) -> None:
        while trigger is not None:
            self._analyze_patterns(action_id, *trigger)
            with self._pending_lock:
                trigger = self._analysis_inflight.get(action_id)
                if trigger is None:
                    del self._analysis_inflight[action_id]
                else:
                    self._analysis_inflight[action_id] = None

    def _analyze_patterns(self, action_id: str, identifier: str, ctx: AdmissionContext, now: int) -> None:
        try:
            stream = self.tracker.recent_stream(action_id, now, self.detector.thresholds.horizon_ms)
            findings = self.detector.analyze(action_id, identifier, ctx.ip, ctx.user_agent, stream)
            for finding in findings:
                metrics.record_pattern(finding.pattern)
                self._emit(finding.event_type, finding.details, finding.severity)
                if finding.blacklist_ip:
                    self.add_to_blacklist(
                        finding.blacklist_ip, finding.pattern, self.detector.thresholds.auto_blacklist_ms
                    )
        except Exception:
            logger.exception("Pattern analysis failed for action %r", action_id)

    # ------------------------------------------------------------------
    # manual blocks
    # ------------------------------------------------------------------

    def manual_block(self, action_id: str, identifier: Any, duration_ms: int, reason: str = "Manual block") -> bool:
        if self.catalog.get(action_id) is None:
            return False
        try:
            duration = int(duration_ms)
        except (TypeError, ValueError):
            return False
        if duration <= 0:
            return False
        ident = _normalize_identifier(identifier)
        now = self.clock.now_ms()
        record = BlockRecord(
            blocked_at_ms=now,
            blocked_until_ms=now + duration,
            level=MANUAL_BLOCK_LEVEL,
            reason=f"Manual: {reason}",
            attempts_at_block_time=0,
            manual=True,
        )
        self.blocks.put(action_id, ident, record)
        self._emit(
            "manual_rate_limit_block",
            {
                "component": action_id,
                "rate_limit_identifier": ident,
                "rate_limit_block_duration_ms": duration,
                "reason": reason,
                "blocked_until": ms_to_iso(record.blocked_until_ms),
            },
            Severity.MEDIUM,
        )
        return True

    def manual_unblock(self, action_id: str, identifier: Any, reason: str = "Manual unblock") -> bool:
        """Lift an active block. Returns False and changes nothing when there is none."""
        if self.catalog.get(action_id) is None:
            return False
        ident = _normalize_identifier(identifier)
        now = self.clock.now_ms()
        with self._locks.lock_for(action_id, ident):
            was_blocked = self.blocks.get_active(action_id, ident, now) is not None
            if was_blocked:
                self.blocks.clear(action_id, ident)
                self.tracker.clear(action_id, ident)
        self._emit(
            "manual_rate_limit_unblock",
            {"component": action_id, "rate_limit_identifier": ident, "reason": reason, "changed": was_blocked},
            Severity.LOW,
        )
        return was_blocked

    def get_blocked_identifiers(self, action_id: str) -> List[BlockInfo]:
        now = self.clock.now_ms()
        infos = [
            BlockInfo(
                identifier=ident,
                blocked_at_ms=rec.blocked_at_ms,
                blocked_until_ms=rec.blocked_until_ms,
                remaining_ms=rec.remaining_ms(now),
                level=rec.level,
                reason=rec.reason,
                total_attempts=rec.attempts_at_block_time,
            )
            for ident, rec in self.blocks.active_for_action(action_id, now)
        ]
        return sorted(infos, key=lambda b: b.blocked_at_ms, reverse=True)

    # ------------------------------------------------------------------
    # reputation lists
    # ------------------------------------------------------------------

    def add_to_blacklist(self, ip: str, reason: str = "manual", duration_ms: int = DAY_MS) -> bool:
        if not ip:
            return False
        entry = self.reputation.add_to_blacklist(ip, reason, duration_ms, self.clock.now_ms())
        self._emit(
            "ip_blacklisted",
            {
                "ip_address": ip,
                "reason": reason,
                "duration_ms": entry.expires_at_ms - entry.added_at_ms,
                "expires_at": ms_to_iso(entry.expires_at_ms),
            },
            Severity.HIGH,
        )
        return True

    def remove_from_blacklist(self, ip: str, reason: str = "") -> bool:
        removed = self.reputation.remove_from_blacklist(ip)
        self._emit("ip_blacklist_removed", {"ip_address": ip, "reason": reason, "changed": removed}, Severity.LOW)
        return removed

    def add_to_whitelist(self, ip: str, reason: str = "") -> bool:
        if not ip:
            return False
        added = self.reputation.add_to_whitelist(ip, self.clock.now_ms(), reason)
        self._emit("ip_whitelisted", {"ip_address": ip, "reason": reason, "changed": added}, Severity.LOW)
        return added

    def remove_from_whitelist(self, ip: str) -> bool:
        removed = self.reputation.remove_from_whitelist(ip)
        self._emit("ip_whitelist_removed", {"ip_address": ip, "changed": removed}, Severity.LOW)
        return removed

    def _on_blacklist_expired(self, entry: ReputationEntry) -> None:
        self._emit("ip_blacklist_expired", {"ip_address": entry.ip, "reason": entry.reason}, Severity.LOW)

    # ------------------------------------------------------------------
    # emergency lockdown
    # ------------------------------------------------------------------

    def activate_lockdown(self, reason: str, duration_ms: int = HOUR_MS) -> LockdownState:
        state = self.lockdown.activate(reason, duration_ms, self.clock.now_ms())
        metrics.set_lockdown_active(True)
        self._emit(
            "emergency_lockdown_activated",
            {
                "threat_type": "emergency_lockdown",
                "reason": reason,
                "duration_ms": state.expires_at_ms - state.activated_at_ms,
                "affected_actions": self.catalog.actions(),
            },
            Severity.CRITICAL,
        )
        logger.warning("Emergency lockdown activated: %s", reason)
        return state

    def deactivate_lockdown(self, reason: str = "") -> bool:
        was_active = self.lockdown.deactivate(self.clock.now_ms())
        metrics.set_lockdown_active(False)
        self._emit("emergency_lockdown_lifted", {"reason": reason, "changed": was_active}, Severity.MEDIUM)
        return was_active

    def is_lockdown_active(self) -> bool:
        active = self.lockdown.is_active(self.clock.now_ms())
        metrics.set_lockdown_active(active)
        return active

    def lockdown_state(self) -> LockdownState:
        return self.lockdown.state(self.clock.now_ms())

    # ------------------------------------------------------------------
    # stats
    # ------------------------------------------------------------------

    def get_stats(self, action_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        now = self.clock.now_ms()
        if action_id is not None:
            policy = self.catalog.get(action_id)
            stats = self._stats_for(action_id)
            if policy is None or stats is None:
                return None
            recent = self.tracker.recent_stream(action_id, now, HOUR_MS)
            return {
                "action": action_id,
                "config": policy.as_dict(),
                "escalation": [lvl.as_dict() for lvl in self.catalog.levels(action_id)],
                "stats": stats.snapshot(
                    extra={
                        "active_blocks": self.blocks.count_active(action_id, now),
                        "recent_attempts": len(recent),
                        "total_identifiers": self.tracker.identifier_count(action_id),
                    }
                ),
            }

        global_stats: Dict[str, Any] = {"total_actions": len(self.catalog)}
        global_stats.update(self.reputation.counts(now))
        global_stats["lockdown"] = self.lockdown.state(now).as_dict()
        global_stats["audit"] = self.audit.snapshot()
        global_stats["pattern_analysis_coalesced"] = self.analysis_coalesced
        return {
            "global": global_stats,
            "actions": {a: self.get_stats(a) for a in self.catalog.actions()},
        }

    # ------------------------------------------------------------------
    # config snapshots
    # ------------------------------------------------------------------

    def export_config(self) -> Dict[str, Any]:
        now = self.clock.now_ms()
        policies = self.catalog.policies()
        return {
            "version": SNAPSHOT_VERSION,
            "exported_at": ms_to_iso(now),
            "policies": {
                a: {k: v for k, v in p.as_dict().items() if k != "action_id"} for a, p in policies.items()
            },
            "escalation": {a: [lvl.as_dict() for lvl in self.catalog.levels(a)] for a in policies},
            "whitelist": [{"ip": e.ip, "reason": e.reason} for e in self.reputation.whitelist_entries()],
            "blacklist": [
                {"ip": e.ip, "reason": e.reason, "expires_at_ms": e.expires_at_ms}
                for e in self.reputation.blacklist_entries(now)
            ],
        }

    def import_config(self, snapshot: Any) -> Dict[str, int]:
        """Restore policies and reputation lists from export_config() output.

        Escalation tables are re-derived from the imported policies rather
        than trusted verbatim. Expired blacklist entries are skipped. Each
        restored list entry is audited like a live list change, followed by
        one summary event.
        """
        if not isinstance(snapshot, Mapping):
            raise admission_error(ADM_E_BAD_SNAPSHOT, "snapshot must be a JSON object")
        ok, msgs = validate_snapshot(dict(snapshot))
        if not ok:
            raise admission_error(
                ADM_E_BAD_SNAPSHOT,
                "snapshot failed schema validation",
                errors=[m.detail for m in msgs if not m.ok],
            )

        now = self.clock.now_ms()
        counts = {"policies": 0, "whitelist": 0, "blacklist": 0, "blacklist_skipped": 0}

        policies = dict(snapshot.get("limiters") or {})
        policies.update(snapshot.get("policies") or {})
        for action_id, cfg in policies.items():
            self.register_action(action_id, cfg)
            counts["policies"] += 1

        whitelist = list(snapshot.get("whitelist") or []) + list(snapshot.get("whitelistedIPs") or [])
        for item in whitelist:
            if isinstance(item, str):
                self.add_to_whitelist(item)
            else:
                self.add_to_whitelist(item["ip"], item.get("reason", ""))
            counts["whitelist"] += 1

        blacklist = list(snapshot.get("blacklist") or []) + list(snapshot.get("blacklistedIPs") or [])
        for item in blacklist:
            if isinstance(item, str):
                ip, reason, expires = item, "imported", None
            else:
                ip, reason, expires = item["ip"], item.get("reason", "imported"), item.get("expires_at_ms")
            if expires is not None and expires <= now:
                counts["blacklist_skipped"] += 1
                continue
            duration = DAY_MS if expires is None else expires - now
            self.add_to_blacklist(ip, reason, duration)
            counts["blacklist"] += 1

        self._emit(
            "rate_limiter_config_imported",
            {
                "component": "admission_engine",
                "data_action": "config_import",
                "imported_at": ms_to_iso(now),
                "original_export_date": snapshot.get("exported_at") or snapshot.get("exportedAt"),
                "counts": dict(counts),
            },
            Severity.MEDIUM,
        )
        return counts

    # ------------------------------------------------------------------
    # memory hygiene
    # ------------------------------------------------------------------

    def sweep(self) -> Dict[str, int]:
        now = self.clock.now_ms()
        windows = {a: p.window_ms for a, p in self.catalog.policies().items()}
        return {
            "windows_removed": self.tracker.sweep(now, windows),
            "blocks_removed": self.blocks.sweep(now),
            "blacklist_removed": self.reputation.sweep(now),
        }

    def _emit(self, event_type: str, details: Dict[str, Any], severity: Severity) -> None:
        self.audit.emit(event_type, details, severity)
