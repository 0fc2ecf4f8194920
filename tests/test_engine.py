import logging
import threading
import time

import pytest

from admission_gateway.audit import MemoryAuditSink, Severity
from admission_gateway.blocks import MANUAL_BLOCK_LEVEL
from admission_gateway.clock import ManualClock
from admission_gateway.config import DAY_MS, EngineConfig, PatternThresholds
from admission_gateway.engine import (
    REASON_BLACKLISTED,
    REASON_EMERGENCY_LOCKDOWN,
    REASON_INTERNAL_ERROR,
    REASON_NO_POLICY,
    REASON_RATE_LIMITED,
    REASON_WHITELISTED,
    REASON_WITHIN_LIMITS,
    AdmissionContext,
    AdmissionEngine,
)
from admission_gateway.patterns import PatternDetector
from admission_gateway.policy import MINUTE_MS

T0 = 1_700_000_000_000


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def sink():
    return MemoryAuditSink()


@pytest.fixture
def engine(clock, sink):
    eng = AdmissionEngine(clock=clock, audit_sink=sink, config=EngineConfig())
    eng.register_action("login", {"max_attempts": 3, "window_ms": 60_000, "base_block_ms": 60_000})
    yield eng
    eng.close()


def _fail(engine, n, identifier="alice", context=None, action="login"):
    for _ in range(n):
        engine.record_attempt(action, identifier, "failure", context)


def test_within_limits_reports_remaining_and_reset(engine, clock):
    d = engine.check_limit("login", "alice")
    assert d.allowed is True
    assert d.reason == REASON_WITHIN_LIMITS
    assert d.remaining == 3
    assert d.reset_time_ms == T0 + 60_000

    _fail(engine, 1)
    clock.advance(10_000)
    d = engine.check_limit("login", "alice")
    assert d.remaining == 2
    # reset follows the oldest attempt still in the window
    assert d.reset_time_ms == T0 + 60_000


def test_check_never_counts_attempts(engine):
    for _ in range(10):
        assert engine.check_limit("login", "alice").allowed is True
    assert engine.tracker.lifetime_count("login", "alice") == 0


def test_threshold_creates_level_one_block(engine, sink, clock):
    _fail(engine, 3)
    d = engine.check_limit("login", "alice", {"ip": "192.0.2.1"})
    assert d.allowed is False
    assert d.reason == REASON_RATE_LIMITED
    assert d.block_level == 1
    assert d.remaining_ms == 60_000
    assert d.retry_after_ms == T0 + 60_000
    assert d.attempts_used == 3
    assert d.max_attempts == 3
    assert d.message == "Rate limit exceeded. Blocked for 60 seconds."

    clock.advance(1_500)
    d = engine.check_limit("login", "alice")
    assert d.allowed is False
    assert d.message == "Too many attempts. Try again in 59 seconds."

    engine.drain()
    exceeded = sink.of_type("rate_limit_exceeded")
    assert len(exceeded) == 1
    assert exceeded[0].severity is Severity.MEDIUM
    assert exceeded[0].details["ip_address"] == "192.0.2.1"
    assert len(sink.of_type("rate_limit_block_active")) == 1


def test_block_expires_and_window_slides(engine, clock):
    _fail(engine, 3)
    assert engine.check_limit("login", "alice").allowed is False
    clock.advance(60_000)
    d = engine.check_limit("login", "alice")
    assert d.allowed is True
    assert d.remaining == 3


def test_other_identifiers_and_actions_unaffected(engine):
    engine.register_action("search", {"max_attempts": 1})
    _fail(engine, 3)
    assert engine.check_limit("login", "alice").allowed is False
    assert engine.check_limit("login", "bob").allowed is True
    assert engine.check_limit("search", "alice").allowed is True


def test_success_clears_window_and_block(engine):
    _fail(engine, 3)
    assert engine.check_limit("login", "alice").allowed is False
    engine.record_attempt("login", "alice", "success")
    d = engine.check_limit("login", "alice")
    assert d.allowed is True
    assert d.remaining == 3
    assert engine.tracker.lifetime_count("login", "alice") == 0


def test_escalation_uses_lifetime_count(engine, clock):
    _fail(engine, 3)
    assert engine.check_limit("login", "alice").block_level == 1
    clock.advance(60_000)
    _fail(engine, 3)
    d = engine.check_limit("login", "alice")
    assert d.block_level == 2
    assert d.remaining_ms == 120_000


def test_escalation_disabled_stays_at_base(engine, clock):
    engine.register_action("api_call", {"max_attempts": 2, "window_ms": 1000, "base_block_ms": 500, "escalation_enabled": False})
    for _ in range(5):
        _fail(engine, 2, action="api_call")
        d = engine.check_limit("api_call", "alice")
        assert d.block_level == 1
        assert d.remaining_ms == 500
        clock.advance(1000)


def test_high_level_block_audited_as_high(engine, sink, clock):
    # lifetime 9 reaches level 3 (trigger 3 * 3)
    for _ in range(3):
        _fail(engine, 3)
        engine.check_limit("login", "alice")
        clock.advance(DAY_MS)
    engine.drain()
    levels = [e.details["rate_limit_block_level"] for e in sink.of_type("rate_limit_exceeded")]
    severities = [e.severity for e in sink.of_type("rate_limit_exceeded")]
    assert levels == [1, 2, 3]
    assert severities == [Severity.MEDIUM, Severity.MEDIUM, Severity.HIGH]


def test_unregistered_action_is_permissive(engine):
    engine.record_attempt("unknown_action", "alice", "failure")
    d = engine.check_limit("unknown_action", "alice")
    assert d.allowed is True
    assert d.reason == REASON_NO_POLICY
    assert engine.tracker.lifetime_count("unknown_action", "alice") == 0
    assert engine.manual_block("unknown_action", "alice", 1000) is False
    assert engine.get_stats("unknown_action") is None


def test_missing_identifier_is_unknown(engine):
    _fail(engine, 3, identifier=None)
    assert engine.check_limit("login", "").allowed is False
    assert engine.check_limit("login", "   ").allowed is False


def test_blacklist_beats_whitelist_and_success(engine, sink):
    engine.add_to_whitelist("198.51.100.1")
    engine.add_to_blacklist("198.51.100.1", "abuse", 60_000)
    engine.record_attempt("login", "alice", "success", {"ip": "198.51.100.1"})
    d = engine.check_limit("login", "alice", {"ip": "198.51.100.1"})
    assert d.allowed is False
    assert d.reason == REASON_BLACKLISTED
    assert d.message == "Access denied from this location"
    engine.drain()
    assert sink.of_type("rate_limit_blacklist_hit")[0].severity is Severity.HIGH


def test_blacklist_expiry_emits_event(engine, sink, clock):
    engine.add_to_blacklist("198.51.100.2", "abuse", 1_000)
    clock.advance(1_000)
    assert engine.check_limit("login", "alice", {"ip": "198.51.100.2"}).allowed is True
    engine.drain()
    expired = sink.of_type("ip_blacklist_expired")
    assert [e.details["ip_address"] for e in expired] == ["198.51.100.2"]
    assert expired[0].severity is Severity.LOW


def test_whitelist_bypasses_limits(engine):
    engine.add_to_whitelist("203.0.113.5")
    _fail(engine, 10, context={"ip": "203.0.113.5"})
    d = engine.check_limit("login", "alice", {"ip": "203.0.113.5"})
    assert d.allowed is True
    assert d.reason == REASON_WHITELISTED


def test_whitelist_ignored_without_bypass(engine):
    engine.register_action("payment_process", {"max_attempts": 1, "bypass_whitelist": False})
    engine.add_to_whitelist("203.0.113.5")
    _fail(engine, 1, action="payment_process")
    d = engine.check_limit("payment_process", "alice", {"ip": "203.0.113.5"})
    assert d.reason == REASON_RATE_LIMITED


def test_manual_block_and_idempotent_unblock(engine, sink):
    assert engine.manual_block("login", "mallory", 30_000, "chargeback") is True
    d = engine.check_limit("login", "mallory")
    assert d.allowed is False
    assert d.block_level == MANUAL_BLOCK_LEVEL

    blocked = engine.get_blocked_identifiers("login")
    assert [b.identifier for b in blocked] == ["mallory"]
    assert blocked[0].reason == "Manual: chargeback"

    assert engine.manual_unblock("login", "mallory") is True
    assert engine.manual_unblock("login", "mallory") is False
    assert engine.check_limit("login", "mallory").allowed is True

    engine.drain()
    unblocks = sink.of_type("manual_rate_limit_unblock")
    assert [e.details["changed"] for e in unblocks] == [True, False]
    assert len(sink.of_type("manual_rate_limit_block")) == 1


def test_manual_unblock_clears_window(engine):
    _fail(engine, 3)
    engine.check_limit("login", "alice")
    assert engine.manual_unblock("login", "alice") is True
    assert engine.check_limit("login", "alice").remaining == 3


def test_manual_block_rejects_bad_duration(engine):
    assert engine.manual_block("login", "x", 0) is False
    assert engine.manual_block("login", "x", "soon") is False


def test_blocked_identifiers_sorted_newest_first(engine, clock):
    engine.manual_block("login", "first", 60_000)
    clock.advance(10)
    engine.manual_block("login", "second", 60_000)
    assert [b.identifier for b in engine.get_blocked_identifiers("login")] == ["second", "first"]


def test_lockdown_denies_everything_until_expiry(engine, sink, clock):
    engine.add_to_whitelist("203.0.113.5")
    engine.activate_lockdown("incident", 5_000)
    for action in ("login", "never_registered"):
        d = engine.check_limit(action, "alice", {"ip": "203.0.113.5"})
        assert d.allowed is False
        assert d.reason == REASON_EMERGENCY_LOCKDOWN
    assert engine.is_lockdown_active() is True

    clock.advance(5_000)
    assert engine.is_lockdown_active() is False
    assert engine.check_limit("login", "alice").allowed is True
    engine.drain()
    assert sink.of_type("emergency_lockdown_activated")[0].severity is Severity.CRITICAL


def test_lockdown_deactivate(engine, sink):
    engine.activate_lockdown("incident")
    assert engine.deactivate_lockdown("resolved") is True
    assert engine.deactivate_lockdown("again") is False
    assert engine.check_limit("login", "alice").allowed is True
    engine.drain()
    assert len(sink.of_type("emergency_lockdown_lifted")) == 2


def test_internal_error_denies(engine, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("corrupt")

    monkeypatch.setattr(engine.tracker, "windowed_count", boom)
    d = engine.check_limit("login", "alice")
    assert d.allowed is False
    assert d.reason == REASON_INTERNAL_ERROR
    assert engine.get_stats("login")["stats"]["denials_by_reason"] == {REASON_INTERNAL_ERROR: 1}


def test_check_and_record_counts_only_admitted(engine):
    for _ in range(3):
        assert engine.check_and_record("login", "alice", "failure").allowed is True
    d = engine.check_and_record("login", "alice", "failure")
    assert d.allowed is False
    assert engine.tracker.lifetime_count("login", "alice") == 3


def test_unknown_outcome_counts_as_failure(engine):
    engine.record_attempt("login", "alice", "perhaps")
    assert engine.tracker.lifetime_count("login", "alice") == 1


def test_context_coercion():
    ctx = AdmissionContext.coerce({"ip": "1.2.3.4", "userAgent": "ua", "deviceFingerprint": "fp"})
    assert ctx == AdmissionContext(ip="1.2.3.4", user_agent="ua", fingerprint="fp")
    assert AdmissionContext.coerce(None) == AdmissionContext()
    assert AdmissionContext.coerce(ctx) is ctx


def test_decision_as_dict_drops_empty_fields(engine):
    d = engine.check_limit("login", "alice").as_dict()
    assert d["allowed"] is True
    assert "block_level" not in d
    assert d["reset_time"].startswith("2023-")


def test_stats_shapes(engine, clock):
    _fail(engine, 3)
    engine.check_limit("login", "alice")
    engine.add_to_blacklist("1.1.1.1")
    engine.add_to_whitelist("2.2.2.2")

    per_action = engine.get_stats("login")
    assert per_action["config"]["max_attempts"] == 3
    assert per_action["stats"]["active_blocks"] == 1
    assert per_action["stats"]["recent_attempts"] == 3
    assert per_action["stats"]["total_identifiers"] == 1
    assert per_action["stats"]["total_blocks"] == 1
    assert len(per_action["escalation"]) == 5

    overall = engine.get_stats()
    assert overall["global"]["total_actions"] == 1
    assert overall["global"]["blacklisted_ips"] == 1
    assert overall["global"]["whitelisted_ips"] == 1
    assert "login" in overall["actions"]


def test_sweep_reclaims_memory(engine, clock):
    _fail(engine, 3)
    engine.check_limit("login", "alice")
    engine.add_to_blacklist("1.1.1.1", "x", 1000)
    clock.advance(DAY_MS)
    removed = engine.sweep()
    assert removed == {"windows_removed": 1, "blocks_removed": 1, "blacklist_removed": 1}


def test_register_default_actions(clock):
    with AdmissionEngine(clock=clock, config=EngineConfig()) as eng:
        names = eng.register_default_actions()
        assert "login" in names
        assert eng.catalog.get("password_reset").max_attempts == 3


class TestPatternDetection:
    @pytest.fixture
    def engine(self, clock, sink):
        cfg = EngineConfig(
            patterns=PatternThresholds(
                distributed_unique_ips=3,
                distributed_total=5,
                stuffing_unique_identifiers=3,
                stuffing_total=5,
                concentrated_total=1000,
            )
        )
        eng = AdmissionEngine(clock=clock, audit_sink=sink, config=cfg)
        eng.register_action("login", {"max_attempts": 3})
        yield eng
        eng.close()

    def test_credential_stuffing_blacklists_source(self, engine, sink):
        for i in range(5):
            _fail(engine, 1, identifier=f"user{i}", context={"ip": "10.9.9.9", "user_agent": "bot/1.0"})
        ctx = {"ip": "10.9.9.9", "user_agent": "bot/1.0"}
        _fail(engine, 3, identifier="victim", context=ctx)

        assert engine.check_limit("login", "victim", ctx).allowed is False
        assert engine.drain() is True

        assert len(sink.of_type("credential_stuffing_detected")) == 1
        assert engine.reputation.is_blacklisted("10.9.9.9", engine.clock.now_ms())
        assert engine.check_limit("login", "someone_else", {"ip": "10.9.9.9"}).reason == REASON_BLACKLISTED

    def test_distributed_attack_only_flags(self, engine, sink):
        for i in range(6):
            _fail(engine, 1, identifier=f"user{i}", context={"ip": f"10.0.0.{i}"})
        _fail(engine, 3, identifier="victim", context={"ip": "10.0.1.1"})

        engine.check_limit("login", "victim", {"ip": "10.0.1.1"})
        engine.drain()

        assert len(sink.of_type("distributed_attack_detected")) == 1
        assert sink.of_type("ip_blacklisted") == []
        assert engine.reputation.counts(engine.clock.now_ms())["blacklisted_ips"] == 0

    def test_no_analysis_without_block(self, engine, sink):
        for i in range(10):
            _fail(engine, 1, identifier=f"user{i}", context={"ip": f"10.0.0.{i}", "user_agent": "bot"})
        for i in range(10):
            engine.check_limit("login", f"user{i}", {"ip": f"10.0.0.{i}", "user_agent": "bot"})
        engine.drain()
        assert sink.of_type("distributed_attack_detected") == []
        assert sink.of_type("credential_stuffing_detected") == []

    def test_track_globally_false_skips_stream(self, engine, sink):
        engine.register_action("payroll_import", {"max_attempts": 1, "track_globally": False})
        for i in range(10):
            _fail(engine, 1, identifier=f"u{i}", context={"ip": "10.5.5.5", "user_agent": "bot"}, action="payroll_import")
        engine.check_limit("payroll_import", "u0", {"ip": "10.5.5.5", "user_agent": "bot"})
        engine.drain()
        assert engine.tracker.stream_length("payroll_import") == 0
        assert sink.of_type("credential_stuffing_detected") == []


def test_reset_clears_window_and_block(engine):
    _fail(engine, 3)
    engine.check_limit("login", "alice")
    assert engine.reset("login", "alice") is True
    assert engine.reset("login", "alice") is False
    assert engine.check_limit("login", "alice").remaining == 3


class GatedSink:
    def __init__(self):
        self.gate = threading.Event()
        self.events = []

    def log_event(self, event_type, details, severity):
        self.gate.wait(5)
        self.events.append(event_type)


class GatedDetector(PatternDetector):
    def __init__(self):
        super().__init__(PatternThresholds())
        self.gate = threading.Event()
        self.calls = []

    def analyze(self, action_id, identifier, ip, user_agent, stream):
        self.gate.wait(5)
        self.calls.append(identifier)
        return []


def test_concurrent_checks_create_a_single_block(engine, sink):
    _fail(engine, 3)
    barrier = threading.Barrier(32)
    decisions = []
    lock = threading.Lock()

    def worker():
        barrier.wait(5)
        d = engine.check_limit("login", "alice")
        with lock:
            decisions.append(d)

    threads = [threading.Thread(target=worker) for _ in range(32)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert len(decisions) == 32
    assert all(d.allowed is False for d in decisions)
    assert {d.retry_after_ms for d in decisions} == {T0 + 60_000}
    engine.drain()
    assert len(sink.of_type("rate_limit_exceeded")) == 1
    assert len(sink.of_type("rate_limit_block_active")) == 31


def test_blocked_sink_does_not_delay_decisions(clock):
    sink = GatedSink()
    eng = AdmissionEngine(clock=clock, audit_sink=sink, config=EngineConfig())
    try:
        eng.register_action("login", {"max_attempts": 1})
        started = time.monotonic()
        assert eng.manual_block("login", "mallory", 60_000) is True
        eng.record_attempt("login", "alice", "failure")
        assert eng.check_limit("login", "alice").allowed is False
        assert eng.check_limit("login", "mallory").allowed is False
        assert time.monotonic() - started < 1.0
        assert sink.events == []

        sink.gate.set()
        assert eng.drain() is True
        assert "manual_rate_limit_block" in sink.events
        assert "rate_limit_exceeded" in sink.events
    finally:
        sink.gate.set()
        eng.close()


def test_pattern_analysis_coalesces_per_action(clock):
    detector = GatedDetector()
    eng = AdmissionEngine(clock=clock, audit_sink=MemoryAuditSink(), config=EngineConfig(), detector=detector)
    try:
        eng.register_action("login", {"max_attempts": 1})
        for i in range(50):
            eng.record_attempt("login", f"user{i}", "failure")
            assert eng.check_limit("login", f"user{i}").allowed is False

        # one run in flight, every later trigger folded into a single rerun
        assert len(eng._pending) == 1
        assert eng.analysis_coalesced == 49

        detector.gate.set()
        assert eng.drain() is True
        assert detector.calls == ["user0", "user49"]
        assert eng.get_stats()["global"]["pattern_analysis_coalesced"] == 49
    finally:
        detector.gate.set()
        eng.close()


def test_default_sink_logs_events(clock, caplog):
    caplog.set_level(logging.INFO, logger="admission_gateway.security")
    with AdmissionEngine(clock=clock, config=EngineConfig()) as eng:
        eng.register_action("login")
        eng.manual_block("login", "mallory", 60_000, "chargeback")
        assert eng.drain() is True
    assert "manual_rate_limit_block" in caplog.text


class TestDefaultLoginPolicy:
    @pytest.fixture
    def engine(self, clock, sink):
        eng = AdmissionEngine(clock=clock, audit_sink=sink, config=EngineConfig())
        eng.register_default_actions()
        yield eng
        eng.close()

    def test_sixth_check_after_five_failures_is_blocked(self, engine):
        _fail(engine, 5)
        d = engine.check_limit("login", "alice")
        assert d.allowed is False
        assert d.block_level == 1
        assert d.remaining_ms == 15 * MINUTE_MS

    def test_ten_lifetime_attempts_escalate_to_level_two(self, engine, clock):
        _fail(engine, 5)
        assert engine.check_limit("login", "alice").block_level == 1
        clock.advance(15 * MINUTE_MS)
        _fail(engine, 5)
        d = engine.check_limit("login", "alice")
        assert d.allowed is False
        assert d.block_level == 2
        assert d.remaining_ms == 30 * MINUTE_MS

    def test_concentrated_source_is_blacklisted_for_a_day(self, engine, sink, clock):
        ctx = {"ip": "203.0.113.66"}
        _fail(engine, 201, identifier="victim", context=ctx)
        assert engine.check_limit("login", "victim", ctx).allowed is False
        assert engine.drain() is True

        assert len(sink.of_type("concentrated_attack_detected")) == 1
        entry = engine.reputation.blacklist_entry("203.0.113.66", clock.now_ms())
        assert entry.expires_at_ms == T0 + DAY_MS
        d = engine.check_limit("login", "fresh", ctx)
        assert d.allowed is False
        assert d.reason == REASON_BLACKLISTED
