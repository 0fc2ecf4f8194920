import json
import threading

import pytest

from admission_gateway.audit import AuditDispatcher, LoggingAuditSink, MemoryAuditSink, Severity
from admission_gateway.audit_log import TamperEvidentAuditSink, load_private_key, public_key_hex, verify_file


class FailingSink:
    def log_event(self, event_type, details, severity):
        raise RuntimeError("sink down")


class AsyncSink:
    def __init__(self):
        self.events = []

    async def log_event(self, event_type, details, severity):
        self.events.append(event_type)


class GatedSink:
    def __init__(self):
        self.gate = threading.Event()
        self.events = []

    def log_event(self, event_type, details, severity):
        self.gate.wait(5)
        self.events.append(event_type)


def test_dispatcher_delivers_in_order():
    sink = MemoryAuditSink()
    d = AuditDispatcher(sink)
    for i in range(5):
        d.emit(f"e{i}", {"i": i}, Severity.LOW)
    assert d.flush(5) is True
    assert sink.types() == [f"e{i}" for i in range(5)]
    assert d.snapshot()["delivered"] == 5
    d.close()


def test_failing_sink_is_buffered_not_raised():
    d = AuditDispatcher(FailingSink(), fallback_size=2)
    for i in range(3):
        d.emit(f"e{i}", {}, Severity.HIGH)
    assert d.flush(5) is True
    assert d.failed == 3
    # bounded buffer keeps the newest events
    assert [e.event_type for e in d.fallback_events()] == ["e1", "e2"]
    d.close()


def test_async_sink_is_awaited():
    sink = AsyncSink()
    d = AuditDispatcher(sink)
    d.emit("hello", {}, Severity.LOW)
    assert d.flush(5) is True
    assert sink.events == ["hello"]
    d.close()


def test_full_queue_diverts_to_fallback():
    sink = GatedSink()
    d = AuditDispatcher(sink, max_queue=1)
    d.emit("first", {}, Severity.LOW)
    # the worker may already hold "first"; fill until something is dropped
    for i in range(5):
        d.emit(f"extra{i}", {}, Severity.LOW)
    assert d.dropped >= 1
    assert d.fallback_events()
    sink.gate.set()
    assert d.flush(5) is True
    d.close()


def test_no_sink_is_a_noop():
    d = AuditDispatcher(None)
    d.emit("ignored", {}, Severity.LOW)
    assert d.flush(1) is True
    assert d.snapshot()["queued"] == 0


def test_emit_after_close_buffers():
    sink = MemoryAuditSink()
    d = AuditDispatcher(sink)
    d.close()
    d.emit("late", {}, Severity.LOW)
    assert [e.event_type for e in d.fallback_events()] == ["late"]


def test_logging_sink_maps_severity(caplog):
    caplog.set_level("INFO", logger="admission_gateway.security")
    LoggingAuditSink().log_event("ip_blacklisted", {"ip_address": "1.2.3.4"}, Severity.HIGH)
    rec = caplog.records[-1]
    assert rec.levelname == "WARNING"
    assert "ip_blacklisted" in rec.getMessage()


class TestTamperEvidentAuditSink:
    def _sink(self, tmp_path):
        key = load_private_key("11" * 32)
        return TamperEvidentAuditSink(str(tmp_path / "audit" / "events.jsonl"), key), public_key_hex(key)

    def test_chain_verifies(self, tmp_path):
        sink, pub = self._sink(tmp_path)
        for i in range(3):
            sink.log_event("ip_blacklisted", {"ip_address": f"10.0.0.{i}"}, Severity.HIGH)
        ok, reason, count = verify_file(sink.path, pub)
        assert (ok, reason, count) == (True, "OK", 3)

    def test_reopen_continues_chain(self, tmp_path):
        sink, pub = self._sink(tmp_path)
        sink.log_event("a", {}, Severity.LOW)
        again = TamperEvidentAuditSink(sink.path, load_private_key("11" * 32))
        again.log_event("b", {}, Severity.LOW)
        assert verify_file(sink.path, pub) == (True, "OK", 2)

    def test_edited_event_is_detected(self, tmp_path):
        sink, pub = self._sink(tmp_path)
        sink.log_event("a", {"reason": "original"}, Severity.LOW)
        sink.log_event("b", {}, Severity.LOW)

        lines = open(sink.path, encoding="utf-8").read().splitlines()
        rec = json.loads(lines[0])
        rec["event"]["details"]["reason"] = "forged"
        lines[0] = json.dumps(rec)
        with open(sink.path, "w", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")

        ok, reason, count = verify_file(sink.path, pub)
        assert ok is False
        assert reason == "EVENT_HASH_MISMATCH"
        assert count == 1

    def test_deleted_record_breaks_chain(self, tmp_path):
        sink, pub = self._sink(tmp_path)
        for name in ("a", "b", "c"):
            sink.log_event(name, {}, Severity.LOW)
        lines = open(sink.path, encoding="utf-8").read().splitlines()
        with open(sink.path, "w", encoding="utf-8") as f:
            f.write("\n".join([lines[0], lines[2]]) + "\n")
        assert verify_file(sink.path, pub) == (False, "CHAIN_BROKEN", 2)

    def test_wrong_key_fails_signature(self, tmp_path):
        sink, _ = self._sink(tmp_path)
        sink.log_event("a", {}, Severity.LOW)
        other = public_key_hex(load_private_key("22" * 32))
        assert verify_file(sink.path, other) == (False, "INVALID_SIGNATURE", 1)

    def test_missing_file_is_empty_ok(self, tmp_path):
        assert verify_file(str(tmp_path / "nope.jsonl"), "00" * 32) == (True, "NO_FILE", 0)

    @pytest.mark.parametrize("bad", ["zz", "abcd"])
    def test_bad_public_key(self, tmp_path, bad):
        sink, _ = self._sink(tmp_path)
        sink.log_event("a", {}, Severity.LOW)
        assert verify_file(sink.path, bad)[1] == "BAD_PUBLIC_KEY"
