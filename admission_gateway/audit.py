"""Audit sink boundary.

The engine emits security events and never waits for them. Events go through
a bounded queue drained by a single daemon worker; a slow sink therefore
cannot back-pressure admission decisions, and a failing sink cannot fail
them. Undeliverable events (sink raised, or queue full) are kept in a small
local buffer for later inspection.

Sink contract: ``log_event(event_type, details, severity)``. It may be a
plain function or an ``async def``; it may raise.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Protocol

from . import metrics
from .clock import now_iso

logger = logging.getLogger("admission_gateway.audit")


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    details: Dict[str, Any]
    severity: Severity
    ts_utc: str = field(default_factory=now_iso)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "details": self.details,
            "severity": self.severity.value,
            "ts_utc": self.ts_utc,
        }


class AuditSink(Protocol):
    def log_event(self, event_type: str, details: Dict[str, Any], severity: Severity) -> Any:
        ...


class MemoryAuditSink:
    """Keeps events in memory. Useful for tests and local inspection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[AuditEvent] = []

    def log_event(self, event_type: str, details: Dict[str, Any], severity: Severity) -> None:
        with self._lock:
            self.events.append(AuditEvent(event_type=event_type, details=dict(details), severity=severity))

    def of_type(self, event_type: str) -> List[AuditEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def types(self) -> List[str]:
        with self._lock:
            return [e.event_type for e in self.events]


class LoggingAuditSink:
    """Forwards events to a stdlib logger, mapping severity to log level."""

    _LEVELS = {
        Severity.LOW: logging.INFO,
        Severity.MEDIUM: logging.INFO,
        Severity.HIGH: logging.WARNING,
        Severity.CRITICAL: logging.ERROR,
    }

    def __init__(self, name: str = "admission_gateway.security"):
        self._logger = logging.getLogger(name)

    def log_event(self, event_type: str, details: Dict[str, Any], severity: Severity) -> None:
        self._logger.log(self._LEVELS.get(severity, logging.INFO), "%s severity=%s details=%s",
                         event_type, severity.value, details)


_STOP = object()


class AuditDispatcher:
    """Fire-and-forget delivery of audit events to a sink."""

    def __init__(self, sink: Optional[AuditSink] = None, *, max_queue: int = 10_000, fallback_size: int = 100):
        self.sink = sink
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=max(1, int(max_queue)))
        self._fallback: Deque[AuditEvent] = deque(maxlen=max(1, int(fallback_size)))
        self._fallback_lock = threading.Lock()
        self._start_lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._closed = False
        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    def _ensure_worker(self) -> None:
        if self._worker is not None:
            return
        with self._start_lock:
            if self._worker is None:
                t = threading.Thread(target=self._run, name="admission-audit", daemon=True)
                t.start()
                self._worker = t

    def emit(self, event_type: str, details: Dict[str, Any], severity: Severity = Severity.MEDIUM) -> None:
        """Queue an event. Never blocks, never raises."""
        if self.sink is None:
            return
        event = AuditEvent(event_type=event_type, details=dict(details), severity=severity)
        if self._closed:
            self._buffer(event)
            return
        try:
            self._ensure_worker()
            self._queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            metrics.record_audit_dropped()
            self._buffer(event)
        except Exception as e:
            logger.warning("Audit dispatch failed for %s: %s", event_type, e)
            self._buffer(event)

    def _buffer(self, event: AuditEvent) -> None:
        with self._fallback_lock:
            self._fallback.append(event)

    def _deliver(self, event: AuditEvent) -> None:
        result = self.sink.log_event(event.event_type, event.details, event.severity)  # type: ignore[union-attr]
        if asyncio.iscoroutine(result):
            asyncio.run(result)

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                try:
                    self._deliver(item)
                    self.delivered += 1
                except Exception as e:
                    self.failed += 1
                    metrics.record_audit_failed()
                    logger.warning("Audit sink failed for %s: %s", item.event_type, e)
                    self._buffer(item)
            finally:
                self._queue.task_done()

    def fallback_events(self) -> List[AuditEvent]:
        with self._fallback_lock:
            return list(self._fallback)

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event has been handled. Returns False on timeout."""
        deadline = time.monotonic() + max(0.0, timeout)
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        if self._worker is None:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Audit queue full at shutdown; worker not stopped cleanly")
            return
        self._worker.join(timeout=timeout)

    def snapshot(self) -> Dict[str, int]:
        with self._fallback_lock:
            buffered = len(self._fallback)
        return {
            "delivered": self.delivered,
            "failed": self.failed,
            "dropped": self.dropped,
            "buffered": buffered,
            "queued": self._queue.qsize(),
        }
