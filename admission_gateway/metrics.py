"""Prometheus metrics for the admission gateway.

Metrics goals:
- low-cardinality labels (registered action ids, reasons, levels; never
  identifiers or IPs)
- visibility into decisions, blocks, detected patterns and audit delivery
"""
from __future__ import annotations

import os
from typing import Callable, Optional

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
DECISIONS_TOTAL = Counter(
    "adm_decisions_total",
    "Total admission decisions",
    ["action", "reason"],
)
ATTEMPTS_TOTAL = Counter(
    "adm_attempts_recorded_total",
    "Total attempts recorded",
    ["action", "outcome"],
)
BLOCKS_TOTAL = Counter(
    "adm_blocks_created_total",
    "Total blocks created",
    ["action", "level"],
)
PATTERNS_TOTAL = Counter(
    "adm_patterns_detected_total",
    "Total abuse patterns detected",
    ["pattern"],
)
AUDIT_FAILED_TOTAL = Counter(
    "adm_audit_sink_failures_total",
    "Audit events the sink failed to accept",
)
AUDIT_DROPPED_TOTAL = Counter(
    "adm_audit_queue_dropped_total",
    "Audit events diverted to the local buffer because the queue was full",
)
LOCKDOWN_ACTIVE = Gauge(
    "adm_lockdown_active",
    "1 if an emergency lockdown is in force",
)


def record_decision(action: str, reason: str) -> None:
    DECISIONS_TOTAL.labels(action=str(action), reason=str(reason)).inc()


def record_attempt(action: str, outcome: str) -> None:
    ATTEMPTS_TOTAL.labels(action=str(action), outcome=str(outcome)).inc()


def record_block(action: str, level: int) -> None:
    BLOCKS_TOTAL.labels(action=str(action), level=str(level)).inc()


def record_pattern(pattern: str) -> None:
    PATTERNS_TOTAL.labels(pattern=str(pattern)).inc()


def record_audit_failed() -> None:
    AUDIT_FAILED_TOTAL.inc()


def record_audit_dropped() -> None:
    AUDIT_DROPPED_TOTAL.inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach a /metrics endpoint to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("ADM_METRICS_ENABLED", True):
        return

    from fastapi import Response

    @app.get("/metrics")
    async def metrics_endpoint(request: Request):
        if authorize is not None:
            try:
                ok = authorize(request)
            except Exception:
                ok = False
            if not ok:
                # avoid leaking existence details
                return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
