"""HTTP adapter for the admission engine.

For integrators that cannot embed AdmissionEngine in-process. The decision
endpoints always answer HTTP 200 with the decision body; callers branch on
`allowed`. Admin endpoints require X-Admin-Token once a token mapping is
configured (see auth.py).
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .audit import AuditSink, LoggingAuditSink
from .audit_log import TamperEvidentAuditSink, load_private_key
from .auth import AdminAuth
from .config import HOUR_MS
from .engine import AdmissionEngine
from .errors import (
    ADM_E_ADMIN_AUTH_INVALID,
    ADM_E_ADMIN_AUTH_REQUIRED,
    ADM_E_ADMIN_CONFIG_INVALID,
    ADM_E_BAD_OUTCOME,
    ADM_E_BAD_REQUEST,
    ADM_E_UNKNOWN_ACTION,
    AdmissionError,
    admission_error,
)
from .metrics import instrument_fastapi
from .tracker import AttemptOutcome

logger = logging.getLogger("admission_gateway.server")

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


def _env_flag(name: str, default: bool = False) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


def _sweep_interval() -> float:
    raw = os.getenv("ADM_SWEEP_INTERVAL_SECONDS", "").strip()
    if not raw:
        return DEFAULT_SWEEP_INTERVAL_SECONDS
    try:
        return max(0.0, float(raw))
    except ValueError:
        logger.warning("Ignoring invalid ADM_SWEEP_INTERVAL_SECONDS=%r", raw)
        return DEFAULT_SWEEP_INTERVAL_SECONDS


def build_audit_sink_from_env() -> AuditSink:
    """Tamper-evident file sink when ADM_AUDIT_LOG_PATH is set, else logging."""
    path = os.getenv("ADM_AUDIT_LOG_PATH", "").strip()
    if not path:
        return LoggingAuditSink()
    key = load_private_key(os.getenv("ADM_AUDIT_SIGNING_KEY_HEX", "").strip() or None)
    sink = TamperEvidentAuditSink(path, key)
    if not os.getenv("ADM_AUDIT_SIGNING_KEY_HEX"):
        logger.warning("Audit log %s signed with an ephemeral key; public key %s", path, sink.public_key_hex)
    return sink


def build_engine_from_env() -> AdmissionEngine:
    engine = AdmissionEngine(audit_sink=build_audit_sink_from_env())
    if _env_flag("ADM_REGISTER_DEFAULT_ACTIONS", True):
        engine.register_default_actions()
    return engine


# ---------------------------
# Request Models
# ---------------------------


class CheckRequest(BaseModel):
    action: str
    identifier: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class AttemptRequest(BaseModel):
    action: str
    identifier: Optional[str] = None
    outcome: Any = "failure"
    context: Dict[str, Any] = Field(default_factory=dict)


class ManualBlockRequest(BaseModel):
    duration_ms: int
    reason: str = "Manual block"


class ReasonRequest(BaseModel):
    reason: str = ""


class BlacklistRequest(BaseModel):
    reason: str = "manual"
    duration_ms: int = 24 * HOUR_MS


class LockdownRequest(BaseModel):
    reason: str
    duration_ms: int = HOUR_MS


def _coerce_outcome(value: Any) -> AttemptOutcome:
    try:
        return AttemptOutcome.coerce(value)
    except ValueError:
        raise admission_error(ADM_E_BAD_OUTCOME, "outcome must be 'success' or 'failure'", outcome=repr(value))


def create_app(engine: Optional[AdmissionEngine] = None) -> FastAPI:
    """Create the FastAPI application around `engine` (built from env if None)."""
    from . import __version__ as adm_version

    owns_engine = engine is None
    if engine is None:
        engine = build_engine_from_env()
    admin_auth = AdminAuth.load_from_env()
    if admin_auth.config_error:
        logger.error("Admin token configuration is invalid; admin endpoints will reject all requests")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        interval = _sweep_interval()
        task = None

        async def _sweeper() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    removed = engine.sweep()
                    logger.debug("Sweep removed %s", removed)
                except Exception:
                    logger.exception("Periodic sweep failed")

        if interval > 0:
            task = asyncio.create_task(_sweeper())
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            if owns_engine:
                engine.close()

    app = FastAPI(
        title="Admission Gateway",
        description="Rate limiting, escalation and abuse detection",
        version=adm_version,
        lifespan=lifespan,
    )
    app.state.engine = engine

    @app.exception_handler(AdmissionError)
    async def _admission_error_handler(request: Request, exc: AdmissionError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    def require_admin(x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")) -> str:
        operator, err = admin_auth.resolve(x_admin_token)
        if err == "ADMIN_TOKEN_CONFIG_INVALID":
            raise admission_error(ADM_E_ADMIN_CONFIG_INVALID, "admin token configuration invalid", http_status=500)
        if err == "ADMIN_TOKEN_REQUIRED":
            raise admission_error(ADM_E_ADMIN_AUTH_REQUIRED, "X-Admin-Token required", http_status=401)
        if err:
            raise admission_error(ADM_E_ADMIN_AUTH_INVALID, "invalid admin token", http_status=403)
        return str(operator)

    def _require_action(action: str) -> None:
        if engine.catalog.get(action) is None:
            raise admission_error(ADM_E_UNKNOWN_ACTION, f"no policy registered for {action!r}", http_status=404)

    # ---------------------------
    # Decisions
    # ---------------------------

    @app.post("/v1/check")
    async def check(req: CheckRequest):
        return engine.check_limit(req.action, req.identifier, req.context).as_dict()

    @app.post("/v1/attempts")
    async def record_attempt(req: AttemptRequest):
        outcome = _coerce_outcome(req.outcome)
        engine.record_attempt(req.action, req.identifier, outcome, req.context)
        return {"recorded": req.action in engine.catalog}

    @app.post("/v1/check-and-record")
    async def check_and_record(req: AttemptRequest):
        outcome = _coerce_outcome(req.outcome)
        return engine.check_and_record(req.action, req.identifier, outcome, req.context).as_dict()

    # ---------------------------
    # Admin
    # ---------------------------

    @app.post("/v1/admin/actions/{action}")
    async def register_action(action: str, config: Dict[str, Any], operator: str = Depends(require_admin)):
        policy = engine.register_action(action, config)
        logger.info("Operator %s registered policy for %s", operator, action)
        return {"policy": policy.as_dict(), "escalation": [lvl.as_dict() for lvl in engine.catalog.levels(action)]}

    @app.post("/v1/admin/blocks/{action}/{identifier}")
    async def manual_block(action: str, identifier: str, req: ManualBlockRequest, operator: str = Depends(require_admin)):
        _require_action(action)
        if req.duration_ms <= 0:
            raise admission_error(ADM_E_BAD_REQUEST, "duration_ms must be positive")
        return {"blocked": engine.manual_block(action, identifier, req.duration_ms, req.reason)}

    @app.delete("/v1/admin/blocks/{action}/{identifier}")
    async def manual_unblock(action: str, identifier: str, reason: str = "Manual unblock", operator: str = Depends(require_admin)):
        _require_action(action)
        return {"unblocked": engine.manual_unblock(action, identifier, reason)}

    @app.get("/v1/admin/blocks/{action}")
    async def blocked_identifiers(action: str, operator: str = Depends(require_admin)):
        _require_action(action)
        return {"blocks": [b.as_dict() for b in engine.get_blocked_identifiers(action)]}

    @app.post("/v1/admin/blacklist/{ip}")
    async def blacklist_ip(ip: str, req: BlacklistRequest, operator: str = Depends(require_admin)):
        return {"blacklisted": engine.add_to_blacklist(ip, req.reason, req.duration_ms)}

    @app.delete("/v1/admin/blacklist/{ip}")
    async def unblacklist_ip(ip: str, reason: str = "", operator: str = Depends(require_admin)):
        return {"removed": engine.remove_from_blacklist(ip, reason)}

    @app.post("/v1/admin/whitelist/{ip}")
    async def whitelist_ip(ip: str, req: ReasonRequest, operator: str = Depends(require_admin)):
        return {"added": engine.add_to_whitelist(ip, req.reason)}

    @app.delete("/v1/admin/whitelist/{ip}")
    async def unwhitelist_ip(ip: str, operator: str = Depends(require_admin)):
        return {"removed": engine.remove_from_whitelist(ip)}

    @app.post("/v1/admin/lockdown")
    async def activate_lockdown(req: LockdownRequest, operator: str = Depends(require_admin)):
        logger.warning("Operator %s activating emergency lockdown", operator)
        return engine.activate_lockdown(req.reason, req.duration_ms).as_dict()

    @app.delete("/v1/admin/lockdown")
    async def deactivate_lockdown(reason: str = "", operator: str = Depends(require_admin)):
        return {"lifted": engine.deactivate_lockdown(reason)}

    @app.get("/v1/admin/config")
    async def export_config(operator: str = Depends(require_admin)):
        return engine.export_config()

    @app.put("/v1/admin/config")
    async def import_config(snapshot: Dict[str, Any], operator: str = Depends(require_admin)):
        return {"imported": engine.import_config(snapshot)}

    @app.get("/v1/stats")
    async def stats(action: Optional[str] = None, operator: str = Depends(require_admin)):
        if action is None:
            return engine.get_stats()
        _require_action(action)
        return engine.get_stats(action)

    @app.get("/v1/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": adm_version,
            "actions": len(engine.catalog),
            "lockdown_active": engine.is_lockdown_active(),
        }

    def _authorize_metrics(req: Request) -> bool:
        _, err = admin_auth.resolve(req.headers.get("X-Admin-Token"))
        return err is None

    instrument_fastapi(app, authorize=_authorize_metrics)
    return app


def main():
    """
    Main entry point for admission-gateway.

    Usage:
        admission-gateway                    # Start on default port 8000
        admission-gateway --port 9000        # Start on custom port
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="Admission Gateway - rate limiting and abuse detection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    ADM_ADMIN_TOKENS_JSON         JSON map of admin token -> operator name
    ADM_ADMIN_TOKENS_FILE         Path to a JSON file with the same map
    ADM_REGISTER_DEFAULT_ACTIONS  Register stock policies at startup (default: 1)
    ADM_SWEEP_INTERVAL_SECONDS    Memory sweep period, 0 disables (default: 60)
    ADM_AUDIT_LOG_PATH            Write a signed tamper-evident audit log here
    ADM_AUDIT_SIGNING_KEY_HEX     Ed25519 seed for the audit log (hex)
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--log-level", default="info", help="uvicorn log level (default: info)")
    args = parser.parse_args()

    app = create_app()
    print(f"Starting Admission Gateway on {args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    import sys

    sys.exit(main() or 0)
