"""Admission gateway package.

In-process admission control and abuse detection:

- Per-action sliding-window rate limits with five-level block escalation
- IP blacklist/whitelist with lazy expiry
- Cross-identifier pattern detection (distributed attacks, credential stuffing)
- Global emergency lockdown
- Non-blocking audit dispatch, optionally to a signed tamper-evident log

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from admission_gateway import AdmissionEngine, Decision, create_app
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


__version__ = _read_version_from_pyproject() or "0.3.0"

__all__ = [
    "__version__",
    "AdmissionEngine",
    "AdmissionContext",
    "Decision",
    "AttemptOutcome",
    "ManualClock",
    "MemoryAuditSink",
    "Severity",
    "AdmissionError",
    "create_app",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "AdmissionEngine": ("admission_gateway.engine", "AdmissionEngine"),
    "AdmissionContext": ("admission_gateway.engine", "AdmissionContext"),
    "Decision": ("admission_gateway.engine", "Decision"),
    "AttemptOutcome": ("admission_gateway.tracker", "AttemptOutcome"),
    "ManualClock": ("admission_gateway.clock", "ManualClock"),
    "MemoryAuditSink": ("admission_gateway.audit", "MemoryAuditSink"),
    "Severity": ("admission_gateway.audit", "Severity"),
    "AdmissionError": ("admission_gateway.errors", "AdmissionError"),
    "create_app": ("admission_gateway.server", "create_app"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'admission_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
