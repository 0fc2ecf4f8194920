"""Stable error taxonomy for the admission gateway.

The admission path itself never raises: unregistered actions fall back to a
permissive decision, malformed policies are merged with defaults, audit sink
failures are buffered, and internal faults deny. These codes are used at the
outer surfaces (snapshot import, HTTP adapter) where a caller did something
that cannot be turned into a decision.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for debugging without parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Configuration / snapshots
ADM_E_BAD_SNAPSHOT = "ADM_E_BAD_SNAPSHOT"
ADM_E_UNKNOWN_ACTION = "ADM_E_UNKNOWN_ACTION"
ADM_E_BAD_OUTCOME = "ADM_E_BAD_OUTCOME"

# Admin surface
ADM_E_ADMIN_AUTH_REQUIRED = "ADM_E_ADMIN_AUTH_REQUIRED"
ADM_E_ADMIN_AUTH_INVALID = "ADM_E_ADMIN_AUTH_INVALID"
ADM_E_ADMIN_CONFIG_INVALID = "ADM_E_ADMIN_CONFIG_INVALID"

# Generic
ADM_E_BAD_REQUEST = "ADM_E_BAD_REQUEST"
ADM_E_INTERNAL = "ADM_E_INTERNAL"


@dataclass
class AdmissionError(Exception):
    """Base exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


def admission_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> AdmissionError:
    return AdmissionError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
