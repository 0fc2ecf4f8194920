"""Admin token checks for the HTTP adapter.

Guards only the admin surface (policy registration, manual blocks, reputation
lists, lockdown, snapshots). If no mapping is configured, admin endpoints are
open, which is only appropriate behind a private network boundary.

Env vars:
  - ADM_ADMIN_TOKENS_JSON: JSON dict mapping token -> operator name
  - ADM_ADMIN_TOKENS_FILE: path to a JSON file with the same mapping
"""

from __future__ import annotations

import hmac
import json
import os
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

ENV_ADMIN_TOKENS_JSON = "ADM_ADMIN_TOKENS_JSON"
ENV_ADMIN_TOKENS_FILE = "ADM_ADMIN_TOKENS_FILE"


@dataclass(frozen=True)
class AdminAuth:
    """Admin token config."""

    token_to_operator: Dict[str, str]
    configured: bool = False
    config_error: Optional[str] = None

    @classmethod
    def load_from_env(cls) -> "AdminAuth":
        """Load the token mapping from env/file.

        If configuration is present but malformed, config_error is set and
        every admin request is rejected.
        """
        mapping: Dict[str, str] = {}
        config_error: Optional[str] = None

        raw_json = os.getenv(ENV_ADMIN_TOKENS_JSON)
        file_path = os.getenv(ENV_ADMIN_TOKENS_FILE)
        configured = bool(raw_json or file_path)

        try:
            if raw_json:
                data = json.loads(raw_json)
            elif file_path:
                with open(file_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                data = {}
            if not isinstance(data, dict):
                raise ValueError("admin token mapping must be a JSON object")
            mapping = {str(k): str(v) for k, v in data.items()}
        except (OSError, ValueError):
            config_error = "ADMIN_TOKEN_CONFIG_INVALID"
            mapping = {}

        return cls(token_to_operator=mapping, configured=configured, config_error=config_error)

    def enabled(self) -> bool:
        return self.configured

    def resolve(self, token: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Return (operator, error). A non-None error means reject."""
        if self.config_error:
            return None, self.config_error
        if not self.enabled():
            return "anonymous", None
        if not token:
            return None, "ADMIN_TOKEN_REQUIRED"
        for known, operator in self.token_to_operator.items():
            if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
                return operator, None
        return None, "ADMIN_TOKEN_INVALID"
