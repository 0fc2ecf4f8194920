"""Cross-identifier abuse pattern detection.

Runs only when a block is created, over the triggering action's global
attempt stream within the detection horizon. The three signatures are
independent and may all fire for a single trigger:

- distributed attack: many source IPs and high total volume. Flag only.
- credential stuffing: one user agent probing many identifiers. Blacklists
  the triggering IP.
- concentrated attack: one IP with very high volume. Blacklists that IP.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .audit import Severity
from .config import PatternThresholds
from .tracker import StreamEntry

DISTRIBUTED_ATTACK = "distributed_attack"
CREDENTIAL_STUFFING = "credential_stuffing"
CONCENTRATED_ATTACK = "concentrated_attack"


@dataclass(frozen=True)
class PatternFinding:
    pattern: str
    event_type: str
    severity: Severity
    details: Dict[str, Any] = field(default_factory=dict)
    # IP to blacklist for auto_blacklist_ms, if the pattern mitigates
    blacklist_ip: Optional[str] = None


class PatternDetector:
    def __init__(self, thresholds: Optional[PatternThresholds] = None):
        self.thresholds = thresholds or PatternThresholds()

    def analyze(
        self,
        action_id: str,
        identifier: str,
        ip: Optional[str],
        user_agent: Optional[str],
        stream: Sequence[StreamEntry],
    ) -> List[PatternFinding]:
        """Evaluate all signatures against a pre-filtered stream snapshot."""
        t = self.thresholds
        findings: List[PatternFinding] = []

        if ip:
            unique_ips = {rec.ip for _, rec in stream if rec.ip}
            if len(unique_ips) > t.distributed_unique_ips and len(stream) > t.distributed_total:
                findings.append(
                    PatternFinding(
                        pattern=DISTRIBUTED_ATTACK,
                        event_type="distributed_attack_detected",
                        severity=Severity.CRITICAL,
                        details={
                            "component": action_id,
                            "threat_type": DISTRIBUTED_ATTACK,
                            "attack_pattern": "multiple_ips",
                            "unique_ips": len(unique_ips),
                            "total_attempts": len(stream),
                            "time_window_ms": t.horizon_ms,
                        },
                    )
                )

        if user_agent:
            same_agent = [ident for ident, rec in stream if rec.user_agent == user_agent]
            unique_identifiers = set(same_agent)
            if len(unique_identifiers) > t.stuffing_unique_identifiers and len(same_agent) > t.stuffing_total:
                findings.append(
                    PatternFinding(
                        pattern=CREDENTIAL_STUFFING,
                        event_type="credential_stuffing_detected",
                        severity=Severity.HIGH,
                        details={
                            "component": action_id,
                            "threat_type": CREDENTIAL_STUFFING,
                            "attack_pattern": "same_user_agent_multiple_identifiers",
                            "user_agent": user_agent,
                            "unique_identifiers": len(unique_identifiers),
                            "attempts": len(same_agent),
                            "trigger_identifier": identifier,
                        },
                        blacklist_ip=ip or None,
                    )
                )

        if ip:
            same_ip = sum(1 for _, rec in stream if rec.ip == ip)
            if same_ip > t.concentrated_total:
                findings.append(
                    PatternFinding(
                        pattern=CONCENTRATED_ATTACK,
                        event_type="concentrated_attack_detected",
                        severity=Severity.HIGH,
                        details={
                            "component": action_id,
                            "threat_type": CONCENTRATED_ATTACK,
                            "attack_pattern": "single_ip_high_volume",
                            "ip_address": ip,
                            "attempts": same_ip,
                            "time_window_ms": t.horizon_ms,
                        },
                        blacklist_ip=ip,
                    )
                )

        return findings
