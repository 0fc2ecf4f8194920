"""Tamper-evident append-only audit sink.

Implements a JSONL log where each record includes:
- prev_hash: SHA256 of previous record (hex)
- event_hash: SHA256 of canonical event JSON (hex)
- entry_hash: SHA256(prev_hash || event_hash || ts) (hex)
- signature_b64: Ed25519 signature over the length-prefixed payload

This makes after-the-fact edits, deletions and reordering detectable.

Note: This does not protect against an attacker who compromises the host and
also controls the signing key. Ship the log and the public key somewhere the
host cannot rewrite.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .audit import Severity
from .clock import now_iso

logger = logging.getLogger("admission_gateway.audit")

LOG_VERSION = "ADM_AUDIT_V1"
GENESIS_HASH = "0" * 64


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _length_prefixed(components: List[str]) -> bytes:
    """Length-prefixed encoding for hash inputs (no delimiter collisions)."""
    out = b""
    for c in components:
        encoded = c.encode("utf-8")
        out += len(encoded).to_bytes(8, byteorder="big") + encoded
    return out


def load_private_key(private_key_hex: Optional[str] = None) -> Ed25519PrivateKey:
    """Load a raw 32-byte Ed25519 seed from hex, or generate an ephemeral key."""
    if not private_key_hex:
        return Ed25519PrivateKey.generate()
    return Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex.strip()))


def public_key_hex(private_key: Ed25519PrivateKey) -> str:
    raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return raw.hex()


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "ts_utc": self.ts_utc,
                "prev_hash": self.prev_hash,
                "event": self.event,
                "event_hash": self.event_hash,
                "entry_hash": self.entry_hash,
                "key_id": self.key_id,
                "signature_b64": self.signature_b64,
            },
            sort_keys=True,
        )


class TamperEvidentAuditSink:
    """Audit sink that appends signed, hash-chained records to a JSONL file."""

    def __init__(self, path: str, private_key: Optional[Ed25519PrivateKey] = None):
        self.path = str(path)
        self._key = private_key or Ed25519PrivateKey.generate()
        self.public_key_hex = public_key_hex(self._key)
        self.key_id = self.public_key_hex[:16]
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            try:
                rec = json.loads(self._read_last_line(p))
                self._last_hash = str(rec.get("entry_hash", GENESIS_HASH))
            except (ValueError, OSError):
                # verify_file reports the corruption; new records restart at genesis
                logger.warning("Audit log %s has an unreadable tail; chaining from genesis", self.path)
                self._last_hash = GENESIS_HASH

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            pos = max(0, end - 8192)
            f.seek(pos)
            lines = f.read(end - pos).splitlines()
            return lines[-1].decode("utf-8") if lines else ""

    def log_event(self, event_type: str, details: Dict[str, Any], severity: Severity) -> AuditLogRecord:
        event = {
            "event_type": event_type,
            "severity": severity.value if isinstance(severity, Severity) else str(severity),
            "details": details,
        }
        return self.append_event(event)

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        ts = ts_utc or now_iso()
        # round-trip so the stored event matches what the verifier re-hashes
        event = json.loads(canonical_json(event))
        event_hash = _sha256_hex(canonical_json(event).encode("utf-8"))
        with self._lock:
            prev = self._last_hash
            entry_hash = _sha256_hex(_length_prefixed([prev, event_hash, ts]))
            payload = _length_prefixed([LOG_VERSION, ts, prev, event_hash, entry_hash])
            rec = AuditLogRecord(
                version=LOG_VERSION,
                ts_utc=ts,
                prev_hash=prev,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.key_id,
                signature_b64=base64.b64encode(self._key.sign(payload)).decode("ascii"),
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
            self._last_hash = entry_hash
        return rec


def verify_file(path: str, public_key_hex: str) -> Tuple[bool, str, int]:
    """Verify an audit log file. Returns (ok, reason, count)."""
    p = Path(path)
    if not p.exists():
        return True, "NO_FILE", 0

    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex.strip()))
    except ValueError:
        return False, "BAD_PUBLIC_KEY", 0

    prev = GENESIS_HASH
    count = 0
    with p.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            count += 1
            try:
                rec = json.loads(line)
            except ValueError:
                return False, "PARSE_ERROR", count
            if not isinstance(rec, dict):
                return False, "PARSE_ERROR", count
            if rec.get("version") != LOG_VERSION:
                return False, f"BAD_VERSION:{rec.get('version')}", count
            ts = str(rec.get("ts_utc"))
            prev_hash = str(rec.get("prev_hash"))
            if prev_hash != prev:
                return False, "CHAIN_BROKEN", count

            event = rec.get("event")
            if not isinstance(event, dict):
                return False, "BAD_EVENT", count
            event_hash = _sha256_hex(canonical_json(event).encode("utf-8"))
            if event_hash != str(rec.get("event_hash")):
                return False, "EVENT_HASH_MISMATCH", count

            entry_hash = _sha256_hex(_length_prefixed([prev_hash, event_hash, ts]))
            if entry_hash != str(rec.get("entry_hash")):
                return False, "ENTRY_HASH_MISMATCH", count

            try:
                sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
            except ValueError:
                return False, "BAD_SIGNATURE_ENCODING", count
            payload = _length_prefixed([LOG_VERSION, ts, prev_hash, event_hash, entry_hash])
            try:
                public_key.verify(sig, payload)
            except InvalidSignature:
                return False, "INVALID_SIGNATURE", count

            prev = entry_hash

    return True, "OK", count
