"""Global IP reputation lists.

Blacklist entries always carry an expiry and are removed lazily the first
time a lookup (or sweep) observes them expired; `on_expire` is called for each
removed entry. Whitelist entries are permanent until removed.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .clock import ms_to_iso
from .config import DAY_MS


class ReputationList(Enum):
    BLACKLIST = "blacklist"
    WHITELIST = "whitelist"


@dataclass(frozen=True)
class ReputationEntry:
    ip: str
    list: ReputationList
    reason: str = ""
    added_at_ms: int = 0
    expires_at_ms: Optional[int] = None

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at_ms is not None and now_ms >= self.expires_at_ms

    def as_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "list": self.list.value,
            "reason": self.reason,
            "added_at_ms": self.added_at_ms,
            "expires_at_ms": self.expires_at_ms,
            "expires_at": ms_to_iso(self.expires_at_ms),
        }


class ReputationStore:
    def __init__(self, on_expire: Optional[Callable[[ReputationEntry], None]] = None):
        self._lock = threading.Lock()
        self._blacklist: Dict[str, ReputationEntry] = {}
        self._whitelist: Dict[str, ReputationEntry] = {}
        self._on_expire = on_expire

    def _expired(self, entries: List[ReputationEntry]) -> None:
        if self._on_expire is None:
            return
        for entry in entries:
            self._on_expire(entry)

    # blacklist

    def add_to_blacklist(self, ip: str, reason: str, duration_ms: int, now_ms: int) -> ReputationEntry:
        if duration_ms is None or int(duration_ms) <= 0:
            duration_ms = DAY_MS
        entry = ReputationEntry(
            ip=ip,
            list=ReputationList.BLACKLIST,
            reason=reason or "",
            added_at_ms=now_ms,
            expires_at_ms=now_ms + int(duration_ms),
        )
        with self._lock:
            self._blacklist[ip] = entry
        return entry

    def remove_from_blacklist(self, ip: str) -> bool:
        with self._lock:
            return self._blacklist.pop(ip, None) is not None

    def blacklist_entry(self, ip: Optional[str], now_ms: int) -> Optional[ReputationEntry]:
        if not ip:
            return None
        expired: List[ReputationEntry] = []
        with self._lock:
            entry = self._blacklist.get(ip)
            if entry is not None and entry.is_expired(now_ms):
                del self._blacklist[ip]
                expired.append(entry)
                entry = None
        self._expired(expired)
        return entry

    def is_blacklisted(self, ip: Optional[str], now_ms: int) -> bool:
        return self.blacklist_entry(ip, now_ms) is not None

    def blacklist_entries(self, now_ms: int) -> List[ReputationEntry]:
        with self._lock:
            return [e for e in self._blacklist.values() if not e.is_expired(now_ms)]

    # whitelist

    def add_to_whitelist(self, ip: str, now_ms: int, reason: str = "") -> bool:
        with self._lock:
            existed = ip in self._whitelist
            self._whitelist[ip] = ReputationEntry(
                ip=ip, list=ReputationList.WHITELIST, reason=reason or "", added_at_ms=now_ms
            )
            return not existed

    def remove_from_whitelist(self, ip: str) -> bool:
        with self._lock:
            return self._whitelist.pop(ip, None) is not None

    def is_whitelisted(self, ip: Optional[str]) -> bool:
        if not ip:
            return False
        with self._lock:
            return ip in self._whitelist

    def whitelist_entries(self) -> List[ReputationEntry]:
        with self._lock:
            return list(self._whitelist.values())

    def sweep(self, now_ms: int) -> int:
        with self._lock:
            expired = [e for e in self._blacklist.values() if e.is_expired(now_ms)]
            for entry in expired:
                del self._blacklist[entry.ip]
        self._expired(expired)
        return len(expired)

    def counts(self, now_ms: int) -> Dict[str, int]:
        return {
            "blacklisted_ips": len(self.blacklist_entries(now_ms)),
            "whitelisted_ips": len(self.whitelist_entries()),
        }
