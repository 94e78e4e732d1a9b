"""
IP block list consulted before any other request processing.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class BlockSource(Enum):
    """What caused an address to be blocked."""
    LOGIN_LOCKOUT = "login_lockout"
    THREAT_DETECTION = "threat_detection"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    ADMIN = "admin"


@dataclass
class BlockEntry:
    ip: str
    reason: str
    blocked_at: datetime
    source: BlockSource

    def to_dict(self) -> Dict[str, str]:
        return {
            "ip": self.ip,
            "reason": self.reason,
            "blockedAt": self.blocked_at.isoformat(),
            "source": self.source.value,
        }


class IPBlockList:
    """Set of blocked addresses with the reason each one was added."""

    def __init__(self):
        self._entries: Dict[str, BlockEntry] = {}

    def add(self, ip: str, reason: str, source: BlockSource, now: datetime) -> bool:
        """Block ``ip``; False when it is already blocked (the first reason is kept)."""
        if ip in self._entries:
            return False
        self._entries[ip] = BlockEntry(ip=ip, reason=reason, blocked_at=now, source=source)
        return True

    def remove(self, ip: str) -> bool:
        return self._entries.pop(ip, None) is not None

    def contains(self, ip: str) -> bool:
        return ip in self._entries

    __contains__ = contains

    def get(self, ip: str) -> Optional[BlockEntry]:
        return self._entries.get(ip)

    def list(self) -> List[str]:
        return sorted(self._entries)

    def entries(self) -> List[BlockEntry]:
        return sorted(self._entries.values(), key=lambda entry: entry.blocked_at)

    def __len__(self) -> int:
        return len(self._entries)
