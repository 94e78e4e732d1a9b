"""
Failed-login counters per IP and active session bookkeeping per user.
"""

from collections import OrderedDict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Deque, Dict, List, Optional, Set


class LoginState(Enum):
    """Lockout state of an IP address."""
    CLEAN = "clean"
    WARMING = "warming"
    BLOCKED = "blocked"


@dataclass
class LoginAttemptRecord:
    """Failed login attempts from one IP address."""
    ip: str
    count: int
    first_attempt: datetime
    last_attempt: datetime


class LoginAttemptTracker:
    """Counts failed logins per IP inside a window anchored at the first failure."""

    def __init__(self, threshold: int = 10, window_seconds: int = 15 * 60):
        self.threshold = threshold
        self.window = timedelta(seconds=window_seconds)
        self._attempts: Dict[str, LoginAttemptRecord] = {}

    def record_failure(self, ip: str, now: datetime) -> LoginAttemptRecord:
        record = self._attempts.get(ip)
        if record is None or now - record.first_attempt >= self.window:
            record = LoginAttemptRecord(ip=ip, count=0, first_attempt=now, last_attempt=now)
            self._attempts[ip] = record
        record.count += 1
        record.last_attempt = now
        return record

    def state(self, ip: str) -> LoginState:
        record = self._attempts.get(ip)
        if record is None:
            return LoginState.CLEAN
        if record.count >= self.threshold:
            return LoginState.BLOCKED
        return LoginState.WARMING

    def get(self, ip: str) -> Optional[LoginAttemptRecord]:
        return self._attempts.get(ip)

    def clear(self, ip: str) -> bool:
        return self._attempts.pop(ip, None) is not None

    def __len__(self) -> int:
        return len(self._attempts)


@dataclass
class SessionRecord:
    """Activity of one tracked session."""
    session_id: str
    user_id: str
    started_at: datetime
    last_activity: datetime

    def to_dict(self) -> Dict[str, str]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "startedAt": self.started_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }


class SessionTracker:
    """
    Active sessions per user with a concurrency cap and idle timeout.

    Evicted session ids are remembered (bounded) so their later activity is
    ignored instead of silently re-creating the session.
    """

    def __init__(
        self,
        max_concurrent: int = 3,
        timeout_seconds: int = 4 * 60 * 60,
        evicted_history: int = 1000,
    ):
        self.max_concurrent = max_concurrent
        self.timeout = timedelta(seconds=timeout_seconds)
        self._sessions: Dict[str, SessionRecord] = {}
        self._by_user: Dict[str, "OrderedDict[str, None]"] = {}
        self._evicted: Deque[str] = deque(maxlen=evicted_history)
        self._evicted_set: Set[str] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    def active_session_count(self, user_id: str) -> int:
        return len(self._by_user.get(str(user_id), ()))

    def sessions_for(self, user_id: str) -> List[str]:
        return list(self._by_user.get(str(user_id), ()))

    def is_evicted(self, session_id: str) -> bool:
        return session_id in self._evicted_set

    def add(self, user_id: str, session_id: str, now: datetime) -> List[str]:
        """Track a session (or refresh it); returns the ids evicted by the cap."""
        user_id = str(user_id)
        existing = self._sessions.get(session_id)
        if existing is not None and existing.user_id == user_id:
            existing.last_activity = now
            return []
        if existing is not None:
            self.remove(session_id)

        self._forget_eviction(session_id)
        self._sessions[session_id] = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            started_at=now,
            last_activity=now,
        )
        user_sessions = self._by_user.setdefault(user_id, OrderedDict())
        user_sessions[session_id] = None

        evicted = []
        while len(user_sessions) > self.max_concurrent:
            oldest, _ = user_sessions.popitem(last=False)
            self._sessions.pop(oldest, None)
            self._remember_eviction(oldest)
            evicted.append(oldest)
        return evicted

    def touch(self, session_id: str, now: datetime) -> bool:
        record = self._sessions.get(session_id)
        if record is None:
            return False
        record.last_activity = now
        return True

    def remove(self, session_id: str) -> Optional[SessionRecord]:
        record = self._sessions.pop(session_id, None)
        if record is None:
            return None
        user_sessions = self._by_user.get(record.user_id)
        if user_sessions is not None:
            user_sessions.pop(session_id, None)
            if not user_sessions:
                del self._by_user[record.user_id]
        return record

    def force_logout_all(self, user_id: str) -> List[str]:
        removed = self.sessions_for(user_id)
        for session_id in removed:
            self.remove(session_id)
        return removed

    def sweep_timeouts(self, now: datetime) -> List[SessionRecord]:
        """Remove and return sessions idle for longer than the timeout."""
        expired = [
            record for record in self._sessions.values()
            if now - record.last_activity > self.timeout
        ]
        for record in expired:
            self.remove(record.session_id)
        return expired

    def _remember_eviction(self, session_id: str):
        if len(self._evicted) == self._evicted.maxlen:
            self._evicted_set.discard(self._evicted[0])
        self._evicted.append(session_id)
        self._evicted_set.add(session_id)

    def _forget_eviction(self, session_id: str):
        if session_id in self._evicted_set:
            self._evicted_set.discard(session_id)
            self._evicted.remove(session_id)
