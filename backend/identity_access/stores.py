"""
In-memory SessionStore for development and tests.

Why: Keep sessions opaque to the client. The cookie carries only a random
session id; user context and provider tokens stay server-side. For production,
use the Postgres-backed store in `stores_db.py` (SESSIONS_BACKEND=db).

Expired records are dropped when read and, at most once per
`SWEEP_INTERVAL_SECONDS`, swept in bulk on `create`, so sessions nobody reads
again do not accumulate.
"""
from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional
import secrets
import time


SWEEP_INTERVAL_SECONDS = 60


def _now() -> int:
    return int(time.time())


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    email: str
    expires_at: Optional[int] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class SessionStore:
    def __init__(self, default_ttl_seconds: int = 3600):
        self._data: Dict[str, SessionRecord] = {}
        self._lock = Lock()
        self._next_sweep = 0
        self.default_ttl_seconds = default_ttl_seconds

    def create(
        self,
        *,
        user_id: str,
        email: str,
        ttl_seconds: int | None = None,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> SessionRecord:
        sid = secrets.token_urlsafe(24)
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        now = _now()
        rec = SessionRecord(
            session_id=sid,
            user_id=user_id,
            email=email,
            expires_at=now + ttl,
            access_token=access_token,
            refresh_token=refresh_token,
        )
        with self._lock:
            self._sweep_locked(now)
            self._data[sid] = rec
        return rec

    def _sweep_locked(self, now: int) -> None:
        if now < self._next_sweep:
            return
        self._next_sweep = now + SWEEP_INTERVAL_SECONDS
        expired = [sid for sid, rec in self._data.items() if rec.expires_at and rec.expires_at < now]
        for sid in expired:
            del self._data[sid]

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            rec = self._data.get(session_id)
            if not rec:
                return None
            if rec.expires_at and rec.expires_at < _now():
                self._data.pop(session_id, None)
                return None
            return rec

    def delete(self, session_id: str) -> None:
        with self._lock:
            self._data.pop(session_id, None)
