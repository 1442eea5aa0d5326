"""
Database-backed SessionStore for production use (Postgres).

Why: In-memory sessions are not durable and do not scale across instances. This
store persists sessions in Postgres while keeping the cookie opaque.

Security:
- Intended to be used with a service connection string; application roles
  must not read `app_sessions` (it holds provider refresh tokens).
- Only the opaque `session_id` is set in the cookie.

Note: This module uses psycopg3. It is imported only when enabled via
`SESSIONS_BACKEND=db`. Tests use the in-memory store or a fake psycopg.
"""
from __future__ import annotations

from typing import Optional
import os
import re
import time

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional dependency in dev
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .stores import SessionRecord

_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}(?:\.[A-Za-z_][A-Za-z0-9_]{0,62})?$")


SWEEP_INTERVAL_SECONDS = 60


def _now() -> int:
    return int(time.time())


class DBSessionStore:
    """Postgres-backed session store.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string. Falls back to SESSION_DATABASE_URL, then
        DATABASE_URL.
    table:
        Fully qualified table name. Defaults to `public.app_sessions`.
    """

    def __init__(self, dsn: str | None = None, table: str = "public.app_sessions", default_ttl_seconds: int = 3600) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBSessionStore")
        self._dsn = dsn or os.getenv("SESSION_DATABASE_URL") or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBSessionStore")
        # Table name is interpolated into SQL; validate it up front.
        if not _TABLE_RE.match(table or ""):
            raise ValueError("Invalid table name")
        self._table = table
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
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        now = _now()
        expires_at = now + ttl
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                if now >= self._next_sweep:
                    # Rows nobody reads again would otherwise stay forever.
                    self._next_sweep = now + SWEEP_INTERVAL_SECONDS
                    cur.execute(f"delete from {self._table} where expires_at <= to_timestamp(%s)", (now,))
                cur.execute(
                    f"insert into {self._table} (session_id, user_id, email, access_token, refresh_token, expires_at) "
                    f"values (gen_random_uuid()::text, %s, %s, %s, %s, to_timestamp(%s)) returning session_id",
                    (user_id, email, access_token, refresh_token, expires_at),
                )
                row = cur.fetchone()
        sid = str(row[0]) if row else ""
        return SessionRecord(
            session_id=sid,
            user_id=user_id,
            email=email,
            expires_at=expires_at,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select session_id, user_id, email, access_token, refresh_token, "
                    f"extract(epoch from expires_at)::bigint "
                    f"from {self._table} where session_id = %s and expires_at > now()",
                    (session_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return SessionRecord(
                    session_id=row[0],
                    user_id=row[1] or "",
                    email=row[2] or "",
                    access_token=row[3],
                    refresh_token=row[4],
                    expires_at=int(row[5]) if row[5] is not None else None,
                )

    def delete(self, session_id: str) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            with conn.cursor() as cur:
                cur.execute(f"delete from {self._table} where session_id = %s", (session_id,))
