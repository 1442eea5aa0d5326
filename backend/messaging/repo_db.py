"""
Postgres-backed message log.

Design:
- `append_if_member` is one statement: the insert selects from a membership
  lookup taken `for share`, so a concurrent leave either commits before (no
  row inserted) or waits until the insert commits. No check-then-insert.
- `seq` is a bigserial and serves as the resumable history cursor. A
  bigserial value is drawn at insert time, not at commit, so appends to one
  group are serialised with a transaction-scoped advisory lock keyed by the
  group id. Within a group, seq order is then commit order across every
  process, and a reader at cursor N never misses a later commit below N.
"""
from __future__ import annotations

from typing import List, Optional
import os

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .bus import Message


def _dsn() -> str:
    for dsn in (os.getenv("CAMPUS_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBMessageRepo")


_GROUP_APPEND_LOCK_SQL = "select pg_advisory_xact_lock(hashtext('campus.group_messages:' || %s))"

_RETURNING_SQL = """
    id::text,
    group_id::text,
    sender_id,
    content,
    to_char(created_at at time zone 'utc', 'YYYY-MM-DD"T"HH24:MI:SS.US"+00:00"'),
    seq
"""


def _row_to_message(row) -> Message:
    return Message(
        id=row[0],
        group_id=row[1],
        sender_id=row[2],
        content=row[3],
        created_at=row[4],
        seq=int(row[5]),
    )


class DBMessageRepo:
    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBMessageRepo")
        self._dsn = dsn or _dsn()

    def append_if_member(self, *, group_id: str, sender_id: str, content: str) -> Optional[Message]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(_GROUP_APPEND_LOCK_SQL, (group_id,))
                cur.execute(
                    f"""
                    with m as (
                      select group_id, user_id
                        from public.group_members
                       where group_id::text = %s and user_id = %s
                       for share
                    )
                    insert into public.group_messages (group_id, sender_id, content)
                    select m.group_id, m.user_id, %s from m
                    returning {_RETURNING_SQL}
                    """,
                    (group_id, sender_id, content),
                )
                row = cur.fetchone()
                conn.commit()
        return _row_to_message(row) if row else None

    def list_if_member(
        self, *, group_id: str, caller_id: str, since: Optional[int], limit: Optional[int]
    ) -> Optional[List[Message]]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select 1 from public.group_members where group_id::text = %s and user_id = %s",
                    (group_id, caller_id),
                )
                if cur.fetchone() is None:
                    return None
                cur.execute(
                    f"""
                    select {_RETURNING_SQL}
                      from public.group_messages
                     where group_id::text = %s and seq > %s
                     order by seq
                     limit %s
                    """,
                    (group_id, int(since or 0), limit),
                )
                rows = cur.fetchall() or []
        return [_row_to_message(r) for r in rows]
