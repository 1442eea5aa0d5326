"""
Postgres-backed admin request repository.

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection.
- "At most one pending request per requester" is a partial unique index
  (`admin_requests_one_pending`); a unique violation on insert means the
  requester already has a pending row.
- Review is a single `update ... where status = 'pending' returning ...`,
  which is the compare-and-swap the workflow relies on.
- The requester's profile role is upserted in the same transaction as the
  request insert or review, so both commit (or roll back) together. A
  resubmit racing a review blocks on the partial unique index until the
  review commits, so its role write always lands last.
"""
from __future__ import annotations

from typing import Dict, List, Optional
import os

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False
    UniqueViolation = None  # type: ignore
else:  # pragma: no cover - import errors handled above
    try:
        from psycopg.errors import UniqueViolation  # type: ignore
    except Exception:  # pragma: no cover - fallback when errors module unavailable
        UniqueViolation = None  # type: ignore

from identity_access.domain import Role

from .workflow import AdminRequest, RequestStatus


def _dsn() -> str:
    for dsn in (os.getenv("CAMPUS_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBAdminRequestRepo")


_COLUMNS_SQL = """
    id::text,
    requester_id,
    reason,
    status,
    to_char(created_at at time zone 'utc', 'YYYY-MM-DD"T"HH24:MI:SS"+00:00"'),
    reviewer_id,
    case
      when reviewed_at is null then null
      else to_char(reviewed_at at time zone 'utc', 'YYYY-MM-DD"T"HH24:MI:SS"+00:00"')
    end
"""


def _row_to_request(row) -> AdminRequest:
    return AdminRequest(
        id=row[0],
        requester_id=row[1],
        reason=row[2],
        status=RequestStatus(row[3]),
        created_at=row[4],
        reviewer_id=row[5],
        reviewed_at=row[6],
    )


def _is_unique_violation(exc: Exception) -> bool:
    sqlstate = getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)
    return bool(UniqueViolation and isinstance(exc, UniqueViolation)) or sqlstate == "23505"


_UPSERT_ROLE_SQL = """
    insert into public.profiles (id, email, role)
    values (%s, '', %s)
    on conflict (id) do update set role = excluded.role, updated_at = now()
"""


class DBAdminRequestRepo:
    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBAdminRequestRepo")
        self._dsn = dsn or _dsn()

    def insert_pending_if_none(self, *, requester_id: str, reason: str, role: Role) -> Optional[AdminRequest]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        f"""
                        insert into public.admin_requests (requester_id, reason, status)
                        values (%s, %s, 'pending')
                        returning {_COLUMNS_SQL}
                        """,
                        (requester_id, reason),
                    )
                    row = cur.fetchone()
                except Exception as exc:
                    if _is_unique_violation(exc):
                        conn.rollback()
                        return None
                    raise
                cur.execute(_UPSERT_ROLE_SQL, (requester_id, Role(role).value))
                conn.commit()
        return _row_to_request(row)

    def review_if_pending(
        self, *, request_id: str, status: RequestStatus, reviewer_id: str, role: Role
    ) -> Optional[AdminRequest]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    update public.admin_requests
                       set status = %s, reviewer_id = %s, reviewed_at = now()
                     where id::text = %s and status = 'pending'
                    returning {_COLUMNS_SQL}
                    """,
                    (RequestStatus(status).value, reviewer_id, request_id),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    return None
                req = _row_to_request(row)
                cur.execute(_UPSERT_ROLE_SQL, (req.requester_id, Role(role).value))
                conn.commit()
        return req

    def get(self, request_id: str) -> Optional[AdminRequest]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select {_COLUMNS_SQL} from public.admin_requests where id::text = %s",
                    (request_id,),
                )
                row = cur.fetchone()
        return _row_to_request(row) if row else None

    def list_all(self) -> List[AdminRequest]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select {_COLUMNS_SQL} from public.admin_requests order by created_at desc, id",
                )
                rows = cur.fetchall() or []
        return [_row_to_request(r) for r in rows]

    def list_for_requester(self, requester_id: str) -> List[AdminRequest]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    select {_COLUMNS_SQL} from public.admin_requests
                     where requester_id = %s
                     order by created_at desc, id
                    """,
                    (requester_id,),
                )
                rows = cur.fetchall() or []
        return [_row_to_request(r) for r in rows]

    def count_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in RequestStatus}
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("select status, count(*) from public.admin_requests group by status")
                rows = cur.fetchall() or []
        for status, n in rows:
            if status in counts:
                counts[status] += int(n)
        return counts
