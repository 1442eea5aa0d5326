"""
Postgres-backed profile store.

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection.
- `ensure_profile` is an upsert so concurrent first sign-ins create one row.
- Unknown stored role strings degrade to `student` via `Role.parse`.
"""
from __future__ import annotations

from typing import Dict, Optional
import logging
import os

try:
    import psycopg
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .domain import Profile, Role
from .profiles import bootstrap_admin_applies

logger = logging.getLogger("campus.identity_access.profiles")

_TS = "to_char(created_at at time zone 'utc', 'YYYY-MM-DD\"T\"HH24:MI:SS\"+00:00\"')"


def _dsn() -> str:
    for dsn in (os.getenv("CAMPUS_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBProfileStore")


def _row_to_profile(row) -> Profile:
    return Profile(
        id=row[0],
        email=row[1] or "",
        role=Role.parse(row[2]),
        full_name=row[3],
        created_at=row[4],
    )


class DBProfileStore:
    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBProfileStore")
        self._dsn = dsn or _dsn()

    def get_role(self, user_id: str, email: str | None = None) -> Role:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("select role, email from public.profiles where id = %s", (user_id,))
                row = cur.fetchone()
        stored = Role.parse(row[0]) if row else Role.STUDENT
        known_email = email or (row[1] if row else None)
        if bootstrap_admin_applies(user_id, known_email):
            return Role.ADMIN
        return stored

    def set_role(self, user_id: str, role: Role) -> None:
        role = Role(role)
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    insert into public.profiles (id, email, role)
                    values (%s, '', %s)
                    on conflict (id) do update set role = excluded.role, updated_at = now()
                    """,
                    (user_id, role.value),
                )
                conn.commit()

    def ensure_profile(self, user_id: str, email: str, full_name: str | None = None) -> Profile:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    insert into public.profiles (id, email, role, full_name)
                    values (%s, %s, 'student', %s)
                    on conflict (id) do update
                      set email = case when public.profiles.email = '' then excluded.email
                                       else public.profiles.email end
                    returning id, email, role, full_name, {_TS}
                    """,
                    (user_id, email, full_name),
                )
                row = cur.fetchone()
                conn.commit()
        return _row_to_profile(row)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select id, email, role, full_name, {_TS} from public.profiles where id = %s",
                    (user_id,),
                )
                row = cur.fetchone()
        return _row_to_profile(row) if row else None

    def count_by_role(self) -> Dict[str, int]:
        counts = {r.value: 0 for r in Role}
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("select role, count(*) from public.profiles group by role")
                rows = cur.fetchall() or []
        for role, n in rows:
            counts[Role.parse(role).value] += int(n)
        return counts
