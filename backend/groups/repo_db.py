"""
Postgres-backed group and membership repository.

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection.
- Join is `insert ... on conflict (group_id, user_id) do nothing`, so the
  unique constraint absorbs duplicates instead of raising.
- Deleting a group cascades memberships and messages via foreign keys.
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

from .registry import Group, Membership, _UNSET


def _dsn() -> str:
    for dsn in (os.getenv("CAMPUS_DATABASE_URL"), os.getenv("DATABASE_URL")):
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBGroupRepo")


_GROUP_COLUMNS_SQL = """
    g.id::text,
    g.name,
    g.description,
    g.created_by,
    to_char(g.created_at at time zone 'utc', 'YYYY-MM-DD"T"HH24:MI:SS"+00:00"'),
    to_char(g.updated_at at time zone 'utc', 'YYYY-MM-DD"T"HH24:MI:SS"+00:00"'),
    (select count(*) from public.group_members m where m.group_id = g.id)
"""


def _row_to_group(row) -> Group:
    return Group(
        id=row[0],
        name=row[1],
        description=row[2],
        created_by=row[3],
        created_at=row[4],
        updated_at=row[5],
        member_count=int(row[6] or 0),
    )


class DBGroupRepo:
    def __init__(self, dsn: Optional[str] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for DBGroupRepo")
        self._dsn = dsn or _dsn()

    def create_group(self, *, name: str, description: Optional[str], created_by: str) -> Group:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    with g as (
                      insert into public.groups (name, description, created_by)
                      values (%s, %s, %s)
                      returning *
                    )
                    select {_GROUP_COLUMNS_SQL} from g
                    """,
                    (name, description, created_by),
                )
                row = cur.fetchone()
                conn.commit()
        return _row_to_group(row)

    def update_group(self, group_id: str, *, name=_UNSET, description=_UNSET) -> Optional[Group]:
        sets = []
        params: list = []
        if name is not _UNSET:
            sets.append("name = %s")
            params.append(name)
        if description is not _UNSET:
            sets.append("description = %s")
            params.append(description)
        sets.append("updated_at = now()")
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    with g as (
                      update public.groups set {", ".join(sets)}
                       where id::text = %s
                      returning *
                    )
                    select {_GROUP_COLUMNS_SQL} from g
                    """,
                    (*params, group_id),
                )
                row = cur.fetchone()
                conn.commit()
        return _row_to_group(row) if row else None

    def delete_group(self, group_id: str) -> bool:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("delete from public.groups where id::text = %s returning id", (group_id,))
                row = cur.fetchone()
                conn.commit()
        return row is not None

    def get_group(self, group_id: str) -> Optional[Group]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"select {_GROUP_COLUMNS_SQL} from public.groups g where g.id::text = %s",
                    (group_id,),
                )
                row = cur.fetchone()
        return _row_to_group(row) if row else None

    def list_groups(self) -> List[Group]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {_GROUP_COLUMNS_SQL} from public.groups g order by g.created_at, g.id")
                rows = cur.fetchall() or []
        return [_row_to_group(r) for r in rows]

    def list_groups_for_user(self, user_id: str) -> List[Group]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    select {_GROUP_COLUMNS_SQL}
                      from public.groups g
                      join public.group_members gm on gm.group_id = g.id
                     where gm.user_id = %s
                     order by g.created_at, g.id
                    """,
                    (user_id,),
                )
                rows = cur.fetchall() or []
        return [_row_to_group(r) for r in rows]

    def add_membership(self, group_id: str, user_id: str) -> Optional[bool]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                # Lock the group row so a concurrent delete cannot interleave.
                cur.execute("select id from public.groups where id::text = %s for share", (group_id,))
                if cur.fetchone() is None:
                    return None
                cur.execute(
                    """
                    insert into public.group_members (group_id, user_id)
                    values (%s::uuid, %s)
                    on conflict (group_id, user_id) do nothing
                    returning user_id
                    """,
                    (group_id, user_id),
                )
                created = cur.fetchone() is not None
                conn.commit()
        return created

    def remove_membership(self, group_id: str, user_id: str) -> Optional[bool]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("select id from public.groups where id::text = %s", (group_id,))
                if cur.fetchone() is None:
                    return None
                cur.execute(
                    "delete from public.group_members where group_id::text = %s and user_id = %s returning user_id",
                    (group_id, user_id),
                )
                removed = cur.fetchone() is not None
                conn.commit()
        return removed

    def is_member(self, group_id: str, user_id: str) -> bool:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "select 1 from public.group_members where group_id::text = %s and user_id = %s",
                    (group_id, user_id),
                )
                return cur.fetchone() is not None

    def list_members(self, group_id: str) -> List[Membership]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    select group_id::text, user_id,
                           to_char(joined_at at time zone 'utc', 'YYYY-MM-DD"T"HH24:MI:SS"+00:00"')
                      from public.group_members
                     where group_id::text = %s
                     order by joined_at, user_id
                    """,
                    (group_id,),
                )
                rows = cur.fetchall() or []
        return [Membership(group_id=r[0], user_id=r[1], joined_at=r[2]) for r in rows]
