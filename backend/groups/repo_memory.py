"""
In-memory group and membership repository for dev and tests.

The lock and the membership map are shared with the in-memory message
repository so that "is a member" and "append message" happen under the same
lock, mirroring the single guarded statement used in Postgres.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from threading import RLock
from typing import Dict, List, Optional
from uuid import uuid4

from .registry import Group, Membership, _UNSET


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryGroupRepo:
    def __init__(self) -> None:
        self.lock = RLock()
        self.groups: Dict[str, Group] = {}
        # members[group_id] = { user_id: joined_at_iso }
        self.members: Dict[str, Dict[str, str]] = {}

    def _snapshot(self, group: Group) -> Group:
        return replace(group, member_count=len(self.members.get(group.id, {})))

    def create_group(self, *, name: str, description: Optional[str], created_by: str) -> Group:
        now = _now_iso()
        group = Group(
            id=str(uuid4()),
            name=name,
            description=description,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self.lock:
            self.groups[group.id] = group
            self.members[group.id] = {}
            return self._snapshot(group)

    def update_group(self, group_id: str, *, name=_UNSET, description=_UNSET) -> Optional[Group]:
        with self.lock:
            group = self.groups.get(group_id)
            if group is None:
                return None
            if name is not _UNSET:
                group.name = name
            if description is not _UNSET:
                group.description = description
            group.updated_at = _now_iso()
            return self._snapshot(group)

    def delete_group(self, group_id: str) -> bool:
        with self.lock:
            if self.groups.pop(group_id, None) is None:
                return False
            self.members.pop(group_id, None)
            return True

    def get_group(self, group_id: str) -> Optional[Group]:
        with self.lock:
            group = self.groups.get(group_id)
            return self._snapshot(group) if group else None

    def list_groups(self) -> List[Group]:
        with self.lock:
            items = sorted(self.groups.values(), key=lambda g: (g.created_at, g.id))
            return [self._snapshot(g) for g in items]

    def list_groups_for_user(self, user_id: str) -> List[Group]:
        with self.lock:
            items = [g for g in self.groups.values() if user_id in self.members.get(g.id, {})]
            items.sort(key=lambda g: (g.created_at, g.id))
            return [self._snapshot(g) for g in items]

    def add_membership(self, group_id: str, user_id: str) -> Optional[bool]:
        with self.lock:
            if group_id not in self.groups:
                return None
            bucket = self.members.setdefault(group_id, {})
            if user_id in bucket:
                return False
            bucket[user_id] = _now_iso()
            return True

    def remove_membership(self, group_id: str, user_id: str) -> Optional[bool]:
        with self.lock:
            if group_id not in self.groups:
                return None
            return self.members.get(group_id, {}).pop(user_id, None) is not None

    def is_member(self, group_id: str, user_id: str) -> bool:
        with self.lock:
            return user_id in self.members.get(group_id, {})

    def list_members(self, group_id: str) -> List[Membership]:
        with self.lock:
            bucket = self.members.get(group_id, {})
            return [
                Membership(group_id=group_id, user_id=uid, joined_at=joined)
                for uid, joined in sorted(bucket.items(), key=lambda kv: (kv[1], kv[0]))
            ]
