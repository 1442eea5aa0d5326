"""
In-memory message log for dev and tests.

Shares the group repository's lock and membership map, so the membership
guard and the append are a single critical section.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4

from groups.repo_memory import InMemoryGroupRepo

from .bus import Message


class InMemoryMessageRepo:
    def __init__(self, groups: InMemoryGroupRepo) -> None:
        self._groups = groups
        self._logs: Dict[str, List[Message]] = {}
        self._seq = 0

    def append_if_member(self, *, group_id: str, sender_id: str, content: str) -> Optional[Message]:
        with self._groups.lock:
            if sender_id not in self._groups.members.get(group_id, {}):
                return None
            self._seq += 1
            message = Message(
                id=str(uuid4()),
                group_id=group_id,
                sender_id=sender_id,
                content=content,
                created_at=datetime.now(timezone.utc).isoformat(),
                seq=self._seq,
            )
            self._logs.setdefault(group_id, []).append(message)
            return message

    def list_if_member(
        self, *, group_id: str, caller_id: str, since: Optional[int], limit: Optional[int]
    ) -> Optional[List[Message]]:
        with self._groups.lock:
            if caller_id not in self._groups.members.get(group_id, {}):
                return None
            items = self._logs.get(group_id, [])
            if since is not None:
                items = [m for m in items if m.seq > since]
            if limit is not None:
                items = items[:limit]
            return list(items)

    def drop_group(self, group_id: str) -> None:
        with self._groups.lock:
            self._logs.pop(group_id, None)
