"""
In-memory admin request repository for dev and tests.

Every conditional write runs under one lock, which gives the same
compare-and-swap semantics the Postgres adapter gets from
`update ... where status = 'pending'`. The requester's role is written
through `set_role` while that lock is held, so concurrent submits and
reviews see request status and role change together.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from identity_access.domain import Role

from .workflow import AdminRequest, RequestStatus

RoleWriter = Callable[[str, Role], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryAdminRequestRepo:
    def __init__(self, set_role: RoleWriter) -> None:
        self._set_role = set_role
        self._rows: Dict[str, AdminRequest] = {}
        # Insertion order doubles as creation order.
        self._order: List[str] = []
        self._lock = Lock()

    def insert_pending_if_none(self, *, requester_id: str, reason: str, role: Role) -> Optional[AdminRequest]:
        with self._lock:
            for row in self._rows.values():
                if row.requester_id == requester_id and row.status is RequestStatus.PENDING:
                    return None
            req = AdminRequest(
                id=str(uuid4()),
                requester_id=requester_id,
                reason=reason,
                status=RequestStatus.PENDING,
                created_at=_now_iso(),
            )
            # Role first: a failed write leaves no row behind.
            self._set_role(requester_id, role)
            self._rows[req.id] = req
            self._order.append(req.id)
            return replace(req)

    def review_if_pending(
        self, *, request_id: str, status: RequestStatus, reviewer_id: str, role: Role
    ) -> Optional[AdminRequest]:
        with self._lock:
            row = self._rows.get(request_id)
            if row is None or row.status is not RequestStatus.PENDING:
                return None
            self._set_role(row.requester_id, role)
            row.status = RequestStatus(status)
            row.reviewer_id = reviewer_id
            row.reviewed_at = _now_iso()
            return replace(row)

    def get(self, request_id: str) -> Optional[AdminRequest]:
        with self._lock:
            row = self._rows.get(request_id)
            return replace(row) if row else None

    def list_all(self) -> List[AdminRequest]:
        with self._lock:
            return [replace(self._rows[rid]) for rid in reversed(self._order)]

    def list_for_requester(self, requester_id: str) -> List[AdminRequest]:
        with self._lock:
            return [
                replace(self._rows[rid])
                for rid in reversed(self._order)
                if self._rows[rid].requester_id == requester_id
            ]

    def count_by_status(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in RequestStatus}
        with self._lock:
            for row in self._rows.values():
                counts[row.status.value] += 1
        return counts
