"""
Admin request workflow: the reviewed path from `student` to `admin`.

States per requester:
    none (no row, or the latest row is terminal) -> pending -> approved | denied

Why:
    Role elevation must be reviewed by an existing admin and must survive
    concurrent reviewers. The repository performs the state checks as single
    conditional writes (compare-and-swap), so the use case never does a
    read-then-write on request status.

Roles:
    The requester's role is written by the repository in the same atomic
    step as the status change it belongs to (one lock in memory, one
    transaction in Postgres), so request state and role never disagree.
    submit sets `pending_admin`, approve sets `admin`, deny reverts to
    `student`. No other code path changes a role.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol

from identity_access.domain import Role
from identity_access.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from identity_access.profiles import ProfileStoreProtocol
from ops import telemetry

logger = logging.getLogger("campus.elevation")

MAX_REASON_LENGTH = 1000


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.PENDING


class Decision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"

    @classmethod
    def parse(cls, value: object) -> "Decision":
        if isinstance(value, Decision):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            raise ValidationError("invalid_action") from None

    @property
    def outcome(self) -> RequestStatus:
        return RequestStatus.APPROVED if self is Decision.APPROVE else RequestStatus.DENIED

    @property
    def resulting_role(self) -> Role:
        return Role.ADMIN if self is Decision.APPROVE else Role.STUDENT


@dataclass
class AdminRequest:
    id: str
    requester_id: str
    reason: str
    status: RequestStatus
    created_at: str
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[str] = None


class AdminRequestRepoProtocol(Protocol):
    def insert_pending_if_none(self, *, requester_id: str, reason: str, role: Role) -> Optional[AdminRequest]:
        """Insert a pending request and set the requester's role, as one atomic step.

        None when the requester already has a pending request (nothing written).
        """
        ...

    def review_if_pending(
        self, *, request_id: str, status: RequestStatus, reviewer_id: str, role: Role
    ) -> Optional[AdminRequest]:
        """Move a pending request to `status` and set the requester's role, atomically.

        None when the request is no longer pending (role untouched). If the
        role write fails, the status change is rolled back and the error raised.
        """
        ...

    def get(self, request_id: str) -> Optional[AdminRequest]:
        ...

    def list_all(self) -> List[AdminRequest]:
        ...

    def list_for_requester(self, requester_id: str) -> List[AdminRequest]:
        ...

    def count_by_status(self) -> Dict[str, int]:
        ...


def _tail(value: str | None) -> str:
    return (value or "")[-6:]


class AdminRequestWorkflow:
    def __init__(self, repo: AdminRequestRepoProtocol, profiles: ProfileStoreProtocol) -> None:
        self._repo = repo
        self._profiles = profiles

    def submit(self, requester_id: str, reason: str, *, requester_email: str | None = None) -> AdminRequest:
        """Open a pending admin request for the caller.

        Raises:
            ValidationError("invalid_reason"): empty/whitespace or too long reason.
            ConflictError("already_admin"): caller already holds admin role.
            ConflictError("pending_request_exists"): caller has a pending request.
        """
        reason = (reason or "").strip()
        if not reason or len(reason) > MAX_REASON_LENGTH:
            raise ValidationError("invalid_reason")
        if self._profiles.get_role(requester_id, requester_email) is Role.ADMIN:
            raise ConflictError("already_admin")
        req = self._repo.insert_pending_if_none(requester_id=requester_id, reason=reason, role=Role.PENDING_ADMIN)
        if req is None:
            raise ConflictError("pending_request_exists")
        logger.info("admin request submitted rid_tail=%s user_tail=%s", _tail(req.id), _tail(requester_id))
        return req

    def review(
        self,
        request_id: str,
        reviewer_id: str,
        decision: object,
        *,
        reviewer_email: str | None = None,
    ) -> AdminRequest:
        """Approve or deny a pending request exactly once.

        Concurrency:
            The status transition is a conditional write that only succeeds
            while the row is still pending. Of two racing reviewers exactly one
            wins; the other gets ConflictError("already_processed") and leaves
            the requester's role untouched.

        Failure:
            The role write is part of the transition. If it fails, the
            request stays pending and the error propagates.
        """
        if self._profiles.get_role(reviewer_id, reviewer_email) is not Role.ADMIN:
            raise ForbiddenError("admin_required")
        dec = Decision.parse(decision)
        if self._repo.get(request_id) is None:
            raise NotFoundError("request_not_found")
        try:
            updated = self._repo.review_if_pending(
                request_id=request_id,
                status=dec.outcome,
                reviewer_id=reviewer_id,
                role=dec.resulting_role,
            )
        except Exception:
            logger.error("review rolled back rid_tail=%s", _tail(request_id))
            raise
        if updated is None:
            telemetry.increment_counter("admin_request_reviews_total", outcome="conflict")
            raise ConflictError("already_processed")
        telemetry.increment_counter("admin_request_reviews_total", outcome=dec.outcome.value)
        logger.info(
            "admin request reviewed rid_tail=%s decision=%s reviewer_tail=%s",
            _tail(request_id),
            dec.value,
            _tail(reviewer_id),
        )
        return updated

    def list_requests(self, caller_id: str, caller_role: Role) -> List[AdminRequest]:
        """Admins see every request (newest first); everyone else only their own."""
        if Role(caller_role) is Role.ADMIN:
            return self._repo.list_all()
        return self._repo.list_for_requester(caller_id)

    def get_request(self, request_id: str) -> Optional[AdminRequest]:
        return self._repo.get(request_id)

    def count_by_status(self) -> Dict[str, int]:
        return self._repo.count_by_status()


__all__ = [
    "AdminRequest",
    "AdminRequestRepoProtocol",
    "AdminRequestWorkflow",
    "Decision",
    "MAX_REASON_LENGTH",
    "RequestStatus",
]
