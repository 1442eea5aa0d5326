"""
Authorization gate: declarative predicates checked before protected operations.

Why:
    Identity is resolved once per request; the gate then tests a conjunctive
    chain of predicates against current state. Every check reads the profile
    and membership stores afresh, nothing is cached between calls.

Errors:
    - Anonymous caller -> AuthenticationError (regardless of predicates).
    - Known caller failing a predicate -> ForbiddenError with that predicate's
      denial code. The first failing predicate wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from .domain import Caller, Identity, Role, is_anonymous
from .errors import AuthenticationError, ForbiddenError
from .profiles import ProfileStoreProtocol

logger = logging.getLogger("campus.identity_access.gate")


class MembershipReader(Protocol):
    def is_member(self, group_id: str, user_id: str) -> bool:
        ...


@dataclass(frozen=True)
class Predicate:
    name: str
    test: Callable[["AuthorizationGate", Identity], bool]
    denial_code: str = "forbidden"


def _always(gate: "AuthorizationGate", ident: Identity) -> bool:
    return True


is_authenticated = Predicate("is_authenticated", _always)

is_full_session = Predicate(
    "is_full_session",
    lambda gate, ident: ident.is_full_session,
    denial_code="full_session_required",
)


def has_role(role: Role) -> Predicate:
    role = Role(role)
    return Predicate(
        f"has_role:{role.value}",
        lambda gate, ident: gate.role_of(ident) is role,
        denial_code="admin_required" if role is Role.ADMIN else "role_required",
    )


def is_member(group_id: str) -> Predicate:
    return Predicate(
        "is_member",
        lambda gate, ident: gate.memberships.is_member(group_id, ident.user_id),
        denial_code="not_a_member",
    )


class AuthorizationGate:
    def __init__(self, profiles: ProfileStoreProtocol, memberships: MembershipReader) -> None:
        self.profiles = profiles
        self.memberships = memberships

    def role_of(self, identity: Identity) -> Role:
        return self.profiles.get_role(identity.user_id, identity.email or None)

    def require(self, caller: Caller, *predicates: Predicate) -> Identity:
        """Return the identity when every predicate passes, else raise."""
        if is_anonymous(caller):
            raise AuthenticationError()
        ident: Identity = caller  # type: ignore[assignment]
        for pred in predicates:
            if not pred.test(self, ident):
                logger.info("gate denied predicate=%s user_tail=%s", pred.name, ident.user_id[-6:])
                raise ForbiddenError(pred.denial_code)
        return ident

    def allows(self, caller: Caller, *predicates: Predicate) -> bool:
        try:
            self.require(caller, *predicates)
        except (AuthenticationError, ForbiddenError):
            return False
        return True


__all__ = [
    "AuthorizationGate",
    "Predicate",
    "has_role",
    "is_authenticated",
    "is_full_session",
    "is_member",
]
