"""
Identity domain types: roles, profiles and resolved caller identities.

Why:
- Centralize the closed set of roles so authorization checks can never pass on
  an unknown or misspelled role string.
- Keep the "who is calling" value explicit. Every use case receives the
  identity as a parameter; there is no ambient current-user state.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class Role(str, Enum):
    STUDENT = "student"
    PENDING_ADMIN = "pending_admin"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: object) -> "Role":
        """Map a stored value to a Role, defaulting to STUDENT.

        Unknown values degrade to the least privileged role instead of raising,
        so a corrupt row can never grant access.
        """
        if isinstance(value, Role):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.STUDENT


# Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset(r.value for r in Role)


class Confidence(int, Enum):
    """How the caller's identity was recovered. Higher is fresher."""

    RECONSTRUCTED = 1
    BEARER = 2
    SESSION = 3

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass
class Profile:
    id: str
    email: str
    role: Role = Role.STUDENT
    full_name: Optional[str] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: str
    confidence: Confidence
    session_id: Optional[str] = None

    @property
    def is_full_session(self) -> bool:
        return self.confidence is Confidence.SESSION


class Anonymous:
    """Outcome of identity resolution when no strategy matched."""

    _instance: "Anonymous | None" = None

    def __new__(cls) -> "Anonymous":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ANONYMOUS"

    def __bool__(self) -> bool:
        return False


ANONYMOUS = Anonymous()

Caller = Union[Identity, Anonymous]


def is_anonymous(caller: object) -> bool:
    return not isinstance(caller, Identity)


__all__ = [
    "ALLOWED_ROLES",
    "ANONYMOUS",
    "Anonymous",
    "Caller",
    "Confidence",
    "Identity",
    "Profile",
    "Role",
    "is_anonymous",
]
