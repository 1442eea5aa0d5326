"""
Profile store: one role-tagged profile per user, the single source of truth for roles.

Why:
    Authorization decisions read the role from here on every check. Only the
    admin request workflow writes roles (`set_role`), so there is exactly one
    writer path for elevation and demotion.

Bootstrap admin:
    `CAMPUS_BOOTSTRAP_ADMIN_EMAIL` names a seed account that `get_role` always
    reports as admin, whatever its stored role says. The bypass lives in one
    named helper (`bootstrap_admin_applies`) and every use is logged so it stays
    auditable and removable. Unset means disabled.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional, Protocol

from .domain import Profile, Role

logger = logging.getLogger("campus.identity_access.profiles")


def _tail(value: str | None) -> str:
    return (value or "")[-6:]


def bootstrap_admin_email() -> str:
    return (os.getenv("CAMPUS_BOOTSTRAP_ADMIN_EMAIL") or "").strip().lower()


def bootstrap_admin_applies(user_id: str, email: str | None) -> bool:
    """Return True when the caller is the configured bootstrap admin.

    Logs each positive match with a shortened user id for audit trails.
    """
    seed = bootstrap_admin_email()
    if not seed or not email:
        return False
    if email.strip().lower() != seed:
        return False
    logger.warning("bootstrap admin bypass used user_tail=%s", _tail(user_id))
    return True


class ProfileStoreProtocol(Protocol):
    def get_role(self, user_id: str, email: str | None = None) -> Role:
        ...

    def set_role(self, user_id: str, role: Role) -> None:
        ...

    def ensure_profile(self, user_id: str, email: str, full_name: str | None = None) -> Profile:
        ...

    def get_profile(self, user_id: str) -> Optional[Profile]:
        ...

    def count_by_role(self) -> Dict[str, int]:
        ...


class InMemoryProfileStore:
    """Thread-safe dict-backed profile store for dev and tests."""

    def __init__(self) -> None:
        self._profiles: Dict[str, Profile] = {}
        self._lock = Lock()

    def get_role(self, user_id: str, email: str | None = None) -> Role:
        with self._lock:
            prof = self._profiles.get(user_id)
            stored = prof.role if prof else Role.STUDENT
            known_email = email or (prof.email if prof else None)
        if bootstrap_admin_applies(user_id, known_email):
            return Role.ADMIN
        return stored

    def set_role(self, user_id: str, role: Role) -> None:
        role = Role(role)
        with self._lock:
            prof = self._profiles.get(user_id)
            if prof is None:
                # Requests can precede a recorded sign-in (e.g. bearer-only clients).
                prof = Profile(id=user_id, email="", created_at=datetime.now(timezone.utc).isoformat())
                self._profiles[user_id] = prof
            prof.role = role

    def ensure_profile(self, user_id: str, email: str, full_name: str | None = None) -> Profile:
        with self._lock:
            prof = self._profiles.get(user_id)
            if prof is None:
                prof = Profile(
                    id=user_id,
                    email=email,
                    role=Role.STUDENT,
                    full_name=full_name,
                    created_at=datetime.now(timezone.utc).isoformat(),
                )
                self._profiles[user_id] = prof
                logger.info("profile created user_tail=%s", _tail(user_id))
            elif email and not prof.email:
                prof.email = email
            return Profile(**vars(prof))

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._lock:
            prof = self._profiles.get(user_id)
            return Profile(**vars(prof)) if prof else None

    def count_by_role(self) -> Dict[str, int]:
        counts = {r.value: 0 for r in Role}
        with self._lock:
            for prof in self._profiles.values():
                counts[prof.role.value] += 1
        return counts


__all__ = [
    "InMemoryProfileStore",
    "ProfileStoreProtocol",
    "bootstrap_admin_applies",
    "bootstrap_admin_email",
]
