"""
Group membership registry: which users belong to which chat groups.

Why:
    A membership row is the single proof that a user may read or post in a
    group's message log. Join and leave are idempotent so retries and double
    clicks never surface as errors. There is no approval step for groups.

Permissions:
    Creating, editing and deleting groups and managing other users'
    memberships is admin-only. The web adapter applies that through the
    authorization gate; this module only validates input and state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from identity_access.errors import NotFoundError, ValidationError

logger = logging.getLogger("campus.groups")

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500

_UNSET = object()


@dataclass
class Group:
    id: str
    name: str
    description: Optional[str]
    created_by: str
    created_at: str
    updated_at: str
    member_count: int = 0


@dataclass
class Membership:
    group_id: str
    user_id: str
    joined_at: str


class GroupRepoProtocol(Protocol):
    def create_group(self, *, name: str, description: Optional[str], created_by: str) -> Group:
        ...

    def update_group(self, group_id: str, *, name=_UNSET, description=_UNSET) -> Optional[Group]:
        ...

    def delete_group(self, group_id: str) -> bool:
        ...

    def get_group(self, group_id: str) -> Optional[Group]:
        ...

    def list_groups(self) -> List[Group]:
        ...

    def list_groups_for_user(self, user_id: str) -> List[Group]:
        ...

    def add_membership(self, group_id: str, user_id: str) -> Optional[bool]:
        """True when created, False when it already existed, None for unknown group."""
        ...

    def remove_membership(self, group_id: str, user_id: str) -> Optional[bool]:
        """True when removed, False when absent, None for unknown group."""
        ...

    def is_member(self, group_id: str, user_id: str) -> bool:
        ...

    def list_members(self, group_id: str) -> List[Membership]:
        ...


def _tail(value: str | None) -> str:
    return (value or "")[-6:]


def _clean_name(name: object) -> str:
    value = name.strip() if isinstance(name, str) else ""
    if not value or len(value) > MAX_NAME_LENGTH:
        raise ValidationError("invalid_name")
    return value


def _clean_description(description: object) -> Optional[str]:
    if description is None:
        return None
    if not isinstance(description, str):
        raise ValidationError("invalid_description")
    value = description.strip()
    if len(value) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError("invalid_description")
    return value or None


class GroupMembershipRegistry:
    def __init__(self, repo: GroupRepoProtocol) -> None:
        self._repo = repo
        self._delete_listeners: List[Callable[[str], None]] = []

    def on_group_deleted(self, listener: Callable[[str], None]) -> None:
        """Register a callback run after a group is deleted (e.g. closing live streams)."""
        self._delete_listeners.append(listener)

    # --- Membership ------------------------------------------------------------
    def join(self, group_id: str, user_id: str) -> bool:
        """Add the caller to a group. Returns False when already a member."""
        created = self._repo.add_membership(group_id, user_id)
        if created is None:
            raise NotFoundError("group_not_found")
        if created:
            logger.info("group joined gid_tail=%s user_tail=%s", _tail(group_id), _tail(user_id))
        return created

    def leave(self, group_id: str, user_id: str) -> bool:
        """Remove the caller from a group. Returns False when nothing was removed."""
        removed = self._repo.remove_membership(group_id, user_id)
        if removed is None:
            raise NotFoundError("group_not_found")
        if removed:
            logger.info("group left gid_tail=%s user_tail=%s", _tail(group_id), _tail(user_id))
        return removed

    # Management flows share join/leave semantics.
    add_member = join
    remove_member = leave

    def is_member(self, group_id: str, user_id: str) -> bool:
        return self._repo.is_member(group_id, user_id)

    def list_members(self, group_id: str) -> List[Membership]:
        self.get_group(group_id)
        return self._repo.list_members(group_id)

    # --- Groups ----------------------------------------------------------------
    def get_group(self, group_id: str) -> Group:
        group = self._repo.get_group(group_id)
        if group is None:
            raise NotFoundError("group_not_found")
        return group

    def list_groups(self) -> List[Group]:
        return self._repo.list_groups()

    def list_groups_for_user(self, user_id: str) -> List[Group]:
        return self._repo.list_groups_for_user(user_id)

    def create_group(self, *, name: str, description: Optional[str], created_by: str) -> Group:
        group = self._repo.create_group(
            name=_clean_name(name),
            description=_clean_description(description),
            created_by=created_by,
        )
        logger.info("group created gid_tail=%s", _tail(group.id))
        return group

    def update_group(self, group_id: str, *, name=_UNSET, description=_UNSET) -> Group:
        changes = {}
        if name is not _UNSET:
            changes["name"] = _clean_name(name)
        if description is not _UNSET:
            changes["description"] = _clean_description(description)
        if not changes:
            return self.get_group(group_id)
        group = self._repo.update_group(group_id, **changes)
        if group is None:
            raise NotFoundError("group_not_found")
        return group

    def delete_group(self, group_id: str) -> None:
        if not self._repo.delete_group(group_id):
            raise NotFoundError("group_not_found")
        logger.info("group deleted gid_tail=%s", _tail(group_id))
        for listener in self._delete_listeners:
            listener(group_id)


__all__ = [
    "Group",
    "GroupMembershipRegistry",
    "GroupRepoProtocol",
    "MAX_DESCRIPTION_LENGTH",
    "MAX_NAME_LENGTH",
    "Membership",
]
