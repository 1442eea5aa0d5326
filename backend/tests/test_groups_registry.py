"""
Group membership registry: group management and idempotent join/leave.
"""
from __future__ import annotations

import threading

import pytest

from groups.registry import GroupMembershipRegistry
from groups.repo_memory import InMemoryGroupRepo
from identity_access.errors import NotFoundError, ValidationError


@pytest.fixture
def registry():
    return GroupMembershipRegistry(InMemoryGroupRepo())


@pytest.fixture
def group(registry):
    return registry.create_group(name="Robotics", description="Thursdays", created_by="admin-1")


def test_create_group_trims_and_starts_empty(registry):
    g = registry.create_group(name="  Choir  ", description="  ", created_by="admin-1")
    assert g.name == "Choir"
    assert g.description is None
    assert g.member_count == 0
    assert registry.get_group(g.id).name == "Choir"


@pytest.mark.parametrize("name", ["", "   ", None, "n" * 101])
def test_create_group_rejects_invalid_name(registry, name):
    with pytest.raises(ValidationError) as exc:
        registry.create_group(name=name, description=None, created_by="admin-1")  # type: ignore[arg-type]
    assert exc.value.code == "invalid_name"


def test_create_group_rejects_long_description(registry):
    with pytest.raises(ValidationError) as exc:
        registry.create_group(name="ok", description="d" * 501, created_by="admin-1")
    assert exc.value.code == "invalid_description"


def test_double_join_yields_single_membership(registry, group):
    assert registry.join(group.id, "u1") is True
    assert registry.join(group.id, "u1") is False

    members = registry.list_members(group.id)
    assert [m.user_id for m in members] == ["u1"]
    assert registry.get_group(group.id).member_count == 1


def test_concurrent_joins_yield_single_membership(registry, group):
    barrier = threading.Barrier(5)
    results: list[bool] = []

    def run() -> None:
        barrier.wait()
        results.append(registry.join(group.id, "u1"))

    threads = [threading.Thread(target=run) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert len(registry.list_members(group.id)) == 1


def test_leave_is_idempotent(registry, group):
    registry.join(group.id, "u1")
    assert registry.leave(group.id, "u1") is True
    assert registry.leave(group.id, "u1") is False
    assert registry.is_member(group.id, "u1") is False


def test_join_unknown_group_is_not_found(registry):
    with pytest.raises(NotFoundError) as exc:
        registry.join("missing", "u1")
    assert exc.value.code == "group_not_found"
    with pytest.raises(NotFoundError):
        registry.leave("missing", "u1")
    with pytest.raises(NotFoundError):
        registry.list_members("missing")


def test_update_group_changes_only_given_fields(registry, group):
    updated = registry.update_group(group.id, description="Fridays now")
    assert updated.name == "Robotics"
    assert updated.description == "Fridays now"

    renamed = registry.update_group(group.id, name="Robotics II")
    assert renamed.description == "Fridays now"
    with pytest.raises(ValidationError):
        registry.update_group(group.id, name="")
    with pytest.raises(NotFoundError):
        registry.update_group("missing", name="x")


def test_delete_group_cascades_memberships_and_notifies(registry, group):
    registry.join(group.id, "u1")
    deleted: list[str] = []
    registry.on_group_deleted(deleted.append)

    registry.delete_group(group.id)

    assert deleted == [group.id]
    assert registry.is_member(group.id, "u1") is False
    assert registry.list_groups_for_user("u1") == []
    with pytest.raises(NotFoundError):
        registry.delete_group(group.id)


def test_list_groups_for_user_only_returns_joined(registry, group):
    other = registry.create_group(name="Drama", description=None, created_by="admin-1")
    registry.join(other.id, "u1")

    assert [g.id for g in registry.list_groups_for_user("u1")] == [other.id]
    assert {g.id for g in registry.list_groups()} == {group.id, other.id}
