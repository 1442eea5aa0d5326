"""
Authorization gate predicates and the profile store (including the bootstrap
admin bypass).
"""
from __future__ import annotations

import logging

import pytest

from groups.registry import GroupMembershipRegistry
from groups.repo_memory import InMemoryGroupRepo
from identity_access.domain import ANONYMOUS, Confidence, Identity, Role
from identity_access.errors import AuthenticationError, ForbiddenError
from identity_access.gate import AuthorizationGate, has_role, is_authenticated, is_full_session, is_member
from identity_access.profiles import InMemoryProfileStore


def _ident(user_id: str, email: str = "", confidence: Confidence = Confidence.SESSION) -> Identity:
    return Identity(user_id=user_id, email=email, confidence=confidence)


@pytest.fixture
def profiles():
    return InMemoryProfileStore()


@pytest.fixture
def registry():
    return GroupMembershipRegistry(InMemoryGroupRepo())


@pytest.fixture
def gate(profiles, registry):
    return AuthorizationGate(profiles, registry)


def test_anonymous_is_rejected_before_predicates(gate):
    with pytest.raises(AuthenticationError) as exc:
        gate.require(ANONYMOUS, has_role(Role.ADMIN))
    assert exc.value.code == "unauthenticated"
    assert gate.allows(ANONYMOUS) is False


def test_authenticated_passes_plain_check(gate):
    ident = _ident("u1")
    assert gate.require(ident, is_authenticated) is ident


def test_admin_predicate_reads_role_fresh(gate, profiles):
    ident = _ident("u1")
    with pytest.raises(ForbiddenError) as exc:
        gate.require(ident, has_role(Role.ADMIN))
    assert exc.value.code == "admin_required"

    profiles.set_role("u1", Role.ADMIN)
    assert gate.allows(ident, has_role(Role.ADMIN))

    profiles.set_role("u1", Role.STUDENT)
    assert not gate.allows(ident, has_role(Role.ADMIN))


def test_non_admin_role_predicate_uses_generic_code(gate):
    with pytest.raises(ForbiddenError) as exc:
        gate.require(_ident("u1"), has_role(Role.PENDING_ADMIN))
    assert exc.value.code == "role_required"


def test_membership_predicate(gate, registry):
    group = registry.create_group(name="G", description=None, created_by="a")
    ident = _ident("u1")
    with pytest.raises(ForbiddenError) as exc:
        gate.require(ident, is_authenticated, is_member(group.id))
    assert exc.value.code == "not_a_member"

    registry.join(group.id, "u1")
    assert gate.allows(ident, is_member(group.id))


def test_full_session_predicate_rejects_bearer(gate):
    with pytest.raises(ForbiddenError) as exc:
        gate.require(_ident("u1", confidence=Confidence.BEARER), is_full_session)
    assert exc.value.code == "full_session_required"
    assert gate.allows(_ident("u1"), is_full_session)


def test_first_failing_predicate_wins(gate):
    with pytest.raises(ForbiddenError) as exc:
        gate.require(_ident("u1", confidence=Confidence.BEARER), has_role(Role.ADMIN), is_full_session)
    assert exc.value.code == "admin_required"


def test_unknown_profile_defaults_to_student(profiles):
    assert profiles.get_role("nobody") is Role.STUDENT


def test_ensure_profile_is_idempotent_and_starts_as_student(profiles):
    first = profiles.ensure_profile("u1", "u1@example.org", "Ada")
    profiles.set_role("u1", Role.ADMIN)
    second = profiles.ensure_profile("u1", "other@example.org")

    assert first.role is Role.STUDENT
    assert second.role is Role.ADMIN
    assert second.email == "u1@example.org"
    assert second.full_name == "Ada"


def test_count_by_role_covers_every_role(profiles):
    profiles.ensure_profile("a", "a@x.org")
    profiles.set_role("b", Role.PENDING_ADMIN)
    profiles.set_role("c", Role.ADMIN)
    assert profiles.count_by_role() == {"student": 1, "pending_admin": 1, "admin": 1}


def test_bootstrap_admin_bypass_applies_and_is_logged(profiles, monkeypatch, caplog):
    monkeypatch.setenv("CAMPUS_BOOTSTRAP_ADMIN_EMAIL", "Seed@Example.org")
    profiles.ensure_profile("seed", "seed@example.org")

    with caplog.at_level(logging.WARNING, logger="campus.identity_access.profiles"):
        assert profiles.get_role("seed") is Role.ADMIN
    assert any("bootstrap admin bypass" in r.getMessage() for r in caplog.records)
    # Stored role is untouched.
    assert profiles.get_profile("seed").role is Role.STUDENT
    assert profiles.get_role("someone", "other@example.org") is Role.STUDENT


def test_bootstrap_admin_disabled_when_unset(profiles):
    profiles.ensure_profile("seed", "seed@example.org")
    assert profiles.get_role("seed") is Role.STUDENT


def test_role_parse_degrades_unknown_values():
    assert Role.parse("ADMIN") is Role.ADMIN
    assert Role.parse("superuser") is Role.STUDENT
    assert Role.parse(None) is Role.STUDENT
