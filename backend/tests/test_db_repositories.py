"""
Postgres repositories against a scripted psycopg stand-in.

These tests pin the SQL shape the concurrency model depends on (guarded
insert, compare-and-swap review, membership-guarded message insert) and the
row mapping. Real database semantics are covered by the migration itself.
"""
from __future__ import annotations

import pytest

import elevation.repo_db as admin_repo_db
import groups.repo_db as group_repo_db
import identity_access.profiles_db as profiles_db
import messaging.repo_db as message_repo_db
from elevation.workflow import RequestStatus
from identity_access.domain import Role
from utils.fake_psycopg import install_scripted_psycopg

TS = "2026-01-01T10:00:00+00:00"


class _UniqueViolation(Exception):
    sqlstate = "23505"


def _request_row(status: str = "pending", reviewer=None, reviewed_at=None):
    return ("req-1", "u-1", "reason", status, TS, reviewer, reviewed_at)


def test_admin_insert_returns_none_on_unique_violation(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, admin_repo_db)
    db.queue(_UniqueViolation("duplicate key"))
    repo = admin_repo_db.DBAdminRequestRepo(dsn="postgresql://fake")

    assert repo.insert_pending_if_none(requester_id="u-1", reason="reason", role=Role.PENDING_ADMIN) is None
    assert db.rollbacks == 1
    assert len(db.executed) == 1 and db.commits == 0


def test_admin_insert_maps_row(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, admin_repo_db)
    db.queue([_request_row()])
    repo = admin_repo_db.DBAdminRequestRepo(dsn="postgresql://fake")

    req = repo.insert_pending_if_none(requester_id="u-1", reason="reason", role=Role.PENDING_ADMIN)
    assert req.id == "req-1" and req.status is RequestStatus.PENDING
    assert db.statements()[0].startswith("insert into public.admin_requests")
    # Role write shares the transaction with the insert.
    assert db.statements()[1].startswith("insert into public.profiles")
    assert db.executed[1][1] == ("u-1", "pending_admin")
    assert db.commits == 1


def test_admin_review_is_conditional_on_pending(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, admin_repo_db)
    db.queue([_request_row("approved", "admin-1", TS)], [], [])
    repo = admin_repo_db.DBAdminRequestRepo(dsn="postgresql://fake")

    won = repo.review_if_pending(
        request_id="req-1", status=RequestStatus.APPROVED, reviewer_id="admin-1", role=Role.ADMIN
    )
    lost = repo.review_if_pending(
        request_id="req-1", status=RequestStatus.DENIED, reviewer_id="admin-2", role=Role.STUDENT
    )

    assert won.status is RequestStatus.APPROVED and won.reviewer_id == "admin-1"
    assert lost is None
    stmt = db.statements()[0]
    assert stmt.startswith("update public.admin_requests")
    assert "status = 'pending'" in stmt and "returning" in stmt
    assert db.executed[0][1] == ("approved", "admin-1", "req-1")
    assert db.statements()[1].startswith("insert into public.profiles")
    assert db.executed[1][1] == ("u-1", "admin")
    # The losing review writes no role and commits nothing.
    assert len(db.executed) == 3
    assert db.commits == 1 and db.rollbacks == 1


def test_admin_count_by_status_fills_missing(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, admin_repo_db)
    db.queue([("pending", 2), ("denied", 1)])
    repo = admin_repo_db.DBAdminRequestRepo(dsn="postgresql://fake")
    assert repo.count_by_status() == {"pending": 2, "approved": 0, "denied": 1}


def test_profile_role_lookup_degrades_unknown_role(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, profiles_db)
    db.queue([("root", "x@example.org")], [])
    store = profiles_db.DBProfileStore(dsn="postgresql://fake")

    assert store.get_role("u-1") is Role.STUDENT
    assert store.get_role("u-missing") is Role.STUDENT


def test_profile_bootstrap_bypass_uses_stored_email(monkeypatch):
    monkeypatch.setenv("CAMPUS_BOOTSTRAP_ADMIN_EMAIL", "seed@example.org")
    db = install_scripted_psycopg(monkeypatch, profiles_db)
    db.queue([("student", "seed@example.org")])
    store = profiles_db.DBProfileStore(dsn="postgresql://fake")
    assert store.get_role("u-seed") is Role.ADMIN


def test_profile_set_role_upserts(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, profiles_db)
    store = profiles_db.DBProfileStore(dsn="postgresql://fake")
    store.set_role("u-1", Role.PENDING_ADMIN)

    stmt = db.statements()[0]
    assert stmt.startswith("insert into public.profiles") and "on conflict (id) do update" in stmt
    assert db.executed[0][1] == ("u-1", "pending_admin")
    assert db.commits == 1


def test_group_join_unknown_group_returns_none(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, group_repo_db)
    db.queue([])
    repo = group_repo_db.DBGroupRepo(dsn="postgresql://fake")
    assert repo.add_membership("g-missing", "u-1") is None
    assert len(db.executed) == 1


def test_group_join_is_idempotent_on_conflict(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, group_repo_db)
    db.queue([("g-1",)], [("u-1",)], [("g-1",)], [])
    repo = group_repo_db.DBGroupRepo(dsn="postgresql://fake")

    assert repo.add_membership("g-1", "u-1") is True
    assert repo.add_membership("g-1", "u-1") is False
    assert "for share" in db.statements()[0]
    assert "on conflict (group_id, user_id) do nothing" in db.statements()[1]


def test_group_row_mapping_includes_member_count(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, group_repo_db)
    db.queue([("g-1", "Chess", None, "admin-1", TS, TS, 3)])
    repo = group_repo_db.DBGroupRepo(dsn="postgresql://fake")
    group = repo.get_group("g-1")
    assert group.name == "Chess" and group.member_count == 3


def test_message_append_is_serialised_and_guarded(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, message_repo_db)
    db.queue([], [("m-1", "g-1", "u-1", "hello", TS, 7)], [], [])
    repo = message_repo_db.DBMessageRepo(dsn="postgresql://fake")

    msg = repo.append_if_member(group_id="g-1", sender_id="u-1", content="hello")
    denied = repo.append_if_member(group_id="g-1", sender_id="outsider", content="hi")

    assert msg.seq == 7 and msg.content == "hello"
    assert denied is None
    lock, stmt = db.statements()[:2]
    # Per-group lock first, so seq is drawn in commit order.
    assert lock.startswith("select pg_advisory_xact_lock(")
    assert db.executed[0][1] == ("g-1",)
    assert stmt.startswith("with m as") and "for share" in stmt
    assert "insert into public.group_messages" in stmt
    assert len(db.executed) == 4
    assert db.commits == 2


def test_message_history_checks_membership_first(monkeypatch):
    db = install_scripted_psycopg(monkeypatch, message_repo_db)
    db.queue([], [(1,)], [("m-2", "g-1", "u-1", "later", TS, 9)])
    repo = message_repo_db.DBMessageRepo(dsn="postgresql://fake")

    assert repo.list_if_member(group_id="g-1", caller_id="outsider", since=None, limit=None) is None
    rows = repo.list_if_member(group_id="g-1", caller_id="u-1", since=8, limit=10)
    assert [m.seq for m in rows] == [9]
    assert db.executed[-1][1] == ("g-1", 8, 10)


@pytest.mark.parametrize("module,cls", [
    (admin_repo_db, "DBAdminRequestRepo"),
    (group_repo_db, "DBGroupRepo"),
    (message_repo_db, "DBMessageRepo"),
    (profiles_db, "DBProfileStore"),
])
def test_repositories_require_a_dsn(monkeypatch, module, cls):
    install_scripted_psycopg(monkeypatch, module)
    monkeypatch.delenv("CAMPUS_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        getattr(module, cls)()
