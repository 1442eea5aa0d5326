"""
Groups API contract: admin management, join/leave and member rosters.
"""
from __future__ import annotations

import httpx
import pytest
from httpx import ASGITransport

import main  # type: ignore
from identity_access.domain import Role
from utils.identity import session_cookie

pytestmark = pytest.mark.anyio("asyncio")


def _client(cookies: dict | None = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test", cookies=cookies)


async def _create_group(services, name: str = "Robotics") -> str:
    admin = session_cookie(services, "admin-1", role=Role.ADMIN)
    async with _client(admin) as c:
        r = await c.post("/api/groups", json={"name": name, "description": "Thursdays"})
    assert r.status_code == 201
    return r.json()["group"]["id"]


@pytest.mark.anyio
async def test_admin_creates_updates_and_deletes_group(services):
    admin = session_cookie(services, "admin-1", role=Role.ADMIN)
    async with _client(admin) as c:
        created = await c.post("/api/groups", json={"name": "Choir"})
        gid = created.json()["group"]["id"]
        updated = await c.patch(f"/api/groups/{gid}", json={"description": "Mondays"})
        deleted = await c.delete(f"/api/groups/{gid}")
        gone = await c.patch(f"/api/groups/{gid}", json={"name": "x"})

    assert created.status_code == 201
    assert created.json()["group"]["member_count"] == 0
    assert updated.status_code == 200
    assert updated.json()["group"]["name"] == "Choir"
    assert updated.json()["group"]["description"] == "Mondays"
    assert deleted.status_code == 204
    assert deleted.headers["Cache-Control"] == "private, no-store"
    assert gone.status_code == 404
    assert gone.json() == {"error": "not_found", "detail": "group_not_found"}


@pytest.mark.anyio
async def test_non_admin_cannot_manage_groups(services):
    gid = await _create_group(services)
    student = session_cookie(services, "student-1")
    async with _client(student) as c:
        create = await c.post("/api/groups", json={"name": "Mine"})
        delete = await c.delete(f"/api/groups/{gid}")
    assert create.status_code == 403
    assert create.json()["detail"] == "admin_required"
    assert delete.status_code == 403


@pytest.mark.anyio
async def test_invalid_group_name_is_400(services):
    admin = session_cookie(services, "admin-1", role=Role.ADMIN)
    async with _client(admin) as c:
        r = await c.post("/api/groups", json={"name": "   "})
    assert r.status_code == 400
    assert r.json()["detail"] == "invalid_name"


@pytest.mark.anyio
async def test_join_is_idempotent_and_leave_reports_removal(services):
    gid = await _create_group(services)
    student = session_cookie(services, "student-1")
    async with _client(student) as c:
        first = await c.post(f"/api/groups/{gid}/join")
        second = await c.post(f"/api/groups/{gid}/join")
        listing = await c.get("/api/groups")
        left = await c.post(f"/api/groups/{gid}/leave")
        left_again = await c.post(f"/api/groups/{gid}/leave")

    assert first.json()["joined"] is True
    assert second.status_code == 200 and second.json()["joined"] is False
    group = next(g for g in listing.json()["groups"] if g["id"] == gid)
    assert group["is_member"] is True and group["member_count"] == 1
    assert left.json()["left"] is True
    assert left_again.json()["left"] is False
    assert services.registry.is_member(gid, "student-1") is False


@pytest.mark.anyio
async def test_join_unknown_group_is_404(services):
    student = session_cookie(services, "student-1")
    async with _client(student) as c:
        r = await c.post("/api/groups/missing/join")
    assert r.status_code == 404


@pytest.mark.anyio
async def test_mine_filter_lists_only_joined_groups(services):
    gid = await _create_group(services, "A")
    await _create_group(services, "B")
    student = session_cookie(services, "student-1")
    async with _client(student) as c:
        await c.post(f"/api/groups/{gid}/join")
        r = await c.get("/api/groups", params={"mine": "true"})
    assert [g["id"] for g in r.json()["groups"]] == [gid]


@pytest.mark.anyio
async def test_member_roster_hidden_from_outsiders(services):
    gid = await _create_group(services)
    member = session_cookie(services, "student-1")
    outsider = session_cookie(services, "student-2")
    admin = session_cookie(services, "admin-1", role=Role.ADMIN)
    async with _client(member) as c:
        await c.post(f"/api/groups/{gid}/join")
        as_member = await c.get(f"/api/groups/{gid}/members")
    async with _client(outsider) as c:
        as_outsider = await c.get(f"/api/groups/{gid}/members")
    async with _client(admin) as c:
        as_admin = await c.get(f"/api/groups/{gid}/members")

    assert [m["user_id"] for m in as_member.json()["members"]] == ["student-1"]
    assert as_outsider.status_code == 403
    assert as_outsider.json()["detail"] == "not_a_member"
    assert as_admin.status_code == 200


@pytest.mark.anyio
async def test_admin_adds_and_removes_members(services):
    gid = await _create_group(services)
    admin = session_cookie(services, "admin-1", role=Role.ADMIN)
    async with _client(admin) as c:
        added = await c.post(f"/api/groups/{gid}/members", json={"user_id": "student-9"})
        blank = await c.post(f"/api/groups/{gid}/members", json={"user_id": " "})
        removed = await c.delete(f"/api/groups/{gid}/members/student-9")

    assert added.json()["added"] is True
    assert blank.status_code == 400 and blank.json()["detail"] == "invalid_user_id"
    assert removed.json()["removed"] is True
    assert services.registry.is_member(gid, "student-9") is False


@pytest.mark.anyio
async def test_cross_origin_join_is_blocked(services):
    gid = await _create_group(services)
    student = session_cookie(services, "student-1")
    async with _client(student) as c:
        r = await c.post(f"/api/groups/{gid}/join", headers={"Origin": "https://evil.example"})
    assert r.status_code == 403
    assert r.json()["detail"] == "csrf_violation"
    assert services.registry.is_member(gid, "student-1") is False


@pytest.mark.anyio
async def test_strict_csrf_requires_origin_for_cookie_writes(services, monkeypatch):
    gid = await _create_group(services)
    monkeypatch.setenv("STRICT_CSRF", "true")
    student = session_cookie(services, "student-1")
    async with _client(student) as c:
        missing = await c.post(f"/api/groups/{gid}/join")
        same = await c.post(f"/api/groups/{gid}/join", headers={"Origin": "http://test"})
    assert missing.status_code == 403
    assert same.status_code == 200
