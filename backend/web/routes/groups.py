"""
Group API routes: listing, admin management, join/leave and member rosters.

Permissions:
    - Listing groups, joining and leaving: any authenticated caller.
    - Create, update, delete and managing other users' memberships: admins.
    - Member roster: members of the group and admins. Non-members get 403 so
      the roster never leaks to outsiders.

Notes:
    Join and leave are idempotent; repeating them answers 200 with
    `joined`/`left` set to False.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import Response
from pydantic import BaseModel

from groups.registry import Group, Membership
from identity_access.domain import Role
from identity_access.errors import ForbiddenError, ValidationError
from identity_access.gate import has_role, is_authenticated
from wiring import get_services

from .security import _csrf_guard, _json_private, current_caller

groups_router = APIRouter(tags=["Groups"])
logger = logging.getLogger("campus.web.groups")


class GroupCreate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class GroupUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class MemberAdd(BaseModel):
    user_id: Optional[str] = None


def _serialize_group(group: Group, *, is_member: bool | None = None) -> dict:
    out = {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "created_by": group.created_by,
        "created_at": group.created_at,
        "updated_at": group.updated_at,
        "member_count": group.member_count,
    }
    if is_member is not None:
        out["is_member"] = is_member
    return out


def _serialize_member(member: Membership) -> dict:
    return {"group_id": member.group_id, "user_id": member.user_id, "joined_at": member.joined_at}


@groups_router.get("/api/groups")
async def list_groups(request: Request, mine: bool = False):
    """List groups with the caller's membership flag; `?mine=true` limits to joined groups."""
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    if mine:
        items = svc.registry.list_groups_for_user(ident.user_id)
        joined = {g.id for g in items}
    else:
        items = svc.registry.list_groups()
        joined = {g.id for g in svc.registry.list_groups_for_user(ident.user_id)}
    return _json_private({"groups": [_serialize_group(g, is_member=g.id in joined) for g in items]})


@groups_router.post("/api/groups")
async def create_group(request: Request, payload: GroupCreate):
    svc = get_services()
    ident = svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    group = svc.registry.create_group(name=payload.name, description=payload.description, created_by=ident.user_id)
    return _json_private({"group": _serialize_group(group)}, status_code=201)


@groups_router.patch("/api/groups/{group_id}")
async def update_group(request: Request, group_id: str, payload: GroupUpdate):
    """Partial update; only fields present in the body change."""
    svc = get_services()
    svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    changes = payload.model_dump(exclude_unset=True)
    group = svc.registry.update_group(group_id, **changes)
    return _json_private({"group": _serialize_group(group)})


@groups_router.delete("/api/groups/{group_id}")
async def delete_group(request: Request, group_id: str):
    svc = get_services()
    svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    svc.registry.delete_group(group_id)
    return Response(status_code=204, headers={"Cache-Control": "private, no-store"})


@groups_router.post("/api/groups/{group_id}/join")
async def join_group(request: Request, group_id: str):
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    created = svc.registry.join(group_id, ident.user_id)
    return _json_private({"group_id": group_id, "joined": created, "is_member": True})


@groups_router.post("/api/groups/{group_id}/leave")
async def leave_group(request: Request, group_id: str):
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    removed = svc.registry.leave(group_id, ident.user_id)
    return _json_private({"group_id": group_id, "left": removed, "is_member": False})


@groups_router.get("/api/groups/{group_id}/members")
async def list_group_members(request: Request, group_id: str):
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    if svc.gate.role_of(ident) is not Role.ADMIN and not svc.registry.is_member(group_id, ident.user_id):
        raise ForbiddenError("not_a_member")
    members = svc.registry.list_members(group_id)
    return _json_private({"members": [_serialize_member(m) for m in members]})


@groups_router.post("/api/groups/{group_id}/members")
async def add_group_member(request: Request, group_id: str, payload: MemberAdd):
    """Admin management flow: add another user to a group (idempotent)."""
    svc = get_services()
    svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    user_id = (payload.user_id or "").strip()
    if not user_id:
        raise ValidationError("invalid_user_id")
    created = svc.registry.add_member(group_id, user_id)
    return _json_private({"group_id": group_id, "user_id": user_id, "added": created})


@groups_router.delete("/api/groups/{group_id}/members/{user_id}")
async def remove_group_member(request: Request, group_id: str, user_id: str):
    svc = get_services()
    svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    removed = svc.registry.remove_member(group_id, user_id)
    return _json_private({"group_id": group_id, "user_id": user_id, "removed": removed})
