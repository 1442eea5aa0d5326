"""
Admin request API routes: submit, list and review elevation requests.

Why:
    Keep the adapter thin. Identity comes from the resolution middleware, the
    authorization gate decides who may act, and the workflow owns the state
    machine. Core errors are mapped to HTTP by the app's exception handlers.

Permissions:
    - Any authenticated caller may submit a request and list their own.
    - Admins list and read every request and are the only reviewers.
    - A single request is visible to its requester and to admins.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from elevation.workflow import AdminRequest
from identity_access.domain import Role
from identity_access.errors import NotFoundError
from identity_access.gate import has_role, is_authenticated
from wiring import get_services

from .security import _csrf_guard, _json_private, current_caller

admin_requests_router = APIRouter(tags=["Admin Requests"])
logger = logging.getLogger("campus.web.admin_requests")


class AdminRequestCreate(BaseModel):
    # Optional so that a missing reason is reported as 400 invalid_reason.
    reason: Optional[str] = None


class AdminRequestReview(BaseModel):
    action: Optional[str] = None


def _serialize_request(req: AdminRequest) -> dict:
    return {
        "id": req.id,
        "requester_id": req.requester_id,
        "reason": req.reason,
        "status": req.status.value,
        "reviewer_id": req.reviewer_id,
        "reviewed_at": req.reviewed_at,
        "created_at": req.created_at,
    }


@admin_requests_router.post("/api/admin/requests")
async def submit_admin_request(request: Request, payload: AdminRequestCreate):
    """Open a pending admin request for the caller (role becomes pending_admin)."""
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    req = svc.workflow.submit(ident.user_id, payload.reason or "", requester_email=ident.email or None)
    return _json_private({"request": _serialize_request(req)}, status_code=201)


@admin_requests_router.get("/api/admin/requests")
async def list_admin_requests(request: Request):
    """List requests: all for admins, only the caller's own otherwise."""
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    role = svc.gate.role_of(ident)
    items = svc.workflow.list_requests(ident.user_id, role)
    return _json_private({"requests": [_serialize_request(r) for r in items]})


@admin_requests_router.patch("/api/admin/requests/{request_id}")
async def review_admin_request(request: Request, request_id: str, payload: AdminRequestReview):
    """Approve or deny a pending request (admins only).

    Errors:
        400 invalid_action / already_processed, 403 admin_required, 404 request_not_found.
    """
    svc = get_services()
    ident = svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    csrf = _csrf_guard(request)
    if csrf:
        return csrf
    req = svc.workflow.review(request_id, ident.user_id, payload.action, reviewer_email=ident.email or None)
    return _json_private({"request": _serialize_request(req)})


@admin_requests_router.get("/api/admin/requests/{request_id}")
async def get_admin_request(request: Request, request_id: str):
    """Return one request to its requester or an admin.

    Other callers get 404 so request ids do not reveal who asked.
    """
    svc = get_services()
    ident = svc.gate.require(current_caller(request), is_authenticated)
    req = svc.workflow.get_request(request_id)
    if req is None or (req.requester_id != ident.user_id and svc.gate.role_of(ident) is not Role.ADMIN):
        raise NotFoundError("request_not_found")
    return _json_private({"request": _serialize_request(req)})
