"""Operations endpoints (admin dashboards and in-process telemetry)."""

from __future__ import annotations

from fastapi import APIRouter, Request

from identity_access.domain import Role
from identity_access.gate import has_role
from ops import telemetry
from wiring import get_services

from .security import _json_private, current_caller

operations_router = APIRouter(tags=["Operations"])


@operations_router.get("/api/admin/stats")
async def admin_stats(request: Request):
    """
    Return aggregate counts for the admin dashboard.

    Permissions:
        Caller must hold the admin role. Counts only; no identifiers.
    """
    svc = get_services()
    svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    groups = svc.registry.list_groups()
    body = {
        "roles": svc.profiles.count_by_role(),
        "admin_requests": svc.workflow.count_by_status(),
        "groups": {
            "total": len(groups),
            "memberships": sum(g.member_count for g in groups),
        },
    }
    return _json_private(body)


@operations_router.get("/internal/telemetry")
async def telemetry_snapshot(request: Request):
    """Expose the in-process counters and gauges (admins only)."""
    svc = get_services()
    svc.gate.require(current_caller(request), has_role(Role.ADMIN))
    return _json_private(telemetry.export())
