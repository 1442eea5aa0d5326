"""
Shared web security helpers for the route modules.

Contains the CSRF same-origin check, the private (no-store) JSON response
helpers and access to the caller identity resolved by the middleware. Keeping
a single implementation avoids security drift between routers.
"""
from __future__ import annotations

import os
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import JSONResponse

from identity_access.domain import ANONYMOUS, Caller


def _json_private(payload, *, status_code: int = 200, vary_origin: bool = False) -> JSONResponse:
    """Return a JSONResponse with cache disabled for shared caches and browsers.

    Rationale: every API response here is user- or role-scoped (own requests,
    memberships, chat history). Respond with "private, no-store".
    """
    headers = {"Cache-Control": "private, no-store"}
    if vary_origin:
        headers["Vary"] = "Origin"
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


def _private_error(payload: dict, *, status_code: int, vary_origin: bool = False) -> JSONResponse:
    """Return error JSON with private, no-store cache headers."""
    return _json_private(payload, status_code=status_code, vary_origin=vary_origin)


def current_caller(request: Request) -> Caller:
    """Return the identity attached by the resolution middleware (ANONYMOUS if none)."""
    return getattr(request.state, "identity", ANONYMOUS)


def _is_same_origin(request: Request) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow to not break non-browser clients.
    Proxy awareness: Only trust X-Forwarded-* when CAMPUS_TRUST_PROXY=true.
    """
    origin_val = request.headers.get("origin")

    def parse_origin(url: str) -> tuple[str, str, int]:
        p = urlparse(url)
        if not p.scheme or not p.hostname:
            raise ValueError("invalid_origin")
        scheme = p.scheme.lower()
        port = p.port if p.port is not None else (443 if scheme == "https" else 80)
        return scheme, p.hostname.lower(), int(port)

    def parse_server(req: Request) -> tuple[str, str, int]:
        scheme = (req.url.scheme or "http").lower()
        host = (req.url.hostname or "").lower()
        port = int(req.url.port) if req.url.port else (443 if scheme == "https" else 80)
        trust_proxy = (os.getenv("CAMPUS_TRUST_PROXY", "false") or "").lower() == "true"
        if not trust_proxy:
            return scheme, host, port
        xf_proto = (req.headers.get("x-forwarded-proto") or "").split(",")[0].strip()
        xf_host = (req.headers.get("x-forwarded-host") or req.headers.get("host") or "").split(",")[0].strip()
        scheme = (xf_proto or scheme).lower()
        default_port = 443 if scheme == "https" else 80
        if ":" in xf_host:
            host_only, port_str = xf_host.rsplit(":", 1)
            host = host_only.lower()
            port = int(port_str) if port_str.isdigit() else default_port
        elif xf_host:
            host, port = xf_host.lower(), default_port
        xf_port = (req.headers.get("x-forwarded-port") or "").split(",")[0].strip()
        if xf_port:
            port = int(xf_port) if xf_port.isdigit() else default_port
        return scheme, host, port

    try:
        server = parse_server(request)
        if origin_val:
            return parse_origin(origin_val) == server
        referer_val = request.headers.get("referer")
        if referer_val:
            return parse_origin(referer_val) == server
        return True
    except ValueError:
        return False


def _csrf_guard(request: Request) -> JSONResponse | None:
    """Enforce same-origin for browser write requests.

    Behavior:
        - Bearer-authenticated calls carry no ambient credentials and skip the check.
        - In production or when STRICT_CSRF=true, require that either Origin or
          Referer is present AND same-origin.
        - Otherwise fall back to best-effort `_is_same_origin`, which permits
          requests without these headers (server-to-server calls).
    """
    if (request.headers.get("authorization") or "").lower().startswith("bearer "):
        return None
    prod_env = (os.getenv("CAMPUS_ENV", "dev") or "").lower() == "prod"
    strict = prod_env or (os.getenv("STRICT_CSRF", "false") or "").lower() == "true"
    if strict:
        origin_present = request.headers.get("origin") or request.headers.get("referer")
        if not origin_present or not _is_same_origin(request):
            return _private_error({"error": "forbidden", "detail": "csrf_violation"}, status_code=403)
        return None
    if not _is_same_origin(request):
        return _private_error({"error": "forbidden", "detail": "csrf_violation"}, status_code=403)
    return None
