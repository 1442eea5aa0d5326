"""
Authentication routes: password login and logout (router-only module).

Why:
    Keep auth endpoints in a dedicated router. The OIDC client and the access
    token verifier live in `main` so tests can monkeypatch one place; this
    module resolves the active main module at request time.

Behavior:
    - Login exchanges email/password at the identity provider (password
      grant), verifies the returned access token, ensures a profile exists
      (new profiles start as student) and issues an httpOnly session cookie.
    - Logout deletes the server-side session (best-effort) and expires the
      cookie. It never fails.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import requests
from fastapi import Request
from fastapi import APIRouter
from pydantic import BaseModel

from identity_access.resolver import SESSION_COOKIE_NAME
from identity_access.tokens import IDTokenVerificationError
from wiring import get_services

from .security import _json_private, _private_error

try:
    from ..auth_utils import clear_session_cookie, set_session_cookie  # type: ignore
except Exception:  # pragma: no cover - top-level import context
    from auth_utils import clear_session_cookie, set_session_cookie  # type: ignore


auth_router = APIRouter(tags=["Auth"])
logger = logging.getLogger("campus.web.auth")


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


def _resolve_active_main(request: Request):
    """Return the main module whose `app` serves this request.

    Tests may import the app as either `main` or `backend.web.main`.
    """
    import sys as _sys
    candidates = [m for m in (_sys.modules.get("main"), _sys.modules.get("backend.web.main")) if m]
    for m in candidates:
        if getattr(m, "app", None) is getattr(request, "app", None):
            return m
    return candidates[0] if candidates else None


def _environment(mod) -> str:
    settings = getattr(mod, "SETTINGS", None)
    return getattr(settings, "environment", "dev")


@auth_router.post("/auth/login")
async def auth_login(request: Request, payload: LoginRequest):
    """Password login.

    Errors:
        400 invalid_input when email or password are missing.
        401 invalid_credentials for any provider or token failure (no detail
        on whether the account exists).
    """
    mod = _resolve_active_main(request)
    email = (payload.email or "").strip()
    password = payload.password or ""
    if not email or not password:
        return _private_error({"error": "bad_request", "detail": "invalid_input"}, status_code=400)

    try:
        tokens = await asyncio.to_thread(mod.OIDC.password_grant, email=email, password=password)
        claims = await asyncio.to_thread(mod._verify_token, tokens["access_token"])
    except (ValueError, IDTokenVerificationError, requests.RequestException, KeyError) as exc:
        logger.info("login rejected reason=%s", exc.__class__.__name__)
        return _private_error({"error": "unauthenticated", "detail": "invalid_credentials"}, status_code=401)

    user_id = str(claims.get("sub") or "")
    token_email = str(claims.get("email") or email)
    full_name = claims.get("name") if isinstance(claims.get("name"), str) else None
    svc = get_services()
    profile = svc.profiles.ensure_profile(user_id, token_email, full_name)
    rec = svc.sessions.create(
        user_id=user_id,
        email=token_email,
        access_token=tokens.get("access_token"),
        refresh_token=tokens.get("refresh_token"),
    )
    role = svc.profiles.get_role(user_id, token_email)
    resp = _json_private(
        {
            "user": {"id": profile.id, "email": profile.email, "full_name": profile.full_name},
            "role": role.value,
        }
    )
    ttl = getattr(svc.sessions, "default_ttl_seconds", None)
    set_session_cookie(resp, name=SESSION_COOKIE_NAME, value=rec.session_id, environment=_environment(mod), max_age=ttl)
    logger.info("login ok user_tail=%s", user_id[-6:])
    return resp


@auth_router.post("/auth/logout")
async def auth_logout(request: Request):
    """Delete the server-side session if present and expire the cookie."""
    mod = _resolve_active_main(request)
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    if sid:
        try:
            get_services().sessions.delete(sid)
        except Exception as exc:
            logger.warning("Session delete failed during logout: %s", exc.__class__.__name__)
    resp = _json_private({"logged_out": True})
    clear_session_cookie(resp, name=SESSION_COOKIE_NAME, environment=_environment(mod))
    return resp
