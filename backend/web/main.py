"Campus"
from __future__ import annotations

import asyncio
import logging
import os
import sys as _sys

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from identity_access.domain import Role, is_anonymous
from identity_access.errors import CoreError, SessionCorruptError
from identity_access.gate import is_authenticated
from identity_access.oidc import OIDCClient, OIDCConfig
from identity_access.resolver import SESSION_COOKIE_NAME, RequestContext
from identity_access.tokens import verify_access_token

try:
    from .auth_utils import clear_session_cookie, set_session_cookie
except ImportError:
    from auth_utils import clear_session_cookie, set_session_cookie

# Ensure legacy imports consistently reference the same module instance.
if __name__ == "main":
    _sys.modules.setdefault("backend.web.main", _sys.modules[__name__])
elif __name__ == "backend.web.main":
    _sys.modules["main"] = _sys.modules[__name__]


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via CAMPUS_ENABLE_DOTENV (default true outside
      pytest).
    """
    if "pytest" in _sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("CAMPUS_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


from dotenv import load_dotenv

if _should_load_dotenv():
    load_dotenv()

# Production safety checks (fail-fast on insecure config).
# Support both "flat" (container image) and package (repo test) layouts.
try:
    import config as _cfg  # type: ignore
except Exception:  # pragma: no cover
    from backend.web import config as _cfg  # type: ignore
_cfg.ensure_secure_config_on_startup()

import wiring

# --- App & Settings Setup -------------------------------------------------------


class AuthSettings:
    def __init__(self) -> None:
        self._env_override: str | None = None

    @property
    def environment(self) -> str:
        if self._env_override is not None:
            return self._env_override
        return os.getenv("CAMPUS_ENV", "dev").lower()

    def override_environment(self, env: str | None) -> None:
        """Override environment for tests (e.g., "prod"), or reset with None."""
        self._env_override = env


logger = logging.getLogger("campus.web")
SETTINGS = AuthSettings()

app = FastAPI(title="Campus", description="Role elevation and group chat", version="0.1.0")

from routes.admin_requests import admin_requests_router
from routes.auth import auth_router
from routes.groups import groups_router
from routes.messages import messages_router
from routes.operations import operations_router

# --- OIDC ------------------------------------------------------------------------


def load_oidc_config() -> OIDCConfig:
    base_url = os.getenv("KC_BASE_URL", "http://localhost:8080")
    realm = os.getenv("KC_REALM", "campus")
    client_id = os.getenv("KC_CLIENT_ID", "campus-web")
    client_secret = os.getenv("KC_CLIENT_SECRET") or None
    return OIDCConfig(base_url=base_url, realm=realm, client_id=client_id, client_secret=client_secret)


OIDC_CFG = load_oidc_config()
OIDC = OIDCClient(OIDC_CFG)


def _verify_token(token: str) -> dict:
    return verify_access_token(token=token, cfg=OIDC_CFG)


def _refresh_tokens(refresh_token: str) -> dict:
    return OIDC.refresh(refresh_token=refresh_token)


# Late-bound lambdas keep monkeypatching of the module attributes effective.
wiring.configure_default(
    lambda: wiring.build_default_services(
        verify=lambda token: _sys.modules[__name__]._verify_token(token),
        refresh=lambda refresh_token: _sys.modules[__name__]._refresh_tokens(refresh_token),
    )
)

# --- Error Mapping ---------------------------------------------------------------

_STATUS_BY_KIND = {
    "unauthenticated": 401,
    "forbidden": 403,
    "bad_request": 400,
    "not_found": 404,
}


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError):
    status_code = _STATUS_BY_KIND.get(exc.kind, 500)
    headers = {"Cache-Control": "private, no-store"}
    if status_code == 401:
        headers["Vary"] = "Origin"
    return JSONResponse({"error": exc.kind, "detail": exc.code}, status_code=status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Shape errors (malformed JSON, wrong types) answer 400 like business validation.
    return JSONResponse(
        {"error": "bad_request", "detail": "invalid_input"},
        status_code=400,
        headers={"Cache-Control": "private, no-store"},
    )


# --- Identity Resolution Middleware ----------------------------------------------


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        cookies=dict(request.cookies),
        headers={k.lower(): v for k, v in request.headers.items()},
    )


@app.middleware("http")
async def identity_resolution(request: Request, call_next):
    """Attach the resolved caller to `request.state.identity`.

    Anonymous callers pass through; routes decide via the authorization gate.
    A corrupt session answers 401 and clears the cookie. A session rebuilt
    from loose provider credentials is handed to the client as a cookie.
    """
    svc = wiring.get_services()
    try:
        # Resolution may call the identity provider (blocking); keep it off the loop.
        caller = await asyncio.to_thread(svc.resolver.resolve, _request_context(request))
    except SessionCorruptError as exc:
        logger.warning("corrupt session rejected path=%s", request.url.path)
        resp = JSONResponse(
            {"error": exc.kind, "detail": exc.code},
            status_code=401,
            headers={"Cache-Control": "private, no-store", "Vary": "Origin"},
        )
        clear_session_cookie(resp, name=SESSION_COOKIE_NAME, environment=SETTINGS.environment)
        return resp
    request.state.identity = caller
    response = await call_next(request)
    new_sid = getattr(caller, "session_id", None)
    if new_sid and request.cookies.get(SESSION_COOKIE_NAME) != new_sid:
        set_session_cookie(
            response,
            name=SESSION_COOKIE_NAME,
            value=new_sid,
            environment=SETTINGS.environment,
            max_age=_cfg.session_ttl_seconds(),
        )
    return response


# --- Security Headers Middleware ----------------------------------------------


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    if SETTINGS.environment == "prod":
        csp = (
            "default-src 'self'; script-src 'self'; style-src 'self'; "
            "img-src 'self' data:; font-src 'self' data:; connect-src 'self';"
        )
    else:
        csp = (
            "default-src 'self'; script-src 'self' 'unsafe-inline'; style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data:; font-src 'self' data:; connect-src 'self';"
        )
    response.headers.setdefault("Content-Security-Policy", csp)
    response.headers.setdefault("X-Frame-Options", "SAMEORIGIN")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if SETTINGS.environment == "prod":
        response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    # HSTS: always on (dev = prod)
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# --- Routes ----------------------------------------------------------------------

app.include_router(auth_router)
app.include_router(admin_requests_router)
app.include_router(groups_router)
app.include_router(messages_router)
app.include_router(operations_router)


@app.get("/health")
async def health_check():
    # Minimal health endpoint used by orchestrators and tests.
    return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "private, no-store"})


@app.get("/api/me")
async def get_me(request: Request):
    """Return the caller, their current role and how the identity was resolved."""
    svc = wiring.get_services()
    caller = getattr(request.state, "identity", None)
    if caller is None or is_anonymous(caller):
        return JSONResponse(
            {"error": "unauthenticated", "detail": "unauthenticated"},
            status_code=401,
            headers={"Cache-Control": "private, no-store"},
        )
    ident = svc.gate.require(caller, is_authenticated)
    role = svc.gate.role_of(ident)
    profile = svc.profiles.get_profile(ident.user_id)
    return JSONResponse(
        {
            "user": {
                "id": ident.user_id,
                "email": ident.email,
                "full_name": getattr(profile, "full_name", None),
            },
            "role": role.value,
            "is_admin": role is Role.ADMIN,
            "confidence": ident.confidence.label,
        },
        headers={"Cache-Control": "private, no-store"},
    )
