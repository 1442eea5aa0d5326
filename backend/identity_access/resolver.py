"""
Identity resolution: recover "who is calling" from an inbound request.

Why:
    Session propagation is not equally reliable for every client. Browsers
    carry our opaque session cookie, API clients send a bearer token, and some
    callers only forward the raw provider credentials they hold. Resolution is
    an ordered list of strategies; the first one that yields an identity wins.

Behavior:
    - Strategies are tried in a fixed order (session, bearer, reconstructed).
      Each returns an `Identity` or None and never raises for a miss.
    - No match yields `ANONYMOUS`. Absence of identity is a normal outcome.
    - The only raise is `SessionCorruptError` for a session record that exists
      but cannot be used.
    - Reconstruction from loose credentials persists a fresh server-side
      session on success; the returned identity carries its id so the web
      adapter can set the session cookie and later calls take the fast path.
      Clients that drop the cookie and resend the same credentials get the
      same session back (bounded index keyed by a credential fingerprint)
      instead of a new session per request.

Security:
    Tokens are never logged. Provider failures are logged by exception class
    only and count as a miss.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import unquote

import requests

from .domain import ANONYMOUS, Caller, Confidence, Identity
from .errors import SessionCorruptError
from .tokens import IDTokenVerificationError

logger = logging.getLogger("campus.identity_access.resolver")

SESSION_COOKIE_NAME = "campus_session"

# Names under which raw credentials are found in a forwarded cookie/header blob.
ACCESS_TOKEN_NAMES = ("access_token", "campus-access-token", "sb-access-token")
REFRESH_TOKEN_NAMES = ("refresh_token", "campus-refresh-token", "sb-refresh-token")
BLOB_HEADER = "x-auth-token-blob"
# Upper bound on remembered credential fingerprints (oldest evicted first).
RECONSTRUCTED_INDEX_SIZE = 1024

TokenVerifier = Callable[[str], Dict[str, object]]
TokenRefresher = Callable[[str], Dict[str, str]]

_PROVIDER_ERRORS = (IDTokenVerificationError, ValueError, requests.RequestException)


def _tail(value: str | None) -> str:
    return (value or "")[-6:]


@dataclass
class RequestContext:
    """Framework-independent view of the request parts used for resolution.

    Header keys are expected in lower case.
    """

    cookies: Mapping[str, str] = field(default_factory=dict)
    headers: Mapping[str, str] = field(default_factory=dict)


class SessionReader(Protocol):
    def get(self, session_id: str):
        ...


class SessionWriter(Protocol):
    def get(self, session_id: str):
        ...

    def create(self, *, user_id: str, email: str, ttl_seconds: int | None = None,
               access_token: Optional[str] = None, refresh_token: Optional[str] = None):
        ...


class ResolutionStrategy(Protocol):
    name: str

    def attempt(self, ctx: RequestContext) -> Optional[Identity]:
        ...


def _identity_from_claims(claims: Mapping[str, object], confidence: Confidence,
                          session_id: str | None = None) -> Optional[Identity]:
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        return None
    email = claims.get("email")
    return Identity(
        user_id=sub,
        email=email if isinstance(email, str) else "",
        confidence=confidence,
        session_id=session_id,
    )


class SessionCookieStrategy:
    """Look up the opaque session cookie in the server-side session store."""

    name = "session"

    def __init__(self, sessions: SessionReader, cookie_name: str = SESSION_COOKIE_NAME) -> None:
        self._sessions = sessions
        self._cookie_name = cookie_name

    def attempt(self, ctx: RequestContext) -> Optional[Identity]:
        sid = ctx.cookies.get(self._cookie_name)
        if not sid:
            return None
        rec = self._sessions.get(sid)
        if not rec:
            return None
        if not getattr(rec, "user_id", None):
            logger.warning("session record unusable sid_tail=%s", _tail(sid))
            raise SessionCorruptError()
        return Identity(
            user_id=rec.user_id,
            email=rec.email or "",
            confidence=Confidence.SESSION,
            session_id=rec.session_id,
        )


class BearerTokenStrategy:
    """Verify an `Authorization: Bearer` access token with the identity provider."""

    name = "bearer"

    def __init__(self, verify: TokenVerifier) -> None:
        self._verify = verify

    def attempt(self, ctx: RequestContext) -> Optional[Identity]:
        auth = ctx.headers.get("authorization") or ""
        scheme, _, token = auth.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        try:
            claims = self._verify(token.strip())
        except _PROVIDER_ERRORS as exc:
            logger.info("bearer token rejected: %s", getattr(exc, "code", type(exc).__name__))
            return None
        return _identity_from_claims(claims, Confidence.BEARER)


def parse_kv_blob(raw: str) -> Dict[str, str]:
    """Parse a `k=v; k2=v2` blob (Cookie header style). Later keys do not override earlier ones."""
    out: Dict[str, str] = {}
    for part in (raw or "").split(";"):
        name, sep, value = part.strip().partition("=")
        if not sep or not name:
            continue
        out.setdefault(name.strip(), unquote(value.strip().strip('"')))
    return out


def _parse_blob_header(raw: str) -> Dict[str, str]:
    raw = (raw or "").strip()
    if raw.startswith("{"):
        try:
            data = json.loads(raw)
        except ValueError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}
    return parse_kv_blob(raw)


def _decode_auth_token_value(value: str) -> Tuple[Optional[str], Optional[str]]:
    """Decode a provider auth-token cookie holding both credentials.

    Accepts a JSON object with `access_token`/`refresh_token`, a JSON array
    `[access, refresh, ...]`, or either one prefixed with `base64-`.
    """
    if value.startswith("base64-"):
        encoded = value[len("base64-"):]
        try:
            value = base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4)).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return None, None
    try:
        data = json.loads(value)
    except ValueError:
        return None, None
    if isinstance(data, dict):
        access, refresh = data.get("access_token"), data.get("refresh_token")
    elif isinstance(data, list) and data:
        access = data[0]
        refresh = data[1] if len(data) > 1 else None
    else:
        return None, None
    return (
        access if isinstance(access, str) and access else None,
        refresh if isinstance(refresh, str) and refresh else None,
    )


def _chunked_value(blob: Mapping[str, str], name: str) -> Optional[str]:
    if name in blob:
        return blob[name]
    chunks = []
    idx = 0
    while f"{name}.{idx}" in blob:
        chunks.append(blob[f"{name}.{idx}"])
        idx += 1
    return "".join(chunks) if chunks else None


def locate_credentials(blob: Mapping[str, str]) -> Tuple[Optional[str], Optional[str]]:
    """Return (access_token, refresh_token) found under any known name."""
    access = next((blob[n] for n in ACCESS_TOKEN_NAMES if blob.get(n)), None)
    refresh = next((blob[n] for n in REFRESH_TOKEN_NAMES if blob.get(n)), None)
    if access and refresh:
        return access, refresh
    bases = sorted({k.split(".")[0] for k in blob if k.startswith("sb-") and k.split(".")[0].endswith("-auth-token")})
    for base in bases:
        value = _chunked_value(blob, base)
        if not value:
            continue
        packed_access, packed_refresh = _decode_auth_token_value(value)
        access = access or packed_access
        refresh = refresh or packed_refresh
        if access and refresh:
            break
    return access, refresh


def _fingerprint(access: Optional[str], refresh: Optional[str]) -> str:
    return hashlib.sha256(f"{access or ''}\x00{refresh or ''}".encode("utf-8")).hexdigest()


class HeaderReconstructionStrategy:
    """Rebuild a session from loose provider credentials in the cookie/header blob."""

    name = "reconstructed"

    def __init__(
        self,
        *,
        verify: TokenVerifier,
        sessions: SessionWriter,
        refresh: TokenRefresher | None = None,
        session_ttl_seconds: int | None = None,
        index_size: int = RECONSTRUCTED_INDEX_SIZE,
    ) -> None:
        self._verify = verify
        self._sessions = sessions
        self._refresh = refresh
        self._ttl = session_ttl_seconds
        self._index: "OrderedDict[str, str]" = OrderedDict()
        self._index_size = index_size
        self._index_lock = Lock()

    def _blob(self, ctx: RequestContext) -> Dict[str, str]:
        blob = parse_kv_blob(ctx.headers.get("cookie") or "")
        for name, value in _parse_blob_header(ctx.headers.get(BLOB_HEADER) or "").items():
            blob.setdefault(name, value)
        return blob

    def _try_verify(self, token: str) -> Optional[Dict[str, object]]:
        try:
            return self._verify(token)
        except _PROVIDER_ERRORS as exc:
            logger.info("reconstructed token rejected: %s", getattr(exc, "code", type(exc).__name__))
            return None

    def _known_session(self, fingerprint: str) -> Optional[Identity]:
        with self._index_lock:
            sid = self._index.get(fingerprint)
            if sid is not None:
                self._index.move_to_end(fingerprint)
        if sid is None:
            return None
        rec = self._sessions.get(sid)
        if not rec or not getattr(rec, "user_id", None):
            with self._index_lock:
                if self._index.get(fingerprint) == sid:
                    del self._index[fingerprint]
            return None
        return Identity(
            user_id=rec.user_id,
            email=rec.email or "",
            confidence=Confidence.RECONSTRUCTED,
            session_id=rec.session_id,
        )

    def _remember(self, fingerprint: str, session_id: str) -> None:
        with self._index_lock:
            self._index[fingerprint] = session_id
            self._index.move_to_end(fingerprint)
            while len(self._index) > self._index_size:
                self._index.popitem(last=False)

    def attempt(self, ctx: RequestContext) -> Optional[Identity]:
        access, refresh = locate_credentials(self._blob(ctx))
        if not access and not refresh:
            return None
        fingerprint = _fingerprint(access, refresh)
        known = self._known_session(fingerprint)
        if known is not None:
            return known
        claims = self._try_verify(access) if access else None
        if claims is None and refresh and self._refresh is not None:
            try:
                tokens = self._refresh(refresh)
            except _PROVIDER_ERRORS as exc:
                logger.info("refresh exchange failed: %s", type(exc).__name__)
                return None
            access = tokens.get("access_token") or None
            refresh = tokens.get("refresh_token") or refresh
            claims = self._try_verify(access) if access else None
        if claims is None:
            return None
        ident = _identity_from_claims(claims, Confidence.RECONSTRUCTED)
        if ident is None:
            return None
        rec = self._sessions.create(
            user_id=ident.user_id,
            email=ident.email,
            ttl_seconds=self._ttl,
            access_token=access,
            refresh_token=refresh,
        )
        # Keyed by the credentials as sent, so a resend finds this session.
        self._remember(fingerprint, rec.session_id)
        logger.info("session re-established user_tail=%s", _tail(ident.user_id))
        return Identity(
            user_id=ident.user_id,
            email=ident.email,
            confidence=Confidence.RECONSTRUCTED,
            session_id=rec.session_id,
        )

    def remembered_count(self) -> int:
        with self._index_lock:
            return len(self._index)


class IdentityResolver:
    def __init__(self, strategies: Sequence[ResolutionStrategy]) -> None:
        self._strategies = list(strategies)

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def resolve(self, ctx: RequestContext) -> Caller:
        """Return the caller identity from the first matching strategy, else ANONYMOUS."""
        for strategy in self._strategies:
            ident = strategy.attempt(ctx)
            if ident is not None:
                logger.debug("identity resolved via=%s user_tail=%s", strategy.name, _tail(ident.user_id))
                return ident
        return ANONYMOUS


def build_resolver(
    *,
    sessions,
    verify: TokenVerifier | None = None,
    refresh: TokenRefresher | None = None,
    session_ttl_seconds: int | None = None,
) -> IdentityResolver:
    """Assemble the default strategy order. Token strategies need a verifier."""
    strategies: list[ResolutionStrategy] = [SessionCookieStrategy(sessions)]
    if verify is not None:
        strategies.append(BearerTokenStrategy(verify))
        strategies.append(
            HeaderReconstructionStrategy(
                verify=verify,
                sessions=sessions,
                refresh=refresh,
                session_ttl_seconds=session_ttl_seconds,
            )
        )
    return IdentityResolver(strategies)


__all__ = [
    "ACCESS_TOKEN_NAMES",
    "BearerTokenStrategy",
    "HeaderReconstructionStrategy",
    "IdentityResolver",
    "REFRESH_TOKEN_NAMES",
    "RequestContext",
    "SESSION_COOKIE_NAME",
    "SessionCookieStrategy",
    "build_resolver",
    "locate_credentials",
    "parse_kv_blob",
]
