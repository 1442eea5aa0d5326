"""
Access token verification against the identity provider's signing keys.

The resolver calls `verify_access_token` from worker threads (bearer and
reconstruction strategies), so the key cache is lock-protected. A token
signed with a key id the cache has not seen yet triggers one forced refetch
to follow provider key rotation, rate-limited per realm.

Only RS256 signatures are accepted, whatever `alg` the key set advertises.
The audience is not checked: access tokens are minted for the provider's own
"account" audience.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Optional, Tuple

import requests
from jose import jwt
from jose.exceptions import JOSEError

from .oidc import OIDCConfig

ALLOWED_ALGORITHMS = ["RS256"]
MAX_CLOCK_SKEW_SECONDS = 5
MIN_REFETCH_INTERVAL_SECONDS = 30


class IDTokenVerificationError(Exception):
    """A token failed verification. `code` is safe to log and return."""

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


@dataclass
class _KeySet:
    keys: Dict[str, dict] = field(default_factory=dict)
    fetched_at: float = 0.0
    forced_at: float = 0.0


class JWKSCache:
    """Per-realm signing keys indexed by `kid`, refreshed after `ttl_seconds`.

    Forced refetches (unknown `kid`) happen at most once per
    `min_refetch_seconds` per realm, so tokens with made-up key ids cannot
    turn every request into a provider round trip. Downloads run outside the
    cache lock: a realm with fresh keys never waits on another realm's fetch.
    """

    def __init__(self, ttl_seconds: int = 300, min_refetch_seconds: int = MIN_REFETCH_INTERVAL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self.min_refetch_seconds = min_refetch_seconds
        self._sets: Dict[Tuple[str, str], _KeySet] = {}
        self._fetch_locks: Dict[Tuple[str, str], Lock] = {}
        self._lock = Lock()

    def get(self, cfg: OIDCConfig) -> Dict[str, object]:
        """Return the key set as a JWKS document (`{"keys": [...]}`)."""
        return {"keys": list(self._current(cfg, force=False).keys.values())}

    def refresh(self, cfg: OIDCConfig) -> Dict[str, object]:
        return {"keys": list(self._current(cfg, force=True).keys.values())}

    def _usable(self, cached: Optional[_KeySet], force: bool, now: float) -> bool:
        if cached is None:
            return False
        if force:
            return now - cached.forced_at < self.min_refetch_seconds
        return now - cached.fetched_at < self.ttl_seconds

    def _current(self, cfg: OIDCConfig, *, force: bool) -> _KeySet:
        realm_key = (cfg.base_url, cfg.realm)
        with self._lock:
            cached = self._sets.get(realm_key)
            fetch_lock = self._fetch_locks.setdefault(realm_key, Lock())
        if self._usable(cached, force, time.time()):
            return cached  # type: ignore[return-value]
        # One download per realm at a time; waiters reuse its result.
        with fetch_lock:
            with self._lock:
                cached = self._sets.get(realm_key)
            now = time.time()
            if self._usable(cached, force, now):
                return cached  # type: ignore[return-value]
            keys = _download_keys(cfg)
            forced_at = now if force else (cached.forced_at if cached else 0.0)
            fresh = _KeySet(keys=keys, fetched_at=now, forced_at=forced_at)
            with self._lock:
                self._sets[realm_key] = fresh
            return fresh


def _download_keys(cfg: OIDCConfig) -> Dict[str, dict]:
    try:
        resp = requests.get(cfg.certs_endpoint, timeout=5)
    except requests.RequestException as exc:
        raise IDTokenVerificationError("jwks_fetch_failed") from exc
    if resp.status_code != 200:
        raise IDTokenVerificationError("jwks_fetch_failed")
    try:
        doc = resp.json()
    except ValueError as exc:
        raise IDTokenVerificationError("jwks_invalid") from exc
    if not isinstance(doc, dict) or not isinstance(doc.get("keys"), list):
        raise IDTokenVerificationError("jwks_invalid")
    return {k["kid"]: k for k in doc["keys"] if isinstance(k, dict) and isinstance(k.get("kid"), str)}


JWKS_CACHE = JWKSCache()


def _key_in(jwks: Dict[str, object], kid: str) -> Optional[dict]:
    keys = jwks.get("keys")
    if not isinstance(keys, list):
        return None
    return next((k for k in keys if isinstance(k, dict) and k.get("kid") == kid), None)


def _signing_key(kid: str, cfg: OIDCConfig, cache) -> dict:
    key = _key_in(cache.get(cfg), kid)
    if key is None and hasattr(cache, "refresh"):
        key = _key_in(cache.refresh(cfg), kid)
    if key is None:
        raise IDTokenVerificationError("unknown_kid")
    return key


def _check_time_claims(claims: Dict[str, object], now: float, leeway: int) -> None:
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        raise IDTokenVerificationError("invalid_token")
    if now > exp + leeway:
        raise IDTokenVerificationError("token_expired")
    for name in ("iat", "nbf"):
        value = claims.get(name)
        if isinstance(value, (int, float)) and value - leeway > now:
            raise IDTokenVerificationError("invalid_token")


def verify_access_token(
    *,
    token: str,
    cfg: OIDCConfig,
    cache: JWKSCache | None = None,
    leeway: int = MAX_CLOCK_SKEW_SECONDS,
) -> Dict[str, object]:
    """Return the claims of a valid access token.

    Raises `IDTokenVerificationError` with one of: malformed_token,
    missing_kid, unknown_kid, invalid_token, token_expired, missing_sub,
    jwks_fetch_failed, jwks_invalid.
    """
    try:
        header = jwt.get_unverified_header(token)
    except JOSEError as exc:
        raise IDTokenVerificationError("malformed_token") from exc
    kid = header.get("kid")
    if not kid:
        raise IDTokenVerificationError("missing_kid")
    key = _signing_key(kid, cfg, cache or JWKS_CACHE)

    try:
        # Time claims are checked below with our own leeway.
        claims = jwt.decode(
            token,
            key,
            algorithms=ALLOWED_ALGORITHMS,
            issuer=cfg.issuer,
            options={"verify_aud": False, "verify_exp": False, "verify_iat": False, "verify_nbf": False},
        )
    except JOSEError as exc:
        raise IDTokenVerificationError("invalid_token") from exc

    _check_time_claims(claims, time.time(), leeway)
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub:
        raise IDTokenVerificationError("missing_sub")
    return claims
