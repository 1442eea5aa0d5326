"""
Identity helpers for tests: a fake token issuer and session shortcuts.

The issuer stands in for the identity provider. It hands out opaque access
and refresh tokens and verifies them with the same error types the real
verifier raises, so resolver strategies see realistic failures.
"""
from __future__ import annotations

import itertools
from typing import Dict, Optional

from identity_access.domain import Role
from identity_access.resolver import SESSION_COOKIE_NAME
from identity_access.tokens import IDTokenVerificationError


class FakeTokenIssuer:
    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.access: Dict[str, Dict[str, object]] = {}
        self.refresh_tokens: Dict[str, Dict[str, object]] = {}
        self.verify_calls = 0
        self.refresh_calls = 0

    def issue(self, user_id: str, email: str = "", *, with_refresh: bool = False) -> tuple[str, Optional[str]]:
        n = next(self._counter)
        claims = {"sub": user_id, "email": email}
        access = f"at-{n}"
        self.access[access] = claims
        refresh = None
        if with_refresh:
            refresh = f"rt-{n}"
            self.refresh_tokens[refresh] = claims
        return access, refresh

    def expire(self, access_token: str) -> None:
        self.access.pop(access_token, None)

    def verify(self, token: str) -> Dict[str, object]:
        self.verify_calls += 1
        claims = self.access.get(token)
        if claims is None:
            raise IDTokenVerificationError("invalid_token")
        return dict(claims)

    def refresh(self, refresh_token: str) -> Dict[str, str]:
        self.refresh_calls += 1
        claims = self.refresh_tokens.get(refresh_token)
        if claims is None:
            raise ValueError("refresh_failed")
        access, refresh = self.issue(str(claims["sub"]), str(claims.get("email") or ""), with_refresh=True)
        return {"access_token": access, "refresh_token": refresh or ""}


def session_cookie(services, user_id: str, email: str = "", role: Role | None = None) -> Dict[str, str]:
    """Create a server-side session (and optionally a role) and return the cookie jar entry."""
    services.profiles.ensure_profile(user_id, email or f"{user_id}@example.org")
    if role is not None:
        services.profiles.set_role(user_id, role)
    rec = services.sessions.create(user_id=user_id, email=email or f"{user_id}@example.org")
    return {SESSION_COOKIE_NAME: rec.session_id}


__all__ = ["FakeTokenIssuer", "session_cookie"]
