"""
Minimal OIDC client for the identity provider (Keycloak-compatible realm).

Why: Keep provider calls framework independent. The web adapter calls the
password grant at login; the identity resolver calls the refresh grant when it
re-establishes a session from loose header credentials.

Security: Never log credentials or tokens. This client stores nothing; callers
decide what to persist server-side.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

# Small indirection to ease monkeypatching in tests
import requests as http


def http_post(url: str, data: Dict[str, str], headers: Dict[str, str], timeout: float = 10):
    return http.post(url, data=data, headers=headers, timeout=timeout)


@dataclass(frozen=True)
class OIDCConfig:
    base_url: str  # server-to-server base URL, e.g., http://keycloak:8080
    realm: str  # e.g., campus
    client_id: str  # e.g., campus-web
    client_secret: Optional[str] = None

    @property
    def issuer(self) -> str:
        return f"{self.base_url}/realms/{self.realm}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/token"

    @property
    def certs_endpoint(self) -> str:
        return f"{self.issuer}/protocol/openid-connect/certs"


class OIDCClient:
    def __init__(self, config: OIDCConfig):
        self.cfg = config

    def _token_request(self, data: Dict[str, str], *, error_code: str) -> Dict[str, str]:
        if self.cfg.client_secret:
            data = {**data, "client_secret": self.cfg.client_secret}
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        resp = http_post(self.cfg.token_endpoint, data=data, headers=headers)
        if resp.status_code != 200:
            raise ValueError(error_code)
        try:
            body = resp.json()
        except ValueError as exc:
            raise ValueError(error_code) from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise ValueError(error_code)
        return body

    def password_grant(self, *, email: str, password: str) -> Dict[str, str]:
        """Authenticate with email/password and return the token response.

        Raises ValueError("password_grant_failed") on any rejection so the web
        adapter can answer 401 without revealing whether the account exists.
        """
        data = {
            "grant_type": "password",
            "client_id": self.cfg.client_id,
            "username": email,
            "password": password,
            "scope": "openid email",
        }
        return self._token_request(data, error_code="password_grant_failed")

    def refresh(self, *, refresh_token: str) -> Dict[str, str]:
        """Exchange a refresh token for a new access token (network call)."""
        data = {
            "grant_type": "refresh_token",
            "client_id": self.cfg.client_id,
            "refresh_token": refresh_token,
        }
        return self._token_request(data, error_code="refresh_failed")
