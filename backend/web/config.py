"""
Configuration and startup security checks for Campus.

Why: Role elevation and group chat hold personal data. This module provides a
single guard that refuses obviously insecure production deployments without
burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def is_prod_like() -> bool:
    return _is_prod_like(os.getenv("CAMPUS_ENV", "dev"))


def session_ttl_seconds(default: int = 3600) -> int:
    raw = (os.getenv("SESSION_TTL_SECONDS") or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        return default
    return value if value > 0 else default


def store_backend() -> str:
    """Return `memory` or `db` for the domain repositories."""
    value = (os.getenv("CAMPUS_STORE_BACKEND", "memory") or "").strip().lower()
    return "db" if value == "db" else "memory"


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Intent: Abort process startup when obviously insecure settings are detected
    in production/staging. Development remains permissive for convenience.

    Checks:
    - Domain data and sessions must be persisted in Postgres (no in-memory
      stores in prod-like envs).
    - DATABASE_URL must not explicitly disable TLS.
    - Identity provider endpoints must use HTTPS.
    - The bootstrap admin email, when set, must be a full address.
    """

    env = os.getenv("CAMPUS_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    # 1) Durable stores only
    if store_backend() != "db":
        raise SystemExit(
            "Refusing to start: CAMPUS_STORE_BACKEND must be 'db' in production/staging."
        )
    if (os.getenv("SESSIONS_BACKEND", "memory") or "").strip().lower() != "db":
        raise SystemExit(
            "Refusing to start: SESSIONS_BACKEND must be 'db' in production/staging."
        )

    # 2) Postgres TLS: basic guard to avoid explicit disable
    for key in ("DATABASE_URL", "CAMPUS_DATABASE_URL", "SESSION_DATABASE_URL"):
        if "sslmode=disable" in os.getenv(key, ""):
            raise SystemExit(
                f"Refusing to start: {key} contains sslmode=disable in production. Use sslmode=require or verify TLS."
            )

    # 3) Identity provider endpoints must use HTTPS in production-like environments
    kc_base = (os.getenv("KC_BASE_URL", "") or "").strip().lower()
    if kc_base.startswith("http://"):
        raise SystemExit("Refusing to start: KC_BASE_URL must use https in production (got http).")

    # 4) Bootstrap admin must name one concrete account
    seed = (os.getenv("CAMPUS_BOOTSTRAP_ADMIN_EMAIL", "") or "").strip()
    if seed and ("@" not in seed or seed.startswith("@") or seed.endswith("@")):
        raise SystemExit(
            "Refusing to start: CAMPUS_BOOTSTRAP_ADMIN_EMAIL must be a full email address."
        )
