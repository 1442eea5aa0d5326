"""
Shared authentication utilities.

Why:
    Avoid duplicating cookie policy logic between the main app (which re-issues
    the session cookie after reconstruction) and the auth router (login and
    logout).

Design:
    The helpers are framework-light: they take a Response and plain values.
"""

from __future__ import annotations

from fastapi import Response


def cookie_opts(environment: str) -> dict:
    """Return hardened cookie flags (dev = prod).

    Returns a mapping with keys:
      - secure: True
      - samesite: "lax"
    """
    # Lax keeps the cookie on top-level navigations back into the app while
    # still blocking cross-site subrequests.
    return {"secure": True, "samesite": "lax"}


def set_session_cookie(response: Response, *, name: str, value: str, environment: str,
                       max_age: int | None = None) -> None:
    opts = cookie_opts(environment)
    response.set_cookie(
        key=name,
        value=value,
        httponly=True,
        secure=opts["secure"],
        samesite=opts["samesite"],
        path="/",
        max_age=max_age,
    )


def clear_session_cookie(response: Response, *, name: str, environment: str) -> None:
    opts = cookie_opts(environment)
    response.set_cookie(
        key=name,
        value="",
        httponly=True,
        secure=opts["secure"],
        samesite=opts["samesite"],
        path="/",
        expires=0,
        max_age=0,
    )
