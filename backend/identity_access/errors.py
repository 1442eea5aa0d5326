"""
Typed errors shared by the identity, elevation, groups and messaging contexts.

Core components raise these and never recover from them; the web adapter maps
each kind to an HTTP status. Every error carries a short, stable `code` that is
safe to show to clients (no internal identifiers).
"""

from __future__ import annotations


class CoreError(Exception):
    """Base class for domain errors with a client-safe code."""

    kind = "error"

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


class AuthenticationError(CoreError):
    """No resolvable identity for an operation that requires one."""

    kind = "unauthenticated"

    def __init__(self, code: str = "unauthenticated"):
        super().__init__(code)


class SessionCorruptError(AuthenticationError):
    """A session record was found but cannot be used (e.g. missing user id)."""

    def __init__(self, code: str = "session_corrupt"):
        super().__init__(code)


class ForbiddenError(CoreError):
    """Known identity with insufficient role or membership."""

    kind = "forbidden"

    def __init__(self, code: str = "forbidden"):
        super().__init__(code)


class ValidationError(CoreError):
    """Malformed input, detected before any state change."""

    kind = "bad_request"


class ConflictError(CoreError):
    """A state-machine precondition no longer holds."""

    kind = "bad_request"


class NotFoundError(CoreError):
    kind = "not_found"


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "CoreError",
    "ForbiddenError",
    "NotFoundError",
    "SessionCorruptError",
    "ValidationError",
]
