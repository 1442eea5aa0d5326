"""
Service wiring for the web adapter.

Why:
    Routes need one consistent set of collaborators: the profile store, the
    admin request workflow, the group registry, the message bus, the
    authorization gate and the identity resolver. They must share state (the
    gate and the bus read the same memberships the registry writes). This
    module builds that set once and lets tests swap it wholesale.

Behavior:
    - `CAMPUS_STORE_BACKEND=db` prefers the Postgres repositories. When they
      cannot be constructed (no driver or DSN) dev falls back to in-memory with
      a warning; prod-like environments refuse to start.
    - `SESSIONS_BACKEND=db` selects the Postgres session store.
    - Under pytest everything defaults to in-memory.
"""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Optional

from elevation.repo_memory import InMemoryAdminRequestRepo
from elevation.workflow import AdminRequestWorkflow
from groups.registry import GroupMembershipRegistry
from groups.repo_memory import InMemoryGroupRepo
from identity_access.gate import AuthorizationGate
from identity_access.profiles import InMemoryProfileStore, ProfileStoreProtocol
from identity_access.resolver import IdentityResolver, TokenRefresher, TokenVerifier, build_resolver
from identity_access.stores import SessionStore
from messaging.bus import MessageBus
from messaging.repo_memory import InMemoryMessageRepo

try:
    import config as _cfg  # type: ignore
except Exception:  # pragma: no cover - package layout
    from backend.web import config as _cfg  # type: ignore

logger = logging.getLogger("campus.web")


@dataclass
class CampusServices:
    sessions: Any
    profiles: ProfileStoreProtocol
    workflow: AdminRequestWorkflow
    registry: GroupMembershipRegistry
    bus: MessageBus
    gate: AuthorizationGate
    resolver: IdentityResolver
    backend: str = "memory"


def _under_pytest() -> bool:
    return "pytest" in sys.modules or bool(os.getenv("PYTEST_CURRENT_TEST"))


def build_memory_services(
    *,
    sessions: Any = None,
    verify: TokenVerifier | None = None,
    refresh: TokenRefresher | None = None,
    session_ttl_seconds: int | None = None,
) -> CampusServices:
    """Wire every collaborator against in-memory stores (dev and tests)."""
    sessions = sessions if sessions is not None else SessionStore(default_ttl_seconds=session_ttl_seconds or 3600)
    profiles = InMemoryProfileStore()
    group_repo = InMemoryGroupRepo()
    message_repo = InMemoryMessageRepo(group_repo)
    registry = GroupMembershipRegistry(group_repo)
    bus = MessageBus(message_repo, registry)
    registry.on_group_deleted(bus.close_group)
    registry.on_group_deleted(message_repo.drop_group)
    return CampusServices(
        sessions=sessions,
        profiles=profiles,
        workflow=AdminRequestWorkflow(InMemoryAdminRequestRepo(profiles.set_role), profiles),
        registry=registry,
        bus=bus,
        gate=AuthorizationGate(profiles, registry),
        resolver=build_resolver(
            sessions=sessions,
            verify=verify,
            refresh=refresh,
            session_ttl_seconds=session_ttl_seconds,
        ),
        backend="memory",
    )


def build_db_services(
    *,
    sessions: Any = None,
    verify: TokenVerifier | None = None,
    refresh: TokenRefresher | None = None,
    session_ttl_seconds: int | None = None,
    dsn: Optional[str] = None,
) -> CampusServices:
    """Wire every collaborator against Postgres. Raises when psycopg or a DSN is missing."""
    from elevation.repo_db import DBAdminRequestRepo
    from groups.repo_db import DBGroupRepo
    from identity_access.profiles_db import DBProfileStore
    from messaging.repo_db import DBMessageRepo

    sessions = sessions if sessions is not None else SessionStore(default_ttl_seconds=session_ttl_seconds or 3600)
    profiles = DBProfileStore(dsn)
    registry = GroupMembershipRegistry(DBGroupRepo(dsn))
    bus = MessageBus(DBMessageRepo(dsn), registry)
    registry.on_group_deleted(bus.close_group)
    return CampusServices(
        sessions=sessions,
        profiles=profiles,
        workflow=AdminRequestWorkflow(DBAdminRequestRepo(dsn), profiles),
        registry=registry,
        bus=bus,
        gate=AuthorizationGate(profiles, registry),
        resolver=build_resolver(
            sessions=sessions,
            verify=verify,
            refresh=refresh,
            session_ttl_seconds=session_ttl_seconds,
        ),
        backend="db",
    )


def _build_session_store(ttl: int) -> Any:
    if (not _under_pytest()) and os.getenv("SESSIONS_BACKEND", "memory").lower() == "db":
        from identity_access.stores_db import DBSessionStore

        return DBSessionStore(default_ttl_seconds=ttl)
    return SessionStore(default_ttl_seconds=ttl)


def build_default_services(
    *,
    verify: TokenVerifier | None = None,
    refresh: TokenRefresher | None = None,
) -> CampusServices:
    """Prefer Postgres when configured; fall back to in-memory outside production."""
    ttl = _cfg.session_ttl_seconds()
    sessions = _build_session_store(ttl)
    if _cfg.store_backend() == "db" and not _under_pytest():
        try:
            services = build_db_services(sessions=sessions, verify=verify, refresh=refresh, session_ttl_seconds=ttl)
            logger.info("campus services wired backend=db")
            return services
        except Exception as exc:
            if _cfg.is_prod_like():
                raise
            logger.warning("DB repositories unavailable (%s); using in-memory fallback", exc.__class__.__name__)
    return build_memory_services(sessions=sessions, verify=verify, refresh=refresh, session_ttl_seconds=ttl)


_SERVICES: CampusServices | None = None
_DEFAULT_FACTORY = build_default_services


def configure_default(factory) -> None:
    """Register the factory used when services are first requested."""
    global _DEFAULT_FACTORY
    _DEFAULT_FACTORY = factory


def get_services() -> CampusServices:
    global _SERVICES
    if _SERVICES is None:
        _SERVICES = _DEFAULT_FACTORY()
    return _SERVICES


def set_services(services: CampusServices | None) -> None:
    """Allow tests to swap the wired collaborators (None rebuilds lazily)."""
    global _SERVICES
    _SERVICES = services
