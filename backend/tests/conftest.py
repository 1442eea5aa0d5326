"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend and give every test a fresh,
in-memory set of services (sessions, profiles, admin requests, groups and the
message bus) so state never leaks between tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ and backend/web are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
WEB_DIR = BACKEND_DIR / "web"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(WEB_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

from utils.identity import FakeTokenIssuer  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven toggles that may leak across tests.

    Tests opt into prod semantics, strict CSRF or the bootstrap admin
    explicitly via monkeypatch.
    """
    for var in (
        "CAMPUS_ENV",
        "STRICT_CSRF",
        "CAMPUS_TRUST_PROXY",
        "CAMPUS_BOOTSTRAP_ADMIN_EMAIL",
        "CAMPUS_STORE_BACKEND",
        "SESSIONS_BACKEND",
        "SESSION_TTL_SECONDS",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture
def fake_tokens() -> FakeTokenIssuer:
    return FakeTokenIssuer()


@pytest.fixture
def services(fake_tokens):
    """Fresh in-memory services wired into the web adapter for this test."""
    import wiring  # type: ignore
    from ops import telemetry

    telemetry.reset_for_tests()
    svc = wiring.build_memory_services(verify=fake_tokens.verify, refresh=fake_tokens.refresh)
    wiring.set_services(svc)
    yield svc
    wiring.set_services(None)


@pytest.fixture(autouse=True)
def _reset_settings_environment_override():
    """Reset main.SETTINGS.override_environment between tests.

    Some tests force `prod` semantics via `main.SETTINGS.override_environment("prod")`;
    restore env-driven behavior so cookie/CSP decisions stay deterministic.
    """
    for name in ("main", "backend.web.main"):
        mod = sys.modules.get(name)
        if mod is not None and hasattr(mod, "SETTINGS"):
            mod.SETTINGS.override_environment(None)
    yield


@pytest.fixture(autouse=True)
def _reset_oidc_client(monkeypatch: pytest.MonkeyPatch):
    """Rebind a fresh OIDC client so monkeypatched grants never leak."""
    mod = sys.modules.get("main")
    if mod is None:
        yield
        return
    from identity_access.oidc import OIDCClient  # type: ignore

    cfg = mod.load_oidc_config()
    monkeypatch.setattr(mod, "OIDC_CFG", cfg, raising=False)
    monkeypatch.setattr(mod, "OIDC", OIDCClient(cfg), raising=False)
    yield

