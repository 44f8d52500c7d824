"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), make the
repo importable as `backend.*`, and give every test a fresh in-memory chat
wiring so presence state never leaks between tests.
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure `backend.*` and test helpers are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)

# Tests never talk to a real database unless a live-DB test opts in.
os.environ.setdefault("MESSAGES_BACKEND", "memory")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_chat_env(monkeypatch: pytest.MonkeyPatch):
    """Start each test from dev defaults.

    Why:
        Config and token tests flip environment toggles; without a reset they
        would leak into unrelated suites (e.g., forcing token-only joins).
    """
    monkeypatch.setenv("CINDERELLA_ENV", "dev")
    monkeypatch.setenv("MESSAGES_BACKEND", "memory")
    for name in (
        "CHAT_REQUIRE_TOKEN",
        "CHAT_DUPLICATE_SESSION_POLICY",
        "CHAT_SNAPSHOT_INCLUDES_SELF",
        "CHAT_MAX_MESSAGE_LENGTH",
        "JWT_SECRET",
        "MESSAGES_AUTO_MIGRATE",
    ):
        monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_chat_wiring():
    """Reset the chat session handler between tests.

    Behavior:
        - Clears the module-level handler before the test, so tests either
          inject their own via `configure` or get a lazily built default.
        - Clears it again afterwards so lifespan/test wiring starts clean for
          the next case.
    """
    try:
        from backend.web.routes import chat as chat_routes
    except Exception:
        yield
        return
    chat_routes.configure(None)
    yield
    chat_routes.configure(None)
