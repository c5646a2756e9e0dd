"""
tests/conftest.py -- Shared test fixtures for multiauth tests.

This module provides:
  - engine / user_store / method_store / config_store: a fresh in-memory
    database per test
  - ScriptedMethod: an AuthMethod whose outcome comes from its parameters and
    which records every authenticate() call, so tests can assert exactly which
    methods the coordinator consulted and in what order
  - add_method: helper fixture that inserts descriptors
  - registry / coordinator: wired to the fixtures above, with ScriptedMethod
    registered under the "scripted" implementation tag
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the api_client uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

LOGIN_RATE_LIMIT is raised before any app import so the login tests never trip
the limiter.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager

os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.coordinator import AuthCoordinator
from auth.errors import TransportError
from auth.methods.base import AuthMethod
from auth.methods.local import hash_password
from auth.models import User, UserType
from auth.registry import METHOD_KINDS, AuthMethodRegistry
from auth.store import ConfigStore, MethodStore, UserStore, create_db_engine

# ---------------------------------------------------------------------------
# Instrumented AuthMethod
# ---------------------------------------------------------------------------


class ScriptedMethod(AuthMethod):
    """AuthMethod driven by its ``outcome`` parameter.

    outcome: "accept" -> True, "reject" -> False, "error" -> TransportError,
    "password" -> True only when the password equals the ``password`` param.
    """

    kind = "scripted"
    calls: list[int] = []

    def authenticate(self, username: str, password: str) -> bool:
        ScriptedMethod.calls.append(self.method_id)
        outcome = self.param("outcome", "reject")
        if outcome == "error":
            raise TransportError(f"scripted backend {self.method_id} is down")
        if outcome == "accept":
            return True
        if outcome == "password":
            return password == self.param("password")
        return False

    def require_activate(self) -> bool:
        return self.param_bool("require_activation")


TEST_KINDS = {**METHOD_KINDS, "scripted": ScriptedMethod}


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    eng = create_db_engine("sqlite:///:memory:")
    yield eng
    eng.dispose()


@pytest.fixture
def user_store(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def method_store(engine) -> MethodStore:
    return MethodStore(engine)


@pytest.fixture
def config_store(engine) -> ConfigStore:
    return ConfigStore(engine)


@pytest.fixture
def calls() -> list[int]:
    """The ScriptedMethod call log, emptied for each test."""
    ScriptedMethod.calls = []
    return ScriptedMethod.calls


@pytest.fixture
def add_method(method_store):
    """Return a helper that inserts a descriptor and returns its id.

    add_method(priority, outcome="reject", implementation="scripted", enabled=True, **params)
    """

    def _add(priority: int, outcome: str = "reject", implementation: str = "scripted", enabled: bool = True, **params):
        if implementation == "scripted":
            params.setdefault("outcome", outcome)
        return method_store.add_method(implementation, priority, enabled=enabled, params=params)

    return _add


@pytest.fixture
def registry(method_store, user_store, config_store) -> AuthMethodRegistry:
    return AuthMethodRegistry(method_store, user_store, config_store, kinds=TEST_KINDS)


@pytest.fixture
def coordinator(user_store, config_store, registry) -> AuthCoordinator:
    return AuthCoordinator(user_store, config_store, registry)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(engine, user_store: UserStore, method_store: MethodStore, config_store: ConfigStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see an
    isolated test DB rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.user_store = user_store
        app.state.method_store = method_store
        app.state.config_store = config_store
        app.state.method_kinds = TEST_KINDS
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, dict[str, int]], None, None]:
    """Yield (client, method_ids) for API integration tests.

    Methods:
      local       priority 0, policy_min_length=8
      activating  priority 5, local method that requires activation
      broken      priority 10, scripted backend that always raises TransportError
      lockable    priority 20, local method requiring activation, policy_max_loginfail=3

    Users:
      alice  local, password "correct horse", activated
      dora   local, password "correct horse", disabled
      carol  activating, password "battery staple", NOT activated, code "carol-code"
      bob    broken
      erin   lockable, password "correct horse", activated
      frank  local, password "temporary pw", a system-allocated (temporary) password
    """
    db_name = request.module.__name__.rsplit(".", 1)[-1]
    url = f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true"
    engine = create_db_engine(url)
    users = UserStore(engine)
    methods = MethodStore(engine)
    config = ConfigStore(engine)

    ids = {
        "local": methods.add_method("local", 0, params={"bcrypt_rounds": "4", "policy_min_length": "8"}),
        "activating": methods.add_method(
            "local", 5, params={"bcrypt_rounds": "4", "require_activation": "1"}
        ),
        "broken": methods.add_method("scripted", 10, params={"outcome": "error"}),
        "lockable": methods.add_method(
            "local", 20, params={"bcrypt_rounds": "4", "require_activation": "1", "policy_max_loginfail": "3"}
        ),
    }

    users.create_user(
        User(
            username="alice",
            auth_method_id=ids["local"],
            password_hash=hash_password("correct horse", rounds=4),
            activated_at="2024-01-01T00:00:00+00:00",
        )
    )
    users.create_user(
        User(
            username="dora",
            user_type=UserType.disabled,
            auth_method_id=ids["local"],
            password_hash=hash_password("correct horse", rounds=4),
        )
    )
    users.create_user(
        User(
            username="carol",
            auth_method_id=ids["activating"],
            password_hash=hash_password("battery staple", rounds=4),
            activation_code="carol-code",
        )
    )
    users.create_user(User(username="bob", auth_method_id=ids["broken"]))
    users.create_user(
        User(
            username="erin",
            auth_method_id=ids["lockable"],
            password_hash=hash_password("correct horse", rounds=4),
            activated_at="2024-01-01T00:00:00+00:00",
        )
    )
    users.create_user(
        User(
            username="frank",
            auth_method_id=ids["local"],
            password_hash=hash_password("temporary pw", rounds=4),
            password_temporary=True,
            activated_at="2024-01-01T00:00:00+00:00",
        )
    )

    app.router.lifespan_context = _patch_lifespan(engine, users, methods, config)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, ids

    engine.dispose()
