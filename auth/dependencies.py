"""
auth/dependencies.py -- FastAPI Depends() helpers for the authentication core.

The long-lived stores are created once in the api lifespan and kept on
app.state. The registry and coordinator are request scoped: each request gets
a fresh AuthMethodRegistry, so AuthMethod instances (and any parameter
changes made since the last request) never leak between requests.

app.state.method_kinds, when set, replaces the static METHOD_KINDS table. Tests
use it to plug in instrumented method classes.

Layer rule: auth/dependencies.py may import from fastapi (for Request)
because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.coordinator import AuthCoordinator
from auth.registry import AuthMethodRegistry


def get_registry(request: Request) -> AuthMethodRegistry:
    state = request.app.state
    return AuthMethodRegistry(
        state.method_store,
        state.user_store,
        state.config_store,
        kinds=getattr(state, "method_kinds", None),
    )


def get_coordinator(request: Request) -> AuthCoordinator:
    state = request.app.state
    return AuthCoordinator(state.user_store, state.config_store, get_registry(request))
