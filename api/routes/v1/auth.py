"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login                          -- check username/password
  POST /api/v1/auth/activate                       -- redeem an activation code
  GET  /api/v1/auth/methods                        -- configured methods (no params)
  GET  /api/v1/auth/users/{username}/capabilities  -- what the user's method supports
  GET  /api/v1/auth/users/{username}/policy        -- the user's password policy
  POST /api/v1/auth/policy/check                   -- test a password against it

Security:
  POST /login is rate-limited per IP (Settings.login_rate_limit).
  Cache-Control: no-store on login and activation responses.
  Wrong username and wrong password produce the same 401 "bad_credentials".
  A wrong password for an existing user is counted (mark_loginfail); the
  user's method may deactivate the account once its limit is reached.
  A successful login reports force_passchange: why the password must be
  changed now, or "".

Routes that may call AuthMethod.authenticate() are plain ``def``: FastAPI runs
them in its threadpool, where the SSH method can drive its own event loop.
AuthError subclasses raised here are turned into responses by the handler in
api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    ActivateRequest,
    CapabilitiesResponse,
    LoginRequest,
    MethodResponse,
    PolicyCheckRequest,
    PolicyCheckResponse,
    PolicyResponse,
    PolicyViolationModel,
    UserResponse,
)
from auth.coordinator import AuthCoordinator
from auth.dependencies import get_coordinator, get_registry
from auth.errors import InvalidCredentialsError, NotActivatedError
from auth.registry import AuthMethodRegistry

router = APIRouter()


@limiter.limit(login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=UserResponse)
def login(
    request: Request,
    body: LoginRequest,
    coordinator: AuthCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Authenticate with username and password.

    Accounts whose method requires activation are refused until activated,
    even when the password is correct. Failed attempts against a known user
    count toward its method's login failure limit.
    """
    try:
        user = coordinator.valid_user(body.username, body.password)
    except InvalidCredentialsError:
        if coordinator.get_user(body.username) is not None:
            coordinator.mark_loginfail(body.username)
        raise
    if coordinator.require_activate(user.username) and not coordinator.activated(user.username):
        raise NotActivatedError("Your account has not been activated yet.")

    content = UserResponse.from_user(user, force_passchange=coordinator.force_passchange(user.username))
    resp = JSONResponse(status_code=200, content=content.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/activate", response_model=UserResponse)
def activate(body: ActivateRequest, coordinator: AuthCoordinator = Depends(get_coordinator)) -> JSONResponse:
    user = coordinator.activate_user(body.code)
    resp = JSONResponse(status_code=200, content=UserResponse.from_user(user).model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/auth/methods", response_model=list[MethodResponse])
def list_methods(registry: AuthMethodRegistry = Depends(get_registry)) -> list[MethodResponse]:
    """All configured methods in trial order, disabled ones included."""
    return [MethodResponse.from_descriptor(d) for d in registry.describe_methods(only_active=False)]


@router.get("/auth/users/{username}/capabilities", response_model=CapabilitiesResponse)
def capabilities(username: str, coordinator: AuthCoordinator = Depends(get_coordinator)) -> CapabilitiesResponse:
    return CapabilitiesResponse(username=username, **coordinator.capabilities(username))


@router.get("/auth/users/{username}/policy", response_model=PolicyResponse)
def policy(username: str, coordinator: AuthCoordinator = Depends(get_coordinator)) -> PolicyResponse:
    return PolicyResponse(username=username, policy=coordinator.get_policy(username))


@router.post("/auth/policy/check", response_model=PolicyCheckResponse)
def check_policy(body: PolicyCheckRequest, coordinator: AuthCoordinator = Depends(get_coordinator)) -> PolicyCheckResponse:
    violations = coordinator.apply_policy(body.username, body.password) or {}
    return PolicyCheckResponse(
        ok=not violations,
        violations=[PolicyViolationModel.from_violation(v) for v in violations.values()],
    )
