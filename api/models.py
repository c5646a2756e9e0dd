"""
API request and response models for multiauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthMethodDescriptor, User
from auth.policy import PolicyViolation

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    The password is not length-checked here: an empty password must reach the
    AuthMethods, some of which report it as a distinct error.
    """

    model_config = ConfigDict(str_strip_whitespace=False)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(max_length=1024)


class ActivateRequest(BaseModel):
    """Request body for POST /api/v1/auth/activate."""

    code: str = Field(min_length=1, max_length=255)


class PolicyCheckRequest(BaseModel):
    """Request body for POST /api/v1/auth/policy/check."""

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    user_type: str
    auth_method_id: Optional[int] = None
    created_at: Optional[str] = None
    last_login_at: Optional[str] = None
    activated_at: Optional[str] = None
    force_passchange: Optional[str] = None

    @classmethod
    def from_user(cls, user: User, force_passchange: Optional[str] = None) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            user_type=user.user_type.value,
            auth_method_id=user.auth_method_id,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
            activated_at=user.activated_at,
            force_passchange=force_passchange,
        )


class MethodResponse(BaseModel):
    """One row of GET /api/v1/auth/methods. Parameters are never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    implementation: str
    priority: int
    enabled: bool

    @classmethod
    def from_descriptor(cls, d: AuthMethodDescriptor) -> "MethodResponse":
        return cls(id=d.id, implementation=d.implementation, priority=d.priority, enabled=d.enabled)


class CapabilitiesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    activate: bool
    activate_message: str
    recover: bool
    recover_message: str
    passchange: bool
    passchange_message: str


class PolicyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str
    policy: Optional[dict[str, Union[bool, int, float]]] = None


class PolicyViolationModel(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: str
    required: Union[bool, int, float]
    actual: Union[int, float, str]

    @classmethod
    def from_violation(cls, v: PolicyViolation) -> "PolicyViolationModel":
        return cls(rule=v.rule, required=v.required, actual=v.actual)


class PolicyCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    violations: list[PolicyViolationModel] = Field(default_factory=list)


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Union[str, list[PolicyViolationModel]]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
