"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial
predicates). Stores and the coordinator do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class UserType(str, Enum):
    normal = "normal"
    disabled = "disabled"
    admin = "admin"


@dataclass
class User:
    """A local user record.

    auth_method_id is the id of the AuthMethod the user last authenticated
    with, or None for users that have never logged in through a method (for
    example accounts created by an administrator). It may point at a disabled
    method; the coordinator handles that by falling back.

    password_hash is only meaningful for users bound to the local method, and
    so are password_changed_at, password_temporary (the password was
    allocated by the system and must be replaced) and loginfail_count.
    activated_at is None until the account has been activated; accounts under
    methods that do not require activation are activated at creation.
    """

    username: str
    user_type: UserType = UserType.normal
    id: int | None = None
    auth_method_id: int | None = None
    password_hash: str | None = None
    password_changed_at: str | None = None
    password_temporary: bool = False
    activation_code: str | None = None
    activated_at: str | None = None
    created_at: str | None = None
    last_login_at: str | None = None
    loginfail_count: int = 0

    @property
    def is_disabled(self) -> bool:
        return self.user_type == UserType.disabled

    @property
    def is_admin(self) -> bool:
        return self.user_type == UserType.admin


@dataclass(frozen=True)
class AuthMethodDescriptor:
    """Persisted metadata for one configured AuthMethod.

    implementation is a tag resolved through auth.registry.METHOD_KINDS
    ("local", "ldap", "ldaps", "ssh", "null"). priority is a signed byte;
    numerically lower values are tried first.
    """

    id: int
    implementation: str
    priority: int
    enabled: bool
