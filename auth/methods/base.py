"""
auth/methods/base.py -- The AuthMethod capability contract.

AuthMethod is both the interface every authentication backend implements and
the inert "null" method used for users that are not bound to any backend. Its
defaults are explicit:

  authenticate()            always False (this class can not check credentials)
  require_activate()        False
  supports_recovery()       False
  activated()               the user's activation (or creation) timestamp
  create_user()             inserts a stub user, activated unless the method
                            requires activation
  force_passchange()        "" (no password change is ever forced)
  mark_loginfail()          (0, 0) (failed logins are not limited)
  get_policy/apply_policy   driven by the method's policy_* parameters

Every account operation the base class can not perform (activation codes,
password resets, password changes) raises UnsupportedOperation carrying the
configured "not supported" message. Callers must treat that differently from
a failed operation.

Subclasses set ``kind`` and ``required_params`` and override what they
support. Construction raises ConfigurationError when a required parameter is
missing, so misconfiguration fails at load time before any credential is
evaluated.
"""

from __future__ import annotations

import logging

from auth.errors import ConfigurationError, UnknownUserError, UnsupportedOperation
from auth.models import User
from auth.policy import PasswordPolicy, PolicyViolation
from auth.store import ConfigStore, UserStore
from core.config import get_settings

logger = logging.getLogger("multiauth.auth.methods")

_TRUE_VALUES = {"1", "true", "yes", "on"}


class AuthMethod:
    """Base AuthMethod; on its own it is the Null method."""

    kind = "null"
    required_params: tuple[str, ...] = ()

    def __init__(
        self,
        store: UserStore,
        config: ConfigStore,
        params: dict[str, str] | None = None,
        method_id: int | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.params: dict[str, str] = dict(params or {})
        self.method_id = method_id

        missing = [name for name in self.required_params if not self.params.get(name)]
        if missing:
            raise ConfigurationError(f"{type(self).__name__} missing required parameter(s): {', '.join(missing)}")

        try:
            self.policy = PasswordPolicy.from_params(self.params)
        except ValueError as exc:
            raise ConfigurationError(f"{type(self).__name__} has an invalid policy parameter: {exc}") from exc

    def __repr__(self) -> str:
        return f"<{type(self).__name__} id={self.method_id}>"

    # ------------------------------------------------------------------
    # Parameter helpers
    # ------------------------------------------------------------------

    def param(self, name: str, default: str | None = None) -> str | None:
        value = self.params.get(name)
        return value if value not in (None, "") else default

    def param_bool(self, name: str, default: bool = False) -> bool:
        value = self.params.get(name)
        if value is None or value == "":
            return default
        return value.strip().lower() in _TRUE_VALUES

    def param_int(self, name: str, default: int) -> int:
        value = self.param(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"{type(self).__name__} parameter '{name}' must be an integer") from exc

    def param_float(self, name: str, default: float) -> float:
        value = self.param(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigurationError(f"{type(self).__name__} parameter '{name}' must be a number") from exc

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def authenticate(self, username: str, password: str) -> bool:
        return False

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def require_activate(self) -> bool:
        return False

    def supports_recovery(self) -> bool:
        return False

    def supports_passchange(self) -> bool:
        return False

    def capabilities(self, name: str | None = None):
        """Return the capability table, or one entry of it when name is given."""
        table = {
            "activate": self.require_activate(),
            "activate_message": self.noactivate_message(),
            "recover": self.supports_recovery(),
            "recover_message": self.norecover_message(),
            "passchange": self.supports_passchange(),
            "passchange_message": self.nopasschange_message(),
        }
        if name is not None:
            return table.get(name)
        return table

    def noactivate_message(self) -> str:
        return self._message("noactivate_message")

    def norecover_message(self) -> str:
        return self._message("norecover_message")

    def nopasschange_message(self) -> str:
        return self._message("nopasschange_message")

    def _message(self, name: str) -> str:
        """Method parameter, then the AuthMethod:<name> setting, then the process default."""
        return self.param(name) or self.config.get(f"AuthMethod:{name}") or getattr(get_settings(), name)

    # ------------------------------------------------------------------
    # Account lifecycle
    # ------------------------------------------------------------------

    def create_user(self, username: str, method_id: int | None) -> User:
        return self.store.create_stub_user(username, method_id, activated=not self.require_activate())

    def activated(self, user_id: int) -> str | None:
        """Activation timestamp, or the creation timestamp when activation is not required."""
        user = self.store.get_user_by_id(user_id)
        if user is None:
            return None
        if self.require_activate():
            return user.activated_at
        return user.activated_at or user.created_at

    def activate_user(self, user_id: int) -> User:
        raise UnsupportedOperation(self.noactivate_message())

    def generate_actcode(self, user_id: int) -> str:
        raise UnsupportedOperation(self.noactivate_message())

    def reset_password(self, user_id: int) -> str:
        raise UnsupportedOperation(self.nopasschange_message())

    def reset_password_actcode(self, user_id: int) -> tuple[str, str]:
        raise UnsupportedOperation(self.norecover_message())

    def set_password(self, user_id: int, password: str) -> bool:
        raise UnsupportedOperation(self.nopasschange_message())

    def force_passchange(self, user_id: int) -> str:
        """Why the user must change their password before going on, or "" when they need not."""
        return ""

    def mark_loginfail(self, user_id: int) -> tuple[int, int]:
        """Record a failed login; returns (failures so far, failures allowed). (0, 0) means no limit."""
        return 0, 0

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    def get_policy(self) -> dict | None:
        return self.policy.as_dict()

    def apply_policy(self, password: str) -> dict[str, PolicyViolation] | None:
        return self.policy.apply(password)

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _require_user(self, user_id: int) -> User:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise UnknownUserError(f"No user with id {user_id} exists.")
        return user
