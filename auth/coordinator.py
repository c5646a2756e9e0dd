"""
auth/coordinator.py -- AuthCoordinator: the entry point for authentication.

valid_user() decides whether a username/password pair is good:

  1. A disabled account fails before any method is consulted.
  2. pre_authenticate() may veto the attempt.
  3. The user's assigned method (users.auth_method_id) is tried first.
  4. The remaining enabled methods are tried in ascending priority, but only
     when the user has no assigned method, the assigned method does not
     resolve (disabled, deleted or misconfigured; the last two are logged at
     error level), or the Auth:enable_fallback setting is on. First success
     wins.
  5. Any other AuthError raised while loading or running a method ends the
     attempt at once. A directory that is down must not turn into "try the
     next one".
  6. On success post_authenticate() creates the user record if needed,
     records which method succeeded, clears the failed login count and
     touches last_login_at. Counting failures (mark_loginfail) is left to
     the caller, which knows whether the attempt was a real login.

Every other public method resolves the AuthMethod bound to a username (the
Null method when none is bound, or the bound one is disabled) and forwards
the call. Callers never need to know which backend a user belongs to.
"""

from __future__ import annotations

import logging
import os
import secrets

from auth.errors import (
    AccountDisabledError,
    ActivationCodeError,
    ConfigurationError,
    InvalidCredentialsError,
    UnknownUserError,
)
from auth.methods.base import AuthMethod
from auth.models import User
from auth.policy import PolicyViolation
from auth.registry import AuthMethodRegistry
from auth.store import ConfigStore, UserStore

logger = logging.getLogger("multiauth.auth")

_CONFIG_PREFIX = "Auth:"


class AuthCoordinator:
    def __init__(self, user_store: UserStore, config_store: ConfigStore, registry: AuthMethodRegistry) -> None:
        self.users = user_store
        self.config = config_store
        self.registry = registry

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def valid_user(self, username: str, password: str) -> User:
        """Authenticate username/password and return the (possibly new) User.

        Raises AccountDisabledError, PreAuthRejectedError or
        InvalidCredentialsError for rejected attempts, and lets method errors
        (TransportError, ConfigurationError, MissingCredentialsError) through
        unchanged.
        """
        if self.users.user_disabled(username):
            logger.warning("Login refused for disabled account %s", username)
            raise AccountDisabledError("Your account has been disabled.")

        self.pre_authenticate(username)

        assigned_id = self.users.get_user_auth_method(username)
        used_id: int | None = None
        assigned_resolved = False

        if assigned_id is not None:
            try:
                method = self.registry.load_method(assigned_id)
            except ConfigurationError as exc:
                logger.error("Assigned method %d for %s can not be loaded: %s", assigned_id, username, exc.message)
                method = None
            if method is not None:
                assigned_resolved = True
                if method.authenticate(username, password):
                    used_id = assigned_id

        if used_id is None and (not assigned_resolved or self.fallback_enabled()):
            for method_id in self.registry.available_methods(only_active=True):
                if method_id == assigned_id:
                    continue
                method = self.registry.load_method(method_id)
                if method is not None and method.authenticate(username, password):
                    used_id = method_id
                    break

        if used_id is None:
            logger.warning("Invalid login for %s", username)
            raise InvalidCredentialsError("Invalid username or password specified.")

        user = self.post_authenticate(username, password, used_id)
        logger.info("User %s authenticated via method %d", username, used_id)
        return user

    def pre_authenticate(self, username: str) -> None:
        """Hook run before any method is consulted. Raise PreAuthRejectedError to refuse."""

    def post_authenticate(self, username: str, password: str, method_id: int) -> User:
        user = self.users.get_user(username)
        if user is None:
            method = self.registry.load_method(method_id) or self.registry.null_method()
            user = method.create_user(username, method_id)
            logger.info("Created user %s (method %d)", username, method_id)
        elif user.auth_method_id != method_id:
            self.users.set_user_auth_method(username, method_id)

        if user.loginfail_count:
            self.users.reset_loginfail(user.id)
        self.users.touch_last_login(user.id)
        return self.users.get_user_by_id(user.id)

    def fallback_enabled(self) -> bool:
        return self.config.get_bool(_CONFIG_PREFIX + "enable_fallback")

    # ------------------------------------------------------------------
    # Settings and ids
    # ------------------------------------------------------------------

    def get_config(self, name: str, default: str | None = None) -> str | None:
        """Read an Auth setting; the Auth: prefix is added when missing."""
        if not name.startswith(_CONFIG_PREFIX):
            name = _CONFIG_PREFIX + name
        return self.config.get(name, default)

    def unique_id(self, extra: str = "") -> str:
        """Return an identifier unique across processes.

        The counter update is a plain read-increment-write with no locking, so
        two processes can read the same value. The pid and 24 random bytes
        keep the result unique regardless.
        """
        raw = self.get_config("unique_id", "0")
        try:
            counter = int(raw) + 1
        except ValueError:
            logger.warning("Auth:unique_id holds a non-integer value %r; restarting at 1", raw)
            counter = 1
        self.config.set(_CONFIG_PREFIX + "unique_id", counter)
        return f"{counter}.{os.getpid()}.{secrets.token_hex(24)}{extra}"

    # ------------------------------------------------------------------
    # User lookups
    # ------------------------------------------------------------------

    def get_user(self, username: str) -> User | None:
        return self.users.get_user(username)

    def get_user_by_id(self, user_id: int) -> User | None:
        return self.users.get_user_by_id(user_id)

    def get_user_method(self, username: str) -> AuthMethod:
        """The AuthMethod bound to username, or the Null method."""
        method_id = self.users.get_user_auth_method(username)
        method = self.registry.load_method(method_id) if method_id is not None else None
        return method if method is not None else self.registry.null_method()

    def _require_user(self, username: str) -> User:
        user = self.users.get_user(username)
        if user is None:
            raise UnknownUserError(f"No such user: {username}")
        return user

    # ------------------------------------------------------------------
    # Delegation to the user's AuthMethod
    # ------------------------------------------------------------------

    def capabilities(self, username: str, name: str | None = None):
        return self.get_user_method(username).capabilities(name)

    def require_activate(self, username: str) -> bool:
        return self.get_user_method(username).require_activate()

    def noactivate_message(self, username: str) -> str:
        return self.get_user_method(username).noactivate_message()

    def supports_recovery(self, username: str) -> bool:
        return self.get_user_method(username).supports_recovery()

    def norecover_message(self, username: str) -> str:
        return self.get_user_method(username).norecover_message()

    def activated(self, username: str) -> str | None:
        user = self._require_user(username)
        return self.get_user_method(username).activated(user.id)

    def activate_user(self, actcode: str) -> User:
        user = self.users.get_user_by_actcode(actcode)
        if user is None:
            logger.warning("Activation attempted with an unknown code")
            raise ActivationCodeError("Invalid activation code.")
        return self.get_user_method(user.username).activate_user(user.id)

    def generate_actcode(self, username: str) -> str:
        user = self._require_user(username)
        return self.get_user_method(username).generate_actcode(user.id)

    def reset_password(self, username: str) -> str:
        user = self._require_user(username)
        return self.get_user_method(username).reset_password(user.id)

    def reset_password_actcode(self, username: str) -> tuple[str, str]:
        user = self._require_user(username)
        return self.get_user_method(username).reset_password_actcode(user.id)

    def set_password(self, username: str, password: str) -> bool:
        user = self._require_user(username)
        return self.get_user_method(username).set_password(user.id, password)

    def force_passchange(self, username: str) -> str:
        user = self._require_user(username)
        return self.get_user_method(username).force_passchange(user.id)

    def mark_loginfail(self, username: str) -> tuple[int, int]:
        user = self._require_user(username)
        return self.get_user_method(username).mark_loginfail(user.id)

    def get_policy(self, username: str) -> dict | None:
        return self.get_user_method(username).get_policy()

    def apply_policy(self, username: str, password: str) -> dict[str, PolicyViolation] | None:
        return self.get_user_method(username).apply_policy(password)
