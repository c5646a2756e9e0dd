"""
auth/methods/local.py -- Local database password AuthMethod.

Passwords are stored as bcrypt hashes in users.password_hash. bcrypt is used
directly rather than through passlib: passlib's wrap-bug detection feeds
bcrypt 4.x a >72 byte password, which it rejects.

Parameters (all optional):
  require_activation     "1" to require new accounts to be activated with a
                         code before they may log in (default off)
  allow_recovery         "0" to disable self-service recovery (default on)
  bcrypt_rounds          bcrypt cost factor (default 12)
  actcode_length         activation code length in characters (default 32)
  reset_password_length  length of generated passwords (default 12)
  policy_*               password policy, see auth/policy.py. policy_max_passwordage
                         and policy_max_loginfail drive force_passchange() and
                         mark_loginfail()

Timing: authenticate() always runs one bcrypt comparison, against a dummy
hash when the user is unknown or has no password, so response time does not
reveal whether a username exists.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone

import bcrypt

from auth.errors import ConfigurationError, PasswordPolicyError, UnsupportedOperation
from auth.methods.base import AuthMethod
from auth.models import User
from auth.policy import format_violations

logger = logging.getLogger("multiauth.auth.methods.local")

_PASSWORD_ALPHABET = string.ascii_letters + string.digits
_PASSWORD_SYMBOLS = "!#%&*+-=?@^_~"
_DUMMY_HASH: str = bcrypt.hashpw(b"multiauth_timing_dummy", bcrypt.gensalt()).decode("utf-8")


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def _seconds_since(timestamp: str) -> float:
    when = datetime.fromisoformat(timestamp)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return (datetime.now(timezone.utc) - when).total_seconds()


class LocalAuthMethod(AuthMethod):
    kind = "local"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.rounds = self.param_int("bcrypt_rounds", 12)
        self.actcode_length = self.param_int("actcode_length", 32)
        self.reset_password_length = self.param_int("reset_password_length", 12)

    def authenticate(self, username: str, password: str) -> bool:
        if not username or not password:
            return False
        user = self.store.get_user(username)
        if user is None or not user.password_hash:
            verify_password(password, _DUMMY_HASH)
            return False
        return verify_password(password, user.password_hash)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def require_activate(self) -> bool:
        return self.param_bool("require_activation", False)

    def supports_recovery(self) -> bool:
        return self.param_bool("allow_recovery", True)

    def supports_passchange(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    def generate_actcode(self, user_id: int) -> str:
        if not self.require_activate():
            raise UnsupportedOperation(self.noactivate_message())
        self._require_user(user_id)
        actcode = self._random_code()
        self.store.set_activation_code(user_id, actcode)
        return actcode

    def activate_user(self, user_id: int) -> User:
        if not self.require_activate():
            raise UnsupportedOperation(self.noactivate_message())
        self._require_user(user_id)
        self.store.mark_activated(user_id)
        logger.info("Activated user %d", user_id)
        return self.store.get_user_by_id(user_id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def reset_password(self, user_id: int) -> str:
        self._require_user(user_id)
        password = self._random_password()
        self.store.set_password_hash(user_id, hash_password(password, self.rounds), temporary=True)
        return password

    def reset_password_actcode(self, user_id: int) -> tuple[str, str]:
        """Replace the password and issue a fresh activation code; the account must be re-activated."""
        if not self.supports_recovery():
            raise UnsupportedOperation(self.norecover_message())
        self._require_user(user_id)
        password = self._random_password()
        actcode = self._random_code()
        self.store.set_password_hash(user_id, hash_password(password, self.rounds), temporary=True)
        self.store.set_activation_code(user_id, actcode)
        self.store.clear_activation(user_id)
        return password, actcode

    def set_password(self, user_id: int, password: str) -> bool:
        self._require_user(user_id)
        violations = self.apply_policy(password)
        if violations:
            raise PasswordPolicyError(format_violations(violations), violations)
        return self.store.set_password_hash(user_id, hash_password(password, self.rounds))

    def force_passchange(self, user_id: int) -> str:
        user = self._require_user(user_id)
        if user.password_temporary:
            return "You are using a temporary password and must choose a new one."
        max_age = self.policy.max_passwordage
        if max_age and user.password_hash:
            changed = user.password_changed_at or user.created_at
            if changed is None or _seconds_since(changed) > max_age:
                return "Your password has expired and must be changed."
        return ""

    # ------------------------------------------------------------------
    # Login failure limiting
    # ------------------------------------------------------------------

    def mark_loginfail(self, user_id: int) -> tuple[int, int]:
        """Count a failed login; reaching policy_max_loginfail deactivates the account.

        Deactivation clears activated_at and issues a new activation code, so
        it only locks the user out when require_activation is on. Without it
        the count is still kept and a warning is logged.
        """
        self._require_user(user_id)
        count = self.store.increment_loginfail(user_id)
        limit = self.policy.max_loginfail or 0
        if limit and count >= limit:
            if self.require_activate():
                self.store.clear_activation(user_id)
                self.store.set_activation_code(user_id, self._random_code())
                logger.warning("User %d deactivated after %d failed logins", user_id, count)
            else:
                logger.warning(
                    "User %d reached %d failed logins, but %r does not require activation; not locked out",
                    user_id,
                    count,
                    self,
                )
        return count, limit

    def _random_password(self) -> str:
        """Generate a password that satisfies this method's own policy."""
        alphabet = _PASSWORD_ALPHABET + (_PASSWORD_SYMBOLS if self.policy.min_other else "")
        length = max(self.reset_password_length, self.policy.min_length or 0)
        for attempt in range(1, 501):
            password = "".join(secrets.choice(alphabet) for _ in range(length))
            if not self.apply_policy(password):
                return password
            if attempt % 50 == 0:
                length += 4
        raise ConfigurationError("Unable to generate a password that satisfies the password policy.")

    def _random_code(self) -> str:
        return secrets.token_urlsafe(self.actcode_length)[: self.actcode_length]
