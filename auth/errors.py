"""
auth/errors.py -- Error taxonomy for the authentication core.

Every failure the core reports is an AuthError subclass carrying a
human-readable message (shown to users as-is) and a stable ``code`` string
(used by the HTTP layer and by log-based alerting).

  ValidationFailure    -- recoverable, user-facing: disabled account, pre-auth
                          rejection, wrong credentials, bad activation code,
                          policy violations.
  TransportError       -- a directory or SSH server could not be reached or
                          spoke nonsense. Aborts the whole login attempt; it is
                          never turned into "wrong password".
  ConfigurationError   -- unknown method id, unknown implementation, missing
                          required method parameters. Raised at load time.
  UnsupportedOperation -- the user's AuthMethod does not offer the requested
                          account operation. Distinct from a failed operation.

AuthMethod errors propagate through AuthCoordinator unchanged.

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.policy import PolicyViolation


class AuthError(Exception):
    """Base class for all authentication core errors."""

    code = "auth_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Validation failures
# ---------------------------------------------------------------------------


class ValidationFailure(AuthError):
    code = "validation_failed"


class AccountDisabledError(ValidationFailure):
    code = "account_disabled"


class PreAuthRejectedError(ValidationFailure):
    code = "preauth_rejected"


class InvalidCredentialsError(ValidationFailure):
    code = "bad_credentials"


class MissingCredentialsError(ValidationFailure):
    code = "missing_credentials"


class UnknownUserError(ValidationFailure):
    code = "unknown_user"


class ActivationCodeError(ValidationFailure):
    code = "bad_activation_code"


class NotActivatedError(ValidationFailure):
    code = "not_activated"


class PasswordPolicyError(ValidationFailure):
    """Raised when a new password fails the method's policy.

    violations maps the policy key (e.g. "policy_min_length") to the
    PolicyViolation describing what was required and what was found.
    """

    code = "policy_violation"

    def __init__(self, message: str, violations: dict[str, PolicyViolation]) -> None:
        super().__init__(message)
        self.violations = violations


# ---------------------------------------------------------------------------
# Infrastructure / configuration
# ---------------------------------------------------------------------------


class TransportError(AuthError):
    code = "auth_backend_unavailable"


class ConfigurationError(AuthError):
    code = "auth_misconfigured"


class UnsupportedOperation(AuthError):
    code = "unsupported_operation"
