"""
auth/policy.py -- Password strength policy.

A policy is driven entirely by AuthMethod parameters whose names start with
``policy_``. Every key is optional; an unset key places no constraint:

  policy_min_length       minimum number of characters
  policy_min_lowercase    minimum count of ASCII a-z
  policy_min_uppercase    minimum count of ASCII A-Z
  policy_min_digits       minimum count of 0-9
  policy_min_other        minimum count of anything else (punctuation, non-ASCII)
  policy_min_entropy      minimum estimated entropy in bits (see password_entropy)
  policy_use_cracklib     when truthy, run the password through cracklib's
                          FascistCheck. cracklib is an optional extra; if it can
                          not be imported the check is skipped and an error is
                          logged, so operators notice the weakened policy.
  policy_max_passwordage  seconds a password stays valid before the user must
                          change it (AuthMethod.force_passchange)
  policy_max_loginfail    failed logins allowed before the account is
                          deactivated (AuthMethod.mark_loginfail)

PasswordPolicy.apply() checks the strength rules and returns a mapping of
violated key -> PolicyViolation, or None when the password satisfies every
configured rule. The two max_* keys are account rules, not strength rules;
apply() ignores them and the method that owns the account enforces them.

Layer rule: stdlib only (plus the optional cracklib import).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

logger = logging.getLogger("multiauth.auth.policy")

_TRUE_VALUES = {"1", "true", "yes", "on"}

# Character pool sizes used by the entropy estimate.
_POOL_LOWER = 26
_POOL_UPPER = 26
_POOL_DIGITS = 10
_POOL_OTHER = 33  # printable ASCII punctuation plus space


@dataclass(frozen=True)
class PolicyViolation:
    """One failed rule: what the policy required and what the password had."""

    rule: str
    required: int | float | bool
    actual: int | float | str


@dataclass
class PasswordPolicy:
    min_length: int | None = None
    min_lowercase: int | None = None
    min_uppercase: int | None = None
    min_digits: int | None = None
    min_other: int | None = None
    min_entropy: float | None = None
    use_cracklib: bool = False
    max_passwordage: int | None = None
    max_loginfail: int | None = None

    @classmethod
    def from_params(cls, params: dict[str, str]) -> PasswordPolicy:
        """Build a policy from method parameters; empty strings count as unset.

        Raises ValueError if a numeric key holds something that is not a number.
        """
        return cls(
            min_length=_int_or_none(params, "policy_min_length"),
            min_lowercase=_int_or_none(params, "policy_min_lowercase"),
            min_uppercase=_int_or_none(params, "policy_min_uppercase"),
            min_digits=_int_or_none(params, "policy_min_digits"),
            min_other=_int_or_none(params, "policy_min_other"),
            min_entropy=_float_or_none(params, "policy_min_entropy"),
            use_cracklib=str(params.get("policy_use_cracklib", "")).strip().lower() in _TRUE_VALUES,
            max_passwordage=_int_or_none(params, "policy_max_passwordage"),
            max_loginfail=_int_or_none(params, "policy_max_loginfail"),
        )

    def as_dict(self) -> dict[str, int | float | bool] | None:
        """Return only the configured rules, keyed by their parameter names, or None."""
        values = {
            "policy_min_length": self.min_length,
            "policy_min_lowercase": self.min_lowercase,
            "policy_min_uppercase": self.min_uppercase,
            "policy_min_digits": self.min_digits,
            "policy_min_other": self.min_other,
            "policy_min_entropy": self.min_entropy,
            "policy_use_cracklib": self.use_cracklib or None,
            "policy_max_passwordage": self.max_passwordage,
            "policy_max_loginfail": self.max_loginfail,
        }
        configured = {k: v for k, v in values.items() if v}
        return configured or None

    def apply(self, password: str) -> dict[str, PolicyViolation] | None:
        failures: dict[str, PolicyViolation] = {}

        lower = sum(1 for c in password if "a" <= c <= "z")
        upper = sum(1 for c in password if "A" <= c <= "Z")
        digits = sum(1 for c in password if "0" <= c <= "9")
        other = max(len(password) - (lower + upper + digits), 0)

        counted = (
            ("policy_min_length", self.min_length, len(password)),
            ("policy_min_lowercase", self.min_lowercase, lower),
            ("policy_min_uppercase", self.min_uppercase, upper),
            ("policy_min_digits", self.min_digits, digits),
            ("policy_min_other", self.min_other, other),
        )
        for rule, required, actual in counted:
            if required and actual < required:
                failures[rule] = PolicyViolation(rule=rule, required=required, actual=actual)

        if self.min_entropy:
            entropy = password_entropy(password)
            if entropy < self.min_entropy:
                failures["policy_min_entropy"] = PolicyViolation(
                    rule="policy_min_entropy", required=self.min_entropy, actual=entropy
                )

        if self.use_cracklib:
            reason = _cracklib_check(password)
            if reason is not None:
                failures["policy_use_cracklib"] = PolicyViolation(
                    rule="policy_use_cracklib", required=True, actual=reason
                )

        return failures or None


def password_entropy(password: str) -> float:
    """Estimate password entropy in bits.

    pool = sum of the sizes of the character classes present; every character
    that is not an immediate repeat of the previous one contributes log2(pool)
    bits. "aaaa" therefore scores like "a", and mixing classes raises the score.
    """
    if not password:
        return 0.0

    pool = 0
    if any("a" <= c <= "z" for c in password):
        pool += _POOL_LOWER
    if any("A" <= c <= "Z" for c in password):
        pool += _POOL_UPPER
    if any("0" <= c <= "9" for c in password):
        pool += _POOL_DIGITS
    if any(not c.isascii() or not c.isalnum() for c in password):
        pool += _POOL_OTHER

    effective = 1 + sum(1 for prev, cur in zip(password, password[1:]) if cur != prev)
    return round(effective * math.log2(pool), 2)


def format_violations(violations: dict[str, PolicyViolation]) -> str:
    """Render violations as one human-readable sentence for error messages."""
    parts = []
    for rule, v in violations.items():
        if rule == "policy_use_cracklib":
            parts.append(f"dictionary check failed ({v.actual})")
        else:
            parts.append(f"{rule.removeprefix('policy_')} requires {v.required}, got {v.actual}")
    return "Password does not meet the password policy: " + "; ".join(parts) + "."


def _cracklib_check(password: str) -> str | None:
    """Return cracklib's rejection reason, or None if the password passed (or cracklib is unavailable)."""
    try:
        import cracklib
    except ImportError:
        logger.error("policy_use_cracklib is set, but the cracklib module can not be imported")
        return None
    try:
        cracklib.FascistCheck(password)
    except ValueError as exc:
        return str(exc)
    return None


def _int_or_none(params: dict[str, str], key: str) -> int | None:
    value = params.get(key)
    if value is None or str(value).strip() == "":
        return None
    return int(value)


def _float_or_none(params: dict[str, str], key: str) -> float | None:
    value = params.get(key)
    if value is None or str(value).strip() == "":
        return None
    return float(value)
