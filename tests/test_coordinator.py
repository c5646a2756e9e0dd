"""
tests/test_coordinator.py -- AuthCoordinator login decisions and delegation.

Covers:
  - Ordered fallback for users without an assigned method
  - First success wins; the assigned method short-circuits everything else
  - Fallback gating by Auth:enable_fallback and by assigned methods that are
    disabled, deleted or misconfigured
  - Hard errors abort the attempt without trying other methods
  - Disabled accounts and pre_authenticate vetoes consult no method
  - post_authenticate user creation, method re-binding, failure count reset
    and last-login touch
  - Delegation to the user's method, and to the Null method
"""

from __future__ import annotations

import logging

import pytest

from auth.coordinator import AuthCoordinator
from auth.errors import (
    AccountDisabledError,
    ActivationCodeError,
    ConfigurationError,
    InvalidCredentialsError,
    PreAuthRejectedError,
    TransportError,
    UnknownUserError,
    UnsupportedOperation,
)
from auth.models import User, UserType

# ---------------------------------------------------------------------------
# valid_user: ordering and fallback
# ---------------------------------------------------------------------------


class TestFallbackOrdering:
    def test_all_methods_tried_in_priority_order_then_fail(self, coordinator, add_method, calls):
        late = add_method(5)
        first = add_method(-3)
        middle = add_method(0)

        with pytest.raises(InvalidCredentialsError) as exc_info:
            coordinator.valid_user("alice", "pw")

        assert calls == [first, middle, late]
        assert exc_info.value.message == "Invalid username or password specified."

    def test_ties_broken_by_id(self, coordinator, add_method, calls):
        a = add_method(1)
        b = add_method(1)
        with pytest.raises(InvalidCredentialsError):
            coordinator.valid_user("alice", "pw")
        assert calls == [a, b]

    def test_first_success_wins(self, coordinator, add_method, calls, user_store):
        rejecting = add_method(0)
        accepting = add_method(1, "accept")
        add_method(2, "accept")

        user = coordinator.valid_user("alice", "pw")

        assert calls == [rejecting, accepting]
        assert user.username == "alice"
        assert user.auth_method_id == accepting
        assert user_store.get_user_auth_method("alice") == accepting

    def test_disabled_methods_are_skipped(self, coordinator, add_method, calls):
        add_method(0, "accept", enabled=False)
        live = add_method(1, "accept")
        user = coordinator.valid_user("alice", "pw")
        assert calls == [live]
        assert user.auth_method_id == live

    def test_no_methods_configured_fails(self, coordinator, calls):
        with pytest.raises(InvalidCredentialsError):
            coordinator.valid_user("alice", "pw")
        assert calls == []


class TestAssignedMethod:
    def test_assigned_success_consults_nothing_else(self, coordinator, add_method, calls, user_store):
        add_method(-10, "accept")
        assigned = add_method(50, "accept")
        user_store.create_user(User(username="alice", auth_method_id=assigned))

        user = coordinator.valid_user("alice", "pw")

        assert calls == [assigned]
        assert user.auth_method_id == assigned

    def test_assigned_rejection_without_fallback_fails(self, coordinator, add_method, calls, user_store):
        add_method(-10, "accept")
        assigned = add_method(50, "reject")
        user_store.create_user(User(username="alice", auth_method_id=assigned))

        with pytest.raises(InvalidCredentialsError):
            coordinator.valid_user("alice", "pw")
        assert calls == [assigned]

    def test_assigned_rejection_with_fallback_tries_others_once(
        self, coordinator, add_method, calls, user_store, config_store
    ):
        config_store.set("Auth:enable_fallback", "1")
        rejecting = add_method(-10, "reject")
        assigned = add_method(0, "reject")
        accepting = add_method(10, "accept")
        user_store.create_user(User(username="alice", auth_method_id=assigned))

        user = coordinator.valid_user("alice", "pw")

        assert calls == [assigned, rejecting, accepting]
        assert user.auth_method_id == accepting

    def test_disabled_assigned_method_falls_back(self, coordinator, add_method, calls, user_store):
        assigned = add_method(0, "accept", enabled=False)
        other = add_method(10, "accept")
        user_store.create_user(User(username="alice", auth_method_id=assigned))

        user = coordinator.valid_user("alice", "pw")

        assert calls == [other]
        assert user.auth_method_id == other

    def test_deleted_assigned_method_falls_back(self, coordinator, add_method, calls, user_store, caplog):
        other = add_method(0, "accept")
        user_store.create_user(User(username="alice", auth_method_id=999))

        with caplog.at_level(logging.ERROR, logger="multiauth.auth"):
            user = coordinator.valid_user("alice", "pw")

        assert calls == [other]
        assert user.auth_method_id == other
        assert "999" in caplog.text

    def test_misconfigured_assigned_method_falls_back(self, coordinator, add_method, calls, user_store):
        broken = add_method(0, implementation="ldap", server="ldap.example.org")  # no base / searchfield
        other = add_method(1, "accept")
        user_store.create_user(User(username="alice", auth_method_id=broken))

        user = coordinator.valid_user("alice", "pw")

        assert calls == [other]
        assert user.auth_method_id == other
        assert user_store.get_user_auth_method("alice") == other

    def test_misconfigured_assigned_method_without_alternative_fails(self, coordinator, add_method, calls, user_store):
        broken = add_method(0, implementation="ldap", server="ldap.example.org")
        user_store.create_user(User(username="alice", auth_method_id=broken))
        with pytest.raises(InvalidCredentialsError):
            coordinator.valid_user("alice", "pw")
        assert calls == []


class TestHardErrors:
    @pytest.mark.parametrize("fallback", ["0", "1"])
    def test_assigned_transport_error_aborts(self, coordinator, add_method, calls, user_store, config_store, fallback):
        config_store.set("Auth:enable_fallback", fallback)
        add_method(-10, "accept")
        assigned = add_method(0, "error")
        user_store.create_user(User(username="alice", auth_method_id=assigned))

        with pytest.raises(TransportError):
            coordinator.valid_user("alice", "pw")
        assert calls == [assigned]

    def test_error_in_fallback_loop_aborts(self, coordinator, add_method, calls):
        broken = add_method(0, "error")
        add_method(1, "accept")
        with pytest.raises(TransportError):
            coordinator.valid_user("alice", "pw")
        assert calls == [broken]

    def test_bad_method_config_in_fallback_loop_aborts(self, coordinator, add_method, calls):
        add_method(0, implementation="ldap", server="ldap.example.org")  # no base / searchfield
        add_method(1, "accept")
        with pytest.raises(ConfigurationError):
            coordinator.valid_user("alice", "pw")
        assert calls == []


class TestRefusedBeforeMethods:
    def test_disabled_account(self, coordinator, add_method, calls, user_store):
        add_method(0, "accept")
        user_store.create_user(User(username="mallory", user_type=UserType.disabled))
        with pytest.raises(AccountDisabledError):
            coordinator.valid_user("mallory", "pw")
        assert calls == []

    def test_pre_authenticate_veto(self, user_store, config_store, registry, add_method, calls):
        class NoBobs(AuthCoordinator):
            def pre_authenticate(self, username):
                if username == "bob":
                    raise PreAuthRejectedError("Bob may not log in today.")

        add_method(0, "accept")
        coordinator = NoBobs(user_store, config_store, registry)

        with pytest.raises(PreAuthRejectedError, match="Bob may not"):
            coordinator.valid_user("bob", "pw")
        assert calls == []
        assert coordinator.valid_user("alice", "pw").username == "alice"


# ---------------------------------------------------------------------------
# post_authenticate
# ---------------------------------------------------------------------------


class TestPostAuthenticate:
    def test_creates_activated_stub_user(self, coordinator, add_method, user_store):
        method_id = add_method(0, "accept")
        user = coordinator.valid_user("newbie", "pw")

        stored = user_store.get_user("newbie")
        assert stored is not None
        assert user.id == stored.id
        assert stored.auth_method_id == method_id
        assert stored.activated_at is not None
        assert stored.last_login_at is not None

    def test_creates_unactivated_user_when_method_requires_activation(self, coordinator, add_method, user_store):
        method_id = add_method(0, "accept", require_activation="1")

        user = coordinator.valid_user("newbie", "pw")

        assert user.auth_method_id == method_id
        assert user.activated_at is None
        assert coordinator.activated("newbie") is None

    def test_touches_last_login(self, coordinator, add_method, user_store):
        method_id = add_method(0, "accept")
        user_store.create_user(User(username="alice", auth_method_id=method_id, last_login_at="2000-01-01T00:00:00"))
        user = coordinator.valid_user("alice", "pw")
        assert user.last_login_at > "2000-01-01T00:00:00"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_get_config_adds_namespace(coordinator, config_store):
    config_store.set("Auth:enable_fallback", "1")
    assert coordinator.get_config("enable_fallback") == "1"
    assert coordinator.get_config("Auth:enable_fallback") == "1"
    assert coordinator.get_config("missing", "dflt") == "dflt"
    assert coordinator.fallback_enabled() is True


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------


class TestNullDelegation:
    """Users without a usable method get the inert Null method."""

    def test_capabilities_of_unknown_user(self, coordinator):
        caps = coordinator.capabilities("nobody")
        assert caps["activate"] is False
        assert caps["recover"] is False
        assert caps["passchange"] is False
        assert coordinator.capabilities("nobody", "recover_message") == coordinator.norecover_message("nobody")

    def test_unsupported_operations_raise(self, coordinator, user_store):
        user_store.create_user(User(username="alice"))
        with pytest.raises(UnsupportedOperation):
            coordinator.generate_actcode("alice")
        with pytest.raises(UnsupportedOperation):
            coordinator.reset_password("alice")
        with pytest.raises(UnsupportedOperation):
            coordinator.reset_password_actcode("alice")
        with pytest.raises(UnsupportedOperation):
            coordinator.set_password("alice", "whatever")

    def test_message_from_settings_table(self, coordinator, config_store):
        config_store.set("AuthMethod:norecover_message", "Ask the helpdesk.")
        assert coordinator.norecover_message("nobody") == "Ask the helpdesk."

    def test_disabled_assigned_method_delegates_to_null(self, coordinator, add_method, user_store):
        local = add_method(0, implementation="local", enabled=False)
        user_store.create_user(User(username="alice", auth_method_id=local))
        assert coordinator.supports_recovery("alice") is False

    def test_no_policy(self, coordinator):
        assert coordinator.get_policy("nobody") is None
        assert coordinator.apply_policy("nobody", "x") is None

    def test_unknown_user_operations(self, coordinator):
        with pytest.raises(UnknownUserError):
            coordinator.reset_password("ghost")
        with pytest.raises(UnknownUserError):
            coordinator.activated("ghost")
        with pytest.raises(UnknownUserError):
            coordinator.mark_loginfail("ghost")

    def test_account_policy_defaults(self, coordinator, user_store):
        user_store.create_user(User(username="alice"))
        assert coordinator.force_passchange("alice") == ""
        assert coordinator.mark_loginfail("alice") == (0, 0)
        assert user_store.get_user("alice").loginfail_count == 0

    def test_unknown_activation_code(self, coordinator):
        with pytest.raises(ActivationCodeError):
            coordinator.activate_user("no-such-code")


class TestLocalDelegation:
    @pytest.fixture
    def local_user(self, add_method, user_store):
        method_id = add_method(
            0,
            implementation="local",
            require_activation="1",
            bcrypt_rounds="4",
            policy_min_length="8",
        )
        user_store.create_user(User(username="alice", auth_method_id=method_id))
        return method_id

    def test_capabilities(self, coordinator, local_user):
        assert coordinator.capabilities("alice") == {
            "activate": True,
            "activate_message": coordinator.noactivate_message("alice"),
            "recover": True,
            "recover_message": coordinator.norecover_message("alice"),
            "passchange": True,
            "passchange_message": coordinator.get_user_method("alice").nopasschange_message(),
        }
        assert coordinator.require_activate("alice") is True

    def test_activation_flow(self, coordinator, local_user):
        code = coordinator.generate_actcode("alice")
        assert coordinator.activated("alice") is None

        user = coordinator.activate_user(code)

        assert user.username == "alice"
        assert coordinator.activated("alice") is not None
        with pytest.raises(ActivationCodeError):
            coordinator.activate_user(code)

    def test_set_password_then_login(self, coordinator, local_user):
        assert coordinator.set_password("alice", "long enough pw") is True
        assert coordinator.valid_user("alice", "long enough pw").username == "alice"

    def test_temporary_password_forces_change(self, coordinator, local_user):
        coordinator.reset_password("alice")
        assert coordinator.force_passchange("alice")
        coordinator.set_password("alice", "long enough pw")
        assert coordinator.force_passchange("alice") == ""

    def test_successful_login_clears_failure_count(self, coordinator, local_user):
        coordinator.set_password("alice", "long enough pw")
        assert coordinator.mark_loginfail("alice") == (1, 0)
        assert coordinator.mark_loginfail("alice") == (2, 0)

        assert coordinator.valid_user("alice", "long enough pw").loginfail_count == 0
        with pytest.raises(InvalidCredentialsError):
            coordinator.valid_user("alice", "wrong password")

    def test_policy_delegation(self, coordinator, local_user):
        assert coordinator.get_policy("alice") == {"policy_min_length": 8}
        violations = coordinator.apply_policy("alice", "abc")
        assert set(violations) == {"policy_min_length"}
