"""
auth/registry.py -- Resolves AuthMethod descriptors to live AuthMethod instances.

Descriptors live in the auth_methods table (see auth/store.py). Each carries an
``implementation`` tag that is looked up in a static table of known classes;
there is no dynamic module loading. Applications that provide their own
AuthMethod classes pass an extended table to the registry.

One registry is created per request (or per CLI invocation). Loaded instances
are cached for the registry's lifetime, so a method is constructed at most once
per login attempt even when the fallback loop revisits it.
"""

from __future__ import annotations

import logging
from enum import Enum

from auth.errors import ConfigurationError
from auth.methods.base import AuthMethod
from auth.methods.ldap import LdapAuthMethod, LdapsAuthMethod
from auth.methods.local import LocalAuthMethod
from auth.methods.ssh import SshAuthMethod
from auth.models import AuthMethodDescriptor
from auth.store import ConfigStore, MethodStore, UserStore

logger = logging.getLogger("multiauth.auth.registry")


class AuthMethodKind(str, Enum):
    NULL = "null"
    LOCAL = "local"
    LDAP = "ldap"
    LDAPS = "ldaps"
    SSH = "ssh"


METHOD_KINDS: dict[str, type[AuthMethod]] = {
    AuthMethodKind.NULL.value: AuthMethod,
    AuthMethodKind.LOCAL.value: LocalAuthMethod,
    AuthMethodKind.LDAP.value: LdapAuthMethod,
    AuthMethodKind.LDAPS.value: LdapsAuthMethod,
    AuthMethodKind.SSH.value: SshAuthMethod,
}


class AuthMethodRegistry:
    def __init__(
        self,
        method_store: MethodStore,
        user_store: UserStore,
        config_store: ConfigStore,
        kinds: dict[str, type[AuthMethod]] | None = None,
    ) -> None:
        self.method_store = method_store
        self.user_store = user_store
        self.config_store = config_store
        self.kinds = dict(METHOD_KINDS if kinds is None else kinds)
        self._cache: dict[int, AuthMethod] = {}

    def available_methods(self, only_active: bool = True) -> list[int]:
        """Method ids in the order they should be tried: ascending priority, then id."""
        return [d.id for d in self.method_store.list_descriptors(only_active=only_active)]

    def describe_methods(self, only_active: bool = False) -> list[AuthMethodDescriptor]:
        return self.method_store.list_descriptors(only_active=only_active)

    def load_method(self, method_id: int) -> AuthMethod | None:
        """Return the AuthMethod for method_id.

        Returns None when the descriptor exists but is disabled. Raises
        ConfigurationError when the id is unknown, the implementation tag is
        not registered, or the class rejects its parameters.
        """
        if method_id in self._cache:
            return self._cache[method_id]

        descriptor = self.method_store.get_descriptor(method_id)
        if descriptor is None:
            raise ConfigurationError(f"Unknown authentication method id {method_id}.")
        if not descriptor.enabled:
            logger.debug("Auth method %d (%s) is disabled; not loading", method_id, descriptor.implementation)
            return None

        cls = self.kinds.get(descriptor.implementation)
        if cls is None:
            raise ConfigurationError(
                f"Auth method {method_id} uses unknown implementation '{descriptor.implementation}'."
            )

        params = self.method_store.get_params(method_id)
        method = cls(self.user_store, self.config_store, params, method_id=method_id)
        logger.debug("Loaded %r", method)
        self._cache[method_id] = method
        return method

    def null_method(self) -> AuthMethod:
        """The inert method used for users with no usable assigned method."""
        return self.kinds.get(AuthMethodKind.NULL.value, AuthMethod)(self.user_store, self.config_store)
