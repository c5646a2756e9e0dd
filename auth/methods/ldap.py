"""
auth/methods/ldap.py -- LDAP and LDAPS AuthMethods (ldap3).

Parameters:
  server       directory host name or ldap:// / ldaps:// URL   (required)
  base         search base DN                                  (required)
  searchfield  attribute holding the username, e.g. uid        (required)
  adminuser    DN to bind as for the search (anonymous if unset)
  adminpass    password for adminuser
  port         TCP port (default 389 for LDAP, 636 for LDAPS)
  timeout      connect / receive timeout in seconds (default 5)
  usetls       "1" to issue StartTLS after connecting (LDAP only)
  reuseconn    "1" to bind as the user on the search connection instead of
               opening a second one
  tls_verify   "0" to skip server certificate validation (default on)

Transport security is an explicit choice. The plain LDAP method without
usetls sends the user's password in cleartext; a warning is logged when such
a method is constructed so the choice is visible in the logs.

Error vs. false:
  - the search bind failing, or the server being unreachable, raises
    TransportError: the directory could not answer, which says nothing about
    the password;
  - an unknown username, or the user bind being refused, returns False.
"""

from __future__ import annotations

import logging
import ssl

from ldap3 import NO_ATTRIBUTES, NONE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPBindError, LDAPException
from ldap3.utils.conv import escape_filter_chars

from auth.errors import MissingCredentialsError, TransportError
from auth.methods.base import AuthMethod

logger = logging.getLogger("multiauth.auth.methods.ldap")


class LdapAuthMethod(AuthMethod):
    kind = "ldap"
    required_params = ("server", "base", "searchfield")
    use_ssl = False
    default_port = 389

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.host = self.param("server")
        self.port = self.param_int("port", self.default_port)
        self.timeout = self.param_float("timeout", 5.0)
        self.use_tls = self.param_bool("usetls") and not self.use_ssl
        self.reuse_conn = self.param_bool("reuseconn")
        self.tls_verify = self.param_bool("tls_verify", True)
        if not self.use_ssl and not self.use_tls:
            logger.warning("%r connects to %s without TLS; passwords are sent in plaintext", self, self.host)

    def authenticate(self, username: str, password: str) -> bool:
        if not username or not password:
            raise MissingCredentialsError(f"{self.kind.upper()} login failed: username and password are required.")

        server = self._server()
        search_conn: Connection | None = None
        user_conn: Connection | None = None
        try:
            search_conn = self._search_bind(server)
            user_dn = self._find_user_dn(search_conn, username)
            if user_dn is None:
                logger.debug("%r: no entry for %s under %s", self, username, self.param("base"))
                return False

            if self.reuse_conn:
                user_conn = search_conn
                return self._rebind(user_conn, user_dn, password)

            _close(search_conn)
            search_conn = None
            user_conn = self._open(server, user=user_dn, password=password)
            return self._bind(user_conn)
        except LDAPException as exc:
            raise TransportError(f"Unable to talk to {self.kind.upper()} server {self.host}: {exc}") from exc
        finally:
            if search_conn is not None:
                _close(search_conn)
            if user_conn is not None and user_conn is not search_conn:
                _close(user_conn)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _server(self) -> Server:
        tls = Tls(validate=ssl.CERT_REQUIRED if self.tls_verify else ssl.CERT_NONE)
        return Server(
            self.host,
            port=self.port,
            use_ssl=self.use_ssl,
            tls=tls,
            get_info=NONE,
            connect_timeout=self.timeout,
        )

    def _open(self, server: Server, user: str | None = None, password: str | None = None) -> Connection:
        conn = Connection(
            server,
            user=user,
            password=password,
            receive_timeout=self.timeout,
            raise_exceptions=False,
        )
        conn.open()
        if self.use_tls and not conn.start_tls():
            _close(conn)
            raise TransportError(f"StartTLS with LDAP server {self.host} failed: {_describe(conn)}")
        return conn

    def _search_bind(self, server: Server) -> Connection:
        """Open the search connection, bound as adminuser or anonymously."""
        adminuser = self.param("adminuser")
        adminpass = self.param("adminpass")
        if adminuser and adminpass:
            conn = self._open(server, user=adminuser, password=adminpass)
        else:
            conn = self._open(server)
        if not self._bind(conn):
            _close(conn)
            raise TransportError(f"{self.kind.upper()} bind to {self.host} failed. Response was: {_describe(conn)}")
        return conn

    def _find_user_dn(self, conn: Connection, username: str) -> str | None:
        search_filter = f"({self.param('searchfield')}={escape_filter_chars(username)})"
        conn.search(self.param("base"), search_filter, attributes=NO_ATTRIBUTES, size_limit=1)
        for entry in conn.response or []:
            if entry.get("type") == "searchResEntry" and entry.get("dn"):
                return entry["dn"]
        return None

    @staticmethod
    def _bind(conn: Connection) -> bool:
        try:
            return bool(conn.bind())
        except LDAPBindError:
            return False

    @staticmethod
    def _rebind(conn: Connection, user_dn: str, password: str) -> bool:
        try:
            return bool(conn.rebind(user=user_dn, password=password))
        except LDAPBindError:
            return False


class LdapsAuthMethod(LdapAuthMethod):
    """LDAP over TLS from the first byte (ldaps://, port 636 by default)."""

    kind = "ldaps"
    use_ssl = True
    default_port = 636


def _close(conn: Connection) -> None:
    try:
        conn.unbind()
    except LDAPException as exc:
        logger.debug("Ignoring error while closing LDAP connection: %s", exc)


def _describe(conn: Connection) -> str:
    result = conn.result or {}
    return result.get("description") or result.get("message") or "no response"
