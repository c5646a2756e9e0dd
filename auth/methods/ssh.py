"""
auth/methods/ssh.py -- SSH password AuthMethod (asyncssh).

A user is authenticated when an SSH server accepts their username and
password AND the interactive session that follows prints a login banner
matching ``success_pattern``. Some servers accept a password and then
refuse a shell (expired account, nologin); the banner check catches those.

Parameters:
  server           host to connect to                      (required)
  port             TCP port (default 22)
  timeout          seconds for connect and for the banner (default 5)
  known_hosts      path to a known_hosts file; "none" disables host key
                   checking; unset uses asyncssh's default (~/.ssh/known_hosts)
  success_pattern  regular expression for the banner, case-sensitive
                   (default Welcome|Last login)

authenticate() is synchronous and drives the coroutine with asyncio.run, so it
must not be called from inside a running event loop. The HTTP routes that log
users in are plain ``def`` routes and run in FastAPI's threadpool.
"""

from __future__ import annotations

import asyncio
import logging
import re

import asyncssh

from auth.errors import ConfigurationError, MissingCredentialsError, TransportError
from auth.methods.base import AuthMethod

logger = logging.getLogger("multiauth.auth.methods.ssh")

DEFAULT_SUCCESS_PATTERN = r"Welcome|Last\s*login"


class SshAuthMethod(AuthMethod):
    kind = "ssh"
    required_params = ("server",)

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.host = self.param("server")
        self.port = self.param_int("port", 22)
        self.timeout = self.param_float("timeout", 5.0)
        try:
            self.success_pattern = re.compile(self.param("success_pattern", DEFAULT_SUCCESS_PATTERN))
        except re.error as exc:
            raise ConfigurationError(f"SshAuthMethod parameter 'success_pattern' is not a valid regex: {exc}") from exc

        known_hosts = self.param("known_hosts")
        if known_hosts is None:
            self.known_hosts = ()
        elif known_hosts.lower() == "none":
            logger.warning("%r does not verify the host key of %s", self, self.host)
            self.known_hosts = None
        else:
            self.known_hosts = known_hosts

    def authenticate(self, username: str, password: str) -> bool:
        if not username or not password:
            raise MissingCredentialsError("SSH login failed: username and password are required.")
        try:
            return asyncio.run(self._login(username, password))
        except asyncssh.PermissionDenied:
            logger.debug("%r: %s@%s rejected", self, username, self.host)
            return False
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Unable to connect to SSH server {self.host}:{self.port}: {exc}") from exc

    async def _login(self, username: str, password: str) -> bool:
        async with asyncssh.connect(
            self.host,
            port=self.port,
            username=username,
            password=password,
            known_hosts=self.known_hosts,
            client_keys=None,
            agent_path=None,
            preferred_auth="password,keyboard-interactive",
            connect_timeout=self.timeout,
        ) as conn:
            process = await conn.create_process(term_type="vt100")
            try:
                banner = await asyncio.wait_for(self._read_banner(process), self.timeout)
            except asyncio.TimeoutError:
                banner = ""
            finally:
                process.close()

        if self.success_pattern.search(banner):
            return True
        logger.info("%r: %s@%s accepted the password but no login banner was seen", self, username, self.host)
        return False

    async def _read_banner(self, process) -> str:
        seen = ""
        while True:
            chunk = await process.stdout.read(1024)
            if not chunk:
                return seen
            seen += chunk
            if self.success_pattern.search(seen):
                return seen
