#!/usr/bin/env python3
"""
multiauth -- administration and diagnostics CLI for the authentication core.

Usage:
  python main.py methods
  python main.py add-method local --priority 0 --param require_activation=1
  python main.py add-method ldap --priority 10 --param server=ldap.example.org \\
      --param base=ou=people,dc=example,dc=org --param searchfield=uid --param usetls=1
  python main.py add-user alice --method 1
  python main.py set-password alice
  python main.py reset-password alice
  python main.py activate <code>
  python main.py login alice
  python main.py check-policy alice
  python main.py unique-id --extra .session

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the database (default: multiauth.db next to this file)
  LOG_LEVEL     Logging level (default: INFO)
"""

import argparse
import getpass
import logging
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.coordinator import AuthCoordinator
from auth.errors import AuthError, ConfigurationError
from auth.models import User, UserType
from auth.registry import METHOD_KINDS, AuthMethodRegistry
from auth.store import ConfigStore, MethodStore, UserStore, create_db_engine
from core.config import get_settings


def _parse_params(pairs: list[str]) -> dict[str, str]:
    """Turn ["k=v", ...] into a dict. Values may themselves contain '='."""
    params: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise argparse.ArgumentTypeError(f"--param expects NAME=VALUE, got '{pair}'")
        params[name.strip()] = value
    return params


def _read_new_password() -> Optional[str]:
    first = getpass.getpass("New password: ")
    second = getpass.getpass("Repeat password: ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_methods(args, users: UserStore, methods: MethodStore, config: ConfigStore) -> int:
    descriptors = methods.list_descriptors(only_active=False)
    if not descriptors:
        print("No authentication methods configured.")
        return 0
    print(f"{'ID':>4}  {'PRIO':>4}  {'IMPLEMENTATION':<14} ENABLED  PARAMS")
    for d in descriptors:
        names = ", ".join(sorted(methods.get_params(d.id)))
        print(f"{d.id:>4}  {d.priority:>4}  {d.implementation:<14} {'yes' if d.enabled else 'no':<8} {names}")
    return 0


def cmd_add_method(args, users: UserStore, methods: MethodStore, config: ConfigStore) -> int:
    cls = METHOD_KINDS.get(args.implementation)
    if cls is None:
        print(f"  [!] Unknown implementation '{args.implementation}'. Known: {', '.join(METHOD_KINDS)}")
        return 1
    params = _parse_params(args.param or [])

    # Construct once so missing or malformed parameters are reported before anything is stored.
    try:
        cls(users, config, params)
    except ConfigurationError as exc:
        print(f"  [!] {exc.message}")
        return 1

    try:
        method_id = methods.add_method(args.implementation, args.priority, enabled=not args.disabled, params=params)
    except ValueError as exc:
        print(f"  [!] {exc}")
        return 1
    print(f"Added {args.implementation} method with id {method_id}.")
    return 0


def cmd_add_user(args, users: UserStore, methods: MethodStore, config: ConfigStore) -> int:
    if args.method is not None and methods.get_descriptor(args.method) is None:
        print(f"  [!] No authentication method with id {args.method}.")
        return 1
    user = User(
        username=args.username,
        user_type=UserType.admin if args.admin else UserType.normal,
        auth_method_id=args.method,
    )
    try:
        user_id = users.create_user(user)
    except IntegrityError:
        print(f"  [!] User '{args.username}' already exists.")
        return 1
    print(f"Created user {args.username} with id {user_id}.")
    return 0


def cmd_set_password(args, coordinator: AuthCoordinator) -> int:
    password = _read_new_password()
    if password is None:
        return 1
    coordinator.set_password(args.username, password)
    print(f"Password updated for {args.username}.")
    return 0


def cmd_reset_password(args, coordinator: AuthCoordinator) -> int:
    if args.with_code:
        password, code = coordinator.reset_password_actcode(args.username)
        print(f"New password: {password}")
        print(f"Activation code: {code}")
    else:
        print(f"New password: {coordinator.reset_password(args.username)}")
    return 0


def cmd_activate(args, coordinator: AuthCoordinator) -> int:
    user = coordinator.activate_user(args.code)
    print(f"Activated {user.username}.")
    return 0


def cmd_login(args, coordinator: AuthCoordinator) -> int:
    password = getpass.getpass(f"Password for {args.username}: ")
    user = coordinator.valid_user(args.username, password)
    activated = coordinator.activated(user.username)
    print(f"OK: {user.username} (id {user.id}) authenticated via method {user.auth_method_id}.")
    if coordinator.require_activate(user.username) and not activated:
        print("  [!] Account is not activated yet.")
    reason = coordinator.force_passchange(user.username)
    if reason:
        print(f"  [!] {reason}")
    return 0


def cmd_check_policy(args, coordinator: AuthCoordinator) -> int:
    policy = coordinator.get_policy(args.username)
    if not policy:
        print(f"No password policy applies to {args.username}.")
        return 0
    password = getpass.getpass("Password to check: ")
    violations = coordinator.apply_policy(args.username, password)
    if not violations:
        print("Password satisfies the policy.")
        return 0
    for v in violations.values():
        print(f"  [!] {v.rule}: required {v.required}, got {v.actual}")
    return 1


def cmd_unique_id(args, coordinator: AuthCoordinator) -> int:
    print(coordinator.unique_id(args.extra))
    return 0


# Commands that work on the stores directly vs. through the coordinator.
_STORE_COMMANDS = {
    "methods": cmd_methods,
    "add-method": cmd_add_method,
    "add-user": cmd_add_user,
}
_COORDINATOR_COMMANDS = {
    "set-password": cmd_set_password,
    "reset-password": cmd_reset_password,
    "activate": cmd_activate,
    "login": cmd_login,
    "check-policy": cmd_check_policy,
    "unique-id": cmd_unique_id,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="multiauth",
        description="Manage authentication methods and users, and test logins.",
    )
    parser.add_argument(
        "--db",
        metavar="URL",
        default=None,
        help="SQLAlchemy database URL (default: DATABASE_URL or multiauth.db)",
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    sub.add_parser("methods", help="List configured authentication methods in trial order")

    p = sub.add_parser("add-method", help="Add an authentication method")
    p.add_argument("implementation", metavar="IMPL", help=f"One of: {', '.join(METHOD_KINDS)}")
    p.add_argument("--priority", type=int, required=True, help="-128..127, lower is tried first")
    p.add_argument("--disabled", action="store_true", help="Add the method disabled")
    p.add_argument("--param", action="append", metavar="NAME=VALUE", help="Method parameter (repeatable)")

    p = sub.add_parser("add-user", help="Create a user record")
    p.add_argument("username")
    p.add_argument("--admin", action="store_true", help="Create the user as an admin")
    p.add_argument("--method", type=int, default=None, metavar="ID", help="Bind the user to this method id")

    p = sub.add_parser("set-password", help="Set a user's password (prompted)")
    p.add_argument("username")

    p = sub.add_parser("reset-password", help="Generate a new password for a user")
    p.add_argument("username")
    p.add_argument("--with-code", action="store_true", help="Also issue a new activation code")

    p = sub.add_parser("activate", help="Activate the account holding an activation code")
    p.add_argument("code")

    p = sub.add_parser("login", help="Test a username/password (password prompted)")
    p.add_argument("username")

    p = sub.add_parser("check-policy", help="Check a password against a user's policy (prompted)")
    p.add_argument("username")

    p = sub.add_parser("unique-id", help="Print a new unique id")
    p.add_argument("--extra", default="", help="Suffix appended to the id")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)-5s %(name)s %(message)s")

    engine = create_db_engine(args.db or settings.database_url)
    users = UserStore(engine)
    methods = MethodStore(engine)
    config = ConfigStore(engine)

    try:
        if args.command in _STORE_COMMANDS:
            return _STORE_COMMANDS[args.command](args, users, methods, config)
        coordinator = AuthCoordinator(users, config, AuthMethodRegistry(methods, users, config))
        return _COORDINATOR_COMMANDS[args.command](args, coordinator)
    except argparse.ArgumentTypeError as exc:
        print(f"  [!] {exc}")
        return 1
    except AuthError as exc:
        print(f"  [!] {exc.message} ({exc.code})")
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
