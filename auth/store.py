"""
auth/store.py -- SQLAlchemy Core persistence layer for the authentication core.

Pattern: Repository + Data Mapper. Three repositories share one Engine:

  UserStore   -- user records (lookup, stub creation, method binding,
                 activation and password columns, login failure count).
  MethodStore -- AuthMethod descriptors (auth_methods) and their named
                 parameters (auth_method_params).
  ConfigStore -- namespaced runtime settings (settings), e.g.
                 Auth:enable_fallback and the Auth:unique_id counter.

_row_to_user / _row_to_descriptor are the mappers. Coordinator and method
code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    SmallInteger,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import AuthMethodDescriptor, User, UserType

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("user_type", String(16), nullable=False, server_default=UserType.normal.value),
    Column("auth_method_id", Integer),  # NULL until the user authenticates through a method
    Column("password_hash", Text),  # local method only
    Column("password_changed_at", String(32)),
    Column("password_temporary", Boolean, nullable=False, server_default="0"),  # system-allocated password
    Column("activation_code", String(64), unique=True),
    Column("activated_at", String(32)),  # NULL = not activated
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
    Column("loginfail_count", Integer, nullable=False, server_default="0"),
)

_auth_methods = Table(
    "auth_methods",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("implementation", String(100), nullable=False),
    Column("priority", SmallInteger, nullable=False),  # -128 = tried first, 127 = last
    Column("enabled", Boolean, nullable=False, server_default="1"),
)

_auth_method_params = Table(
    "auth_method_params",
    _metadata,
    Column("method_id", Integer, nullable=False, index=True),
    Column("name", String(40), nullable=False),
    Column("value", Text, nullable=False),
)

_settings = Table(
    "settings",
    _metadata,
    Column("name", String(255), primary_key=True),
    Column("value", Text, nullable=False),
)

PRIORITY_MIN = -128
PRIORITY_MAX = 127

_TRUE_VALUES = {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers are not blocked during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Create the shared Engine and make sure every table exists.

    ``sqlite:///:memory:`` and named shared-memory URIs are supported for
    tests; WAL is only enabled for file-backed SQLite databases.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite") and "memory" not in db_url:
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        engine = create_db_engine("sqlite:///multiauth.db")
        users = UserStore(engine)
        user = users.get_user("alice")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_user(self, username: str) -> User | None:
        """Look up a user by exact username. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_actcode(self, actcode: str) -> User | None:
        """Look up the user holding an activation code. Empty codes never match."""
        if not actcode:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.activation_code == actcode)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def user_disabled(self, username: str) -> bool:
        """True if the user exists and is disabled. Unknown users are not disabled."""
        user = self.get_user(username)
        return user is not None and user.is_disabled

    def get_user_auth_method(self, username: str) -> int | None:
        """Return the id of the method the user last authenticated with, or None."""
        user = self.get_user(username)
        return user.auth_method_id if user is not None else None

    def set_user_auth_method(self, username: str, method_id: int | None) -> bool:
        """Bind a user to a method id (or clear it with None).

        The id is not checked against auth_methods; callers are responsible
        for passing a real descriptor id. Returns False for unknown users.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.username == username).values(auth_method_id=method_id)
            )
            conn.commit()
        return result.rowcount == 1

    def create_user(self, user: User) -> int:
        """Insert a full user record and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    user_type=user.user_type.value,
                    auth_method_id=user.auth_method_id,
                    password_hash=user.password_hash,
                    password_changed_at=user.password_changed_at or (now if user.password_hash else None),
                    password_temporary=user.password_temporary,
                    activation_code=user.activation_code,
                    activated_at=user.activated_at,
                    created_at=user.created_at or now,
                    last_login_at=user.last_login_at,
                    loginfail_count=user.loginfail_count,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def create_stub_user(self, username: str, method_id: int | None, activated: bool) -> User:
        """Insert a minimal record for a user who just authenticated for the first time."""
        now = _now_iso()
        user_id = self.create_user(
            User(
                username=username,
                auth_method_id=method_id,
                activated_at=now if activated else None,
                created_at=now,
                last_login_at=now,
            )
        )
        return self.get_user_by_id(user_id)

    def touch_last_login(self, user_id: int) -> None:
        self._update(user_id, last_login_at=_now_iso())

    def set_user_type(self, user_id: int, user_type: UserType) -> bool:
        return self._update(user_id, user_type=user_type.value)

    def set_password_hash(self, user_id: int, password_hash: str | None, temporary: bool = False) -> bool:
        """Store a new hash and restart its age. temporary marks a system-allocated password."""
        return self._update(
            user_id,
            password_hash=password_hash,
            password_changed_at=_now_iso() if password_hash else None,
            password_temporary=temporary,
        )

    def set_activation_code(self, user_id: int, actcode: str | None) -> bool:
        return self._update(user_id, activation_code=actcode)

    def mark_activated(self, user_id: int) -> bool:
        """Stamp activated_at, clear the activation code and the failure count in one write."""
        return self._update(user_id, activated_at=_now_iso(), activation_code=None, loginfail_count=0)

    def clear_activation(self, user_id: int) -> bool:
        return self._update(user_id, activated_at=None)

    def increment_loginfail(self, user_id: int) -> int | None:
        """Add one to the failed login count and return the new count, or None for unknown ids."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(loginfail_count=_users.c.loginfail_count + 1)
            )
            count = conn.execute(select(_users.c.loginfail_count).where(_users.c.id == user_id)).scalar()
            conn.commit()
        return count if result.rowcount else None

    def reset_loginfail(self, user_id: int) -> bool:
        return self._update(user_id, loginfail_count=0)

    def _update(self, user_id: int, **fields) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# AuthMethod descriptors and parameters
# ---------------------------------------------------------------------------


class MethodStore:
    """Repository for AuthMethod descriptors and their parameters."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_descriptors(self, only_active: bool = False) -> list[AuthMethodDescriptor]:
        """Return descriptors ordered by ascending priority, ties broken by id."""
        query = _auth_methods.select()
        if only_active:
            query = query.where(_auth_methods.c.enabled.is_(True))
        query = query.order_by(_auth_methods.c.priority.asc(), _auth_methods.c.id.asc())
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_descriptor(r) for r in rows]

    def get_descriptor(self, method_id: int) -> AuthMethodDescriptor | None:
        with self.engine.connect() as conn:
            row = conn.execute(_auth_methods.select().where(_auth_methods.c.id == method_id)).fetchone()
        return _row_to_descriptor(row) if row is not None else None

    def get_params(self, method_id: int) -> dict[str, str]:
        """Return the name -> value parameters for one method. Later rows win on duplicate names."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_auth_method_params.c.name, _auth_method_params.c.value).where(
                    _auth_method_params.c.method_id == method_id
                )
            ).fetchall()
        return {row.name: row.value for row in rows}

    def add_method(
        self,
        implementation: str,
        priority: int,
        enabled: bool = True,
        params: dict[str, str] | None = None,
    ) -> int:
        """Insert a descriptor (plus its parameters) and return the new id.

        Raises ValueError if priority is outside the signed byte range.
        """
        if not PRIORITY_MIN <= priority <= PRIORITY_MAX:
            raise ValueError(f"priority must be between {PRIORITY_MIN} and {PRIORITY_MAX}, got {priority}")
        with self.engine.connect() as conn:
            result = conn.execute(
                _auth_methods.insert().values(implementation=implementation, priority=priority, enabled=enabled)
            )
            method_id = result.inserted_primary_key[0]
            for name, value in (params or {}).items():
                conn.execute(_auth_method_params.insert().values(method_id=method_id, name=name, value=str(value)))
            conn.commit()
        return method_id

    def set_param(self, method_id: int, name: str, value: str) -> None:
        """Replace (or add) one named parameter."""
        with self.engine.connect() as conn:
            conn.execute(
                _auth_method_params.delete().where(
                    (_auth_method_params.c.method_id == method_id) & (_auth_method_params.c.name == name)
                )
            )
            conn.execute(_auth_method_params.insert().values(method_id=method_id, name=name, value=str(value)))
            conn.commit()

    def set_enabled(self, method_id: int, enabled: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _auth_methods.update().where(_auth_methods.c.id == method_id).values(enabled=enabled)
            )
            conn.commit()
        return result.rowcount > 0

    def count(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_auth_methods)).scalar() or 0


# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------


class ConfigStore:
    """Namespaced key/value settings (e.g. "Auth:enable_fallback").

    Values are stored as text. get_bool() accepts 1/true/yes/on in any case.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, name: str, default: str | None = None) -> str | None:
        with self.engine.connect() as conn:
            value = conn.execute(select(_settings.c.value).where(_settings.c.name == name)).scalar()
        return value if value is not None else default

    def get_bool(self, name: str, default: bool = False) -> bool:
        value = self.get(name)
        if value is None:
            return default
        return value.strip().lower() in _TRUE_VALUES

    def set(self, name: str, value) -> None:
        """Create or overwrite one setting."""
        with self.engine.connect() as conn:
            result = conn.execute(_settings.update().where(_settings.c.name == name).values(value=str(value)))
            if result.rowcount == 0:
                conn.execute(_settings.insert().values(name=name, value=str(value)))
            conn.commit()

    def all(self) -> dict[str, str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_settings.c.name, _settings.c.value).order_by(_settings.c.name)).fetchall()
        return {row.name: row.value for row in rows}


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        user_type=UserType(row.user_type),
        auth_method_id=row.auth_method_id,
        password_hash=row.password_hash,
        password_changed_at=row.password_changed_at,
        password_temporary=bool(row.password_temporary),
        activation_code=row.activation_code,
        activated_at=row.activated_at,
        created_at=row.created_at,
        last_login_at=row.last_login_at,
        loginfail_count=row.loginfail_count or 0,
    )


def _row_to_descriptor(row) -> AuthMethodDescriptor:
    return AuthMethodDescriptor(
        id=row.id,
        implementation=row.implementation,
        priority=row.priority,
        enabled=bool(row.enabled),
    )
