"""
auth/store.py -- SQLAlchemy Core persistence for users and refresh tokens.

Pattern: Repository + Data Mapper, behind a capability interface.
DatabaseProvider is the contract the login flows depend on; SQLAlchemyProvider
implements it once over a shared schema; SQLiteProvider, PostgresProvider and
MariaDBProvider differ only in engine options and in the dialect-specific
upsert used by create_user(). create_database_provider() picks exactly one of
them from DB_TYPE at startup -- there is no runtime switching.

Backends:
  sqlite   -- local development and tests. WAL mode per connection.
  postgres -- PostgreSQL, including Neon and Supabase (both expose a plain
              PostgreSQL connection string). Aliases: postgresql, neon,
              neondb, supabase. Driver: psycopg2.
  mariadb  -- MariaDB / MySQL. Alias: mysql. Driver: PyMySQL.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are stored as SHA-256 digests (token_hash, UNIQUE), never
  in the clear. Lookup stays O(1) via the index and a leaked table does not
  hand out live credentials. Refresh JWTs carry 128 random bits (jti), so an
  unsalted digest is sufficient. The digest also keeps the unique index well
  under MySQL's key-length limit regardless of how long the JWT gets.

Failure semantics:
  Every SQLAlchemyError is re-raised as core.errors.DatabaseError. Callers
  never see a backend-specific exception type.

Timestamps are ISO 8601 UTC strings with second precision, identical across
backends, so string comparison orders them chronologically.

Layer rule: no imports from api/ or web/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    inspect,
    select,
    text,
)
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import DEFAULT_ROLES, RefreshToken, User
from core.errors import ConfigurationError, DatabaseError

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("wikimillionaire.store")

DEFAULT_SQLITE_URL = f"sqlite:///{Path(__file__).parent / 'wikimillionaire_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False),
    Column("wikimedia_id", String(255), unique=True),  # provider subject; NULL only before first login
    Column("email", String(255)),
    Column("avatar_url", Text),
    Column("roles", Text),  # JSON list, e.g. ["user"]
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex of the JWT
    Column("expires_at", String(32), nullable=False),
    Column("user_agent", Text),
    Column("ip_address", String(45)),  # fits a full IPv6 textual address
    Column("created_at", String(32), nullable=False),
)

_UPDATABLE_USER_FIELDS = frozenset({"username", "email", "avatar_url", "last_login", "roles"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def hash_refresh_token(token: str) -> str:
    """Return the SHA-256 hex digest under which a refresh token is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _encode_roles(roles: list[str] | None) -> str:
    cleaned: list[str] = []
    for role in roles or DEFAULT_ROLES:
        if role and role not in cleaned:
            cleaned.append(role)
    return json.dumps(cleaned or list(DEFAULT_ROLES))


def _decode_roles(raw: str | None) -> list[str]:
    if not raw:
        return list(DEFAULT_ROLES)
    try:
        roles = json.loads(raw)
    except ValueError:
        logger.warning("Unreadable roles value %r, falling back to defaults", raw)
        return list(DEFAULT_ROLES)
    return [str(r) for r in roles] if isinstance(roles, list) and roles else list(DEFAULT_ROLES)


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


class DatabaseProvider(ABC):
    """What the login flows need from persistence, and nothing more.

    All implementations honour identical input/output contracts:
      - lookups return None on a miss and never raise for "not found";
      - create_user() is an upsert keyed on wikimedia_id;
      - get_refresh_token() returns None for expired rows even if present;
      - backend failures raise DatabaseError.
    """

    name = "abstract"

    @abstractmethod
    def initialize(self) -> None:
        """Ensure the schema exists. Idempotent; safe on every process start."""

    @abstractmethod
    def get_user_by_id(self, user_id: int | str) -> User | None: ...

    @abstractmethod
    def get_user_by_wikimedia_id(self, wikimedia_id: str) -> User | None: ...

    @abstractmethod
    def create_user(self, user: User) -> User: ...

    @abstractmethod
    def update_user(self, user_id: int | str, **fields) -> User | None: ...

    @abstractmethod
    def store_refresh_token(self, record: RefreshToken) -> None: ...

    @abstractmethod
    def get_refresh_token(self, token: str) -> RefreshToken | None: ...

    @abstractmethod
    def delete_refresh_token(self, token: str) -> bool: ...

    @abstractmethod
    def delete_user_refresh_tokens(self, user_id: int | str) -> int: ...

    @abstractmethod
    def purge_expired_refresh_tokens(self) -> int: ...

    @abstractmethod
    def ping(self) -> bool: ...

    @abstractmethod
    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Shared SQLAlchemy implementation
# ---------------------------------------------------------------------------


class SQLAlchemyProvider(DatabaseProvider):
    """DatabaseProvider over SQLAlchemy Core. Subclasses supply the dialect bits.

    Usage:
        provider = SQLiteProvider("sqlite:///:memory:")
        provider.initialize()
        user = provider.create_user(User(username="Alice", wikimedia_id="123"))
        provider.close()
    """

    # Extra name for pip when the DB driver is missing (see create_database_provider).
    extra = ""

    def __init__(self, db_url: str) -> None:
        self.db_url = self.normalize_url(db_url)
        self.engine: Engine = create_engine(self.db_url, **self.engine_options())
        self.configure_engine(self.engine)

    # -- dialect hooks -------------------------------------------------

    @classmethod
    def normalize_url(cls, db_url: str) -> str:
        return db_url

    def engine_options(self) -> dict:
        return {}

    def configure_engine(self, engine: Engine) -> None:
        """Attach per-connection setup (PRAGMAs, session variables)."""

    @staticmethod
    @abstractmethod
    def upsert_user_statement(values: dict):
        """Return an INSERT that updates the existing row on a wikimedia_id conflict."""

    # -- plumbing ------------------------------------------------------

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        """Yield a connection inside a transaction; translate driver errors."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.error("%s backend error: %s", self.name, exc.__class__.__name__)
            raise DatabaseError(f"{self.name} database operation failed") from exc

    # -- schema --------------------------------------------------------

    def initialize(self) -> None:
        with self._begin() as conn:
            _metadata.create_all(conn, checkfirst=True)
            self._ensure_roles_column(conn)
        logger.info("%s database provider initialized", self.name)

    def _ensure_roles_column(self, conn: Connection) -> None:
        """Add users.roles to databases created before roles existed.

        ALTER TABLE ... ADD COLUMN IF NOT EXISTS is not portable (SQLite and
        older MySQL lack it), so the inspector decides instead.
        """
        existing = {col["name"] for col in inspect(conn).get_columns("users")}
        if "roles" not in existing:
            conn.execute(text("ALTER TABLE users ADD COLUMN roles TEXT"))
            logger.info("Added roles column to users table")

    # -- users ---------------------------------------------------------

    def get_user_by_id(self, user_id: int | str) -> User | None:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return None
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_wikimedia_id(self, wikimedia_id: str) -> User | None:
        with self._begin() as conn:
            row = conn.execute(_users.select().where(_users.c.wikimedia_id == wikimedia_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def create_user(self, user: User) -> User:
        """Insert a user, or update the existing row with the same wikimedia_id.

        On conflict, username/avatar/last_login/updated_at are refreshed, email
        is only overwritten by a non-NULL value, and roles and created_at are
        left untouched. Returns the stored row, so a repeated call for the
        same identity returns the same id.
        """
        now = _now_iso()
        values = {
            "username": user.username,
            "wikimedia_id": user.wikimedia_id,
            "email": user.email,
            "avatar_url": user.avatar_url,
            "roles": _encode_roles(user.roles),
            "last_login": user.last_login or now,
            "created_at": now,
            "updated_at": now,
        }
        with self._begin() as conn:
            if user.wikimedia_id is None:
                result = conn.execute(_users.insert().values(**values))
                where = _users.c.id == result.inserted_primary_key[0]
            else:
                conn.execute(self.upsert_user_statement(values))
                where = _users.c.wikimedia_id == user.wikimedia_id
            row = conn.execute(_users.select().where(where)).fetchone()
        return _row_to_user(row)

    def update_user(self, user_id: int | str, **fields) -> User | None:
        """Update mutable fields on an existing user.

        Accepted fields: username, email, avatar_url, last_login (datetime or
        ISO string), roles (list). Returns the updated User, or None if
        user_id does not exist.
        """
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        if "last_login" in fields and isinstance(fields["last_login"], datetime):
            fields["last_login"] = _iso(fields["last_login"])
        if "roles" in fields:
            fields["roles"] = _encode_roles(fields["roles"])
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return None
        with self._begin() as conn:
            if fields:
                conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **fields))
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    # -- refresh tokens ------------------------------------------------

    def store_refresh_token(self, record: RefreshToken) -> None:
        with self._begin() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    user_id=int(record.user_id),
                    token_hash=hash_refresh_token(record.token),
                    expires_at=_iso(record.expires_at),
                    user_agent=record.user_agent,
                    ip_address=record.ip_address,
                    created_at=_now_iso(),
                )
            )

    def get_refresh_token(self, token: str) -> RefreshToken | None:
        """Return the live record for `token`, or None if unknown or expired.

        Expiry is checked here, not only by the periodic purge: a row that
        still exists past its expires_at is treated exactly like a missing one.
        """
        with self._begin() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(_refresh_tokens.c.token_hash == hash_refresh_token(token))
            ).fetchone()
        if row is None:
            return None
        expires_at = _parse_iso(row.expires_at)
        if expires_at <= datetime.now(timezone.utc):
            return None
        return RefreshToken(
            id=row.id,
            user_id=row.user_id,
            token=token,
            expires_at=expires_at,
            user_agent=row.user_agent,
            ip_address=row.ip_address,
            created_at=row.created_at,
        )

    def delete_refresh_token(self, token: str) -> bool:
        with self._begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(_refresh_tokens.c.token_hash == hash_refresh_token(token))
            )
        return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: int | str) -> int:
        """Revoke every refresh token a user holds (logout everywhere)."""
        with self._begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == int(user_id)))
        return result.rowcount

    def purge_expired_refresh_tokens(self) -> int:
        """Delete rows whose expires_at has passed. Returns rows removed."""
        with self._begin() as conn:
            result = conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= _now_iso()))
        return result.rowcount

    def ping(self) -> bool:
        try:
            with self._begin() as conn:
                conn.execute(select(1))
        except DatabaseError:
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


def _upsert_set(incoming) -> dict:
    """Columns refreshed on a wikimedia_id conflict. `incoming` is excluded/inserted."""
    return {
        "username": incoming.username,
        "email": func.coalesce(incoming.email, _users.c.email),
        "avatar_url": func.coalesce(incoming.avatar_url, _users.c.avatar_url),
        "last_login": incoming.last_login,
        "updated_at": incoming.updated_at,
    }


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class SQLiteProvider(SQLAlchemyProvider):
    name = "sqlite"

    def engine_options(self) -> dict:
        return {"connect_args": {"check_same_thread": False}}

    def configure_engine(self, engine: Engine) -> None:
        event.listen(engine, "connect", _set_wal_mode)

    @staticmethod
    def upsert_user_statement(values: dict):
        stmt = sqlite_insert(_users).values(**values)
        return stmt.on_conflict_do_update(index_elements=[_users.c.wikimedia_id], set_=_upsert_set(stmt.excluded))


class PostgresProvider(SQLAlchemyProvider):
    """PostgreSQL, Neon, and Supabase (via its direct PostgreSQL connection string)."""

    name = "postgres"
    extra = "postgres"

    @classmethod
    def normalize_url(cls, db_url: str) -> str:
        # Neon and Supabase hand out postgres:// URLs; SQLAlchemy only accepts postgresql.
        if db_url.startswith("postgres://"):
            return "postgresql+psycopg2://" + db_url[len("postgres://") :]
        if db_url.startswith("postgresql://"):
            return "postgresql+psycopg2://" + db_url[len("postgresql://") :]
        return db_url

    def engine_options(self) -> dict:
        # Serverless Postgres drops idle connections; validate before use.
        return {"pool_pre_ping": True}

    @staticmethod
    def upsert_user_statement(values: dict):
        stmt = postgresql_insert(_users).values(**values)
        return stmt.on_conflict_do_update(index_elements=[_users.c.wikimedia_id], set_=_upsert_set(stmt.excluded))


class MariaDBProvider(SQLAlchemyProvider):
    name = "mariadb"
    extra = "mariadb"

    @classmethod
    def normalize_url(cls, db_url: str) -> str:
        for scheme in ("mysql://", "mariadb://"):
            if db_url.startswith(scheme):
                return f"{scheme[:-3]}+pymysql://" + db_url[len(scheme) :]
        return db_url

    def engine_options(self) -> dict:
        # MariaDB closes idle connections after wait_timeout (8h by default).
        return {"pool_pre_ping": True, "pool_recycle": 3600}

    @staticmethod
    def upsert_user_statement(values: dict):
        stmt = mysql_insert(_users).values(**values)
        return stmt.on_duplicate_key_update(**_upsert_set(stmt.inserted))


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_BACKENDS: dict[str, type[SQLAlchemyProvider]] = {
    "sqlite": SQLiteProvider,
    "postgres": PostgresProvider,
    "postgresql": PostgresProvider,
    "neon": PostgresProvider,
    "neondb": PostgresProvider,
    "supabase": PostgresProvider,
    "mariadb": MariaDBProvider,
    "mysql": MariaDBProvider,
}


def create_database_provider(settings: Settings) -> DatabaseProvider:
    """Build the one DatabaseProvider this process will use.

    Called once by the process entry point. Unknown DB_TYPE values are a
    configuration error rather than a silent fallback to some default backend.
    """
    backend = _BACKENDS.get(settings.db_type)
    if backend is None:
        raise ConfigurationError(f"Unknown DB_TYPE {settings.db_type!r}; expected one of {sorted(_BACKENDS)}")

    db_url = settings.database_url
    if not db_url:
        if backend is not SQLiteProvider:
            raise ConfigurationError(f"DATABASE_URL is required for DB_TYPE={settings.db_type}")
        db_url = DEFAULT_SQLITE_URL

    try:
        provider = backend(db_url)
    except ImportError as exc:
        raise ConfigurationError(
            f"Database driver for {backend.name} is not installed. Install the '{backend.extra}' extra."
        ) from exc
    logger.info("Using %s database provider", provider.name)
    return provider


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        wikimedia_id=row.wikimedia_id,
        email=row.email,
        avatar_url=row.avatar_url,
        roles=_decode_roles(row.roles),
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
