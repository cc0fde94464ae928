"""
tests/test_store.py -- Tests for auth/store.py (SQLite backend + dialect SQL).

Uses named shared-memory SQLite (see helpers.make_provider) for behaviour and
compiles the Postgres / MariaDB upsert statements against their dialects to
check the conflict clause without a live server.

Covers:
  - initialize() is idempotent and migrates a pre-roles users table
  - create_user() upsert: same subject -> same id, fields refreshed (Scenario D)
  - default roles, email kept when the new identity has none
  - update_user() whitelist and missing-user behaviour
  - refresh tokens: store / get / delete, expired row treated as absent
    (Scenario E), stored hashed, purge, delete-all-for-user
  - create_database_provider(): backend selection, aliases, URL
    normalization, unknown type, missing URL, missing driver
  - SQLAlchemy errors surface as DatabaseError
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from helpers import make_provider, unique_subject
from sqlalchemy import create_engine, text
from sqlalchemy.dialects import mysql, postgresql
from sqlalchemy.exc import OperationalError

from auth.models import RefreshToken, User
from auth.store import (
    DEFAULT_SQLITE_URL,
    MariaDBProvider,
    PostgresProvider,
    SQLiteProvider,
    create_database_provider,
    hash_refresh_token,
)
from core.config import Settings
from core.errors import ConfigurationError, DatabaseError, PersistenceError


@pytest.fixture(scope="module")
def store():
    provider = make_provider("store_unit")
    yield provider
    provider.close()


def _user(**overrides) -> User:
    fields = {"username": "Alice", "wikimedia_id": unique_subject()}
    fields.update(overrides)
    return User(**fields)


def _token(user_id: int, value: str, expires_in: timedelta = timedelta(days=7)) -> RefreshToken:
    return RefreshToken(
        user_id=user_id,
        token=value,
        expires_at=datetime.now(timezone.utc) + expires_in,
        user_agent="pytest",
        ip_address="203.0.113.9",
    )


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestInitialize:
    def test_initialize_twice_is_harmless(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.initialize()
        store.initialize()
        assert store.get_user_by_id(user.id) == user

    def test_adds_roles_column_to_legacy_table(self) -> None:
        url = "sqlite:///file:test_store_legacy?mode=memory&cache=shared&uri=true"
        keepalive = create_engine(url)
        with keepalive.begin() as conn:
            conn.execute(
                text(
                    "CREATE TABLE users (id INTEGER PRIMARY KEY AUTOINCREMENT, username VARCHAR(255) NOT NULL, "
                    "wikimedia_id VARCHAR(255) UNIQUE, email VARCHAR(255), avatar_url TEXT, "
                    "last_login VARCHAR(32), created_at VARCHAR(32) NOT NULL, updated_at VARCHAR(32) NOT NULL)"
                )
            )
            conn.execute(
                text(
                    "INSERT INTO users (username, wikimedia_id, created_at, updated_at) "
                    "VALUES ('Legacy', '999', '2024-01-01T00:00:00+00:00', '2024-01-01T00:00:00+00:00')"
                )
            )
        provider = SQLiteProvider(url)
        try:
            provider.initialize()
            legacy = provider.get_user_by_wikimedia_id("999")
            assert legacy is not None
            assert legacy.roles == ["user"]
        finally:
            provider.close()
            keepalive.dispose()

    def test_ping(self, store: SQLiteProvider) -> None:
        assert store.ping() is True


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestUsers:
    def test_create_assigns_id_and_default_roles(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user(email="alice@example.org"))
        assert user.id is not None
        assert user.roles == ["user"]
        assert user.email == "alice@example.org"
        assert user.created_at and user.updated_at and user.last_login

    def test_lookup_by_both_keys(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        assert store.get_user_by_id(user.id) == user
        assert store.get_user_by_id(str(user.id)) == user
        assert store.get_user_by_wikimedia_id(user.wikimedia_id) == user

    def test_missing_user_is_none(self, store: SQLiteProvider) -> None:
        assert store.get_user_by_id(987654321) is None
        assert store.get_user_by_id("not-a-number") is None
        assert store.get_user_by_wikimedia_id("no-such-subject") is None

    def test_upsert_same_subject_keeps_id(self, store: SQLiteProvider) -> None:
        subject = unique_subject()
        first = store.create_user(_user(wikimedia_id=subject, username="Alice", email="old@example.org"))
        second = store.create_user(_user(wikimedia_id=subject, username="Alice2", email="new@example.org"))
        assert second.id == first.id
        assert second.username == "Alice2"
        assert second.email == "new@example.org"
        assert second.created_at == first.created_at

    def test_upsert_without_email_keeps_stored_email(self, store: SQLiteProvider) -> None:
        subject = unique_subject()
        store.create_user(_user(wikimedia_id=subject, email="keep@example.org", avatar_url="https://a/1"))
        again = store.create_user(_user(wikimedia_id=subject, email=None, avatar_url=None))
        assert again.email == "keep@example.org"
        assert again.avatar_url == "https://a/1"

    def test_upsert_does_not_reset_roles(self, store: SQLiteProvider) -> None:
        subject = unique_subject()
        user = store.create_user(_user(wikimedia_id=subject))
        store.update_user(user.id, roles=["user", "admin"])
        again = store.create_user(_user(wikimedia_id=subject))
        assert again.roles == ["user", "admin"]

    def test_user_without_subject_inserts(self, store: SQLiteProvider) -> None:
        first = store.create_user(User(username="Local"))
        second = store.create_user(User(username="Local"))
        assert first.id != second.id

    def test_update_user(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        login = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
        updated = store.update_user(user.id, username="Renamed", last_login=login, roles=["user", "user"])
        assert updated.username == "Renamed"
        assert updated.last_login == "2026-05-01T12:00:00+00:00"
        assert updated.roles == ["user"]

    def test_update_unknown_field_raises(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        with pytest.raises(ValueError):
            store.update_user(user.id, wikimedia_id="hijack")

    def test_update_missing_user_returns_none(self, store: SQLiteProvider) -> None:
        assert store.update_user(987654321, username="ghost") is None


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class TestRefreshTokens:
    def test_store_and_get(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.store_refresh_token(_token(user.id, "tok-live"))
        record = store.get_refresh_token("tok-live")
        assert record is not None
        assert record.user_id == user.id
        assert record.token == "tok-live"
        assert record.user_agent == "pytest"
        assert record.ip_address == "203.0.113.9"
        assert record.expires_at > datetime.now(timezone.utc)

    def test_unknown_token_is_none(self, store: SQLiteProvider) -> None:
        assert store.get_refresh_token("never-issued") is None

    def test_expired_row_is_none(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.store_refresh_token(_token(user.id, "tok-expired", expires_in=timedelta(seconds=-1)))
        assert store.get_refresh_token("tok-expired") is None

    def test_token_is_stored_hashed(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.store_refresh_token(_token(user.id, "tok-hashed"))
        with store.engine.connect() as conn:
            hashes = [row[0] for row in conn.execute(text("SELECT token_hash FROM refresh_tokens"))]
        assert hash_refresh_token("tok-hashed") in hashes
        assert "tok-hashed" not in hashes

    def test_duplicate_token_is_database_error(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.store_refresh_token(_token(user.id, "tok-dup"))
        with pytest.raises(DatabaseError):
            store.store_refresh_token(_token(user.id, "tok-dup"))

    def test_delete(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.store_refresh_token(_token(user.id, "tok-delete"))
        assert store.delete_refresh_token("tok-delete") is True
        assert store.get_refresh_token("tok-delete") is None
        assert store.delete_refresh_token("tok-delete") is False

    def test_delete_all_for_user(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.store_refresh_token(_token(user.id, "tok-a"))
        store.store_refresh_token(_token(user.id, "tok-b"))
        assert store.delete_user_refresh_tokens(user.id) == 2
        assert store.get_refresh_token("tok-a") is None

    def test_purge_removes_only_expired(self, store: SQLiteProvider) -> None:
        user = store.create_user(_user())
        store.store_refresh_token(_token(user.id, "tok-purge-old", expires_in=timedelta(hours=-1)))
        store.store_refresh_token(_token(user.id, "tok-purge-new"))
        assert store.purge_expired_refresh_tokens() >= 1
        assert store.get_refresh_token("tok-purge-new") is not None
        assert store.purge_expired_refresh_tokens() == 0


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def test_backend_errors_become_database_error(store: SQLiteProvider) -> None:
    with patch.object(store.engine, "begin", side_effect=OperationalError("SELECT 1", {}, Exception("boom"))):
        with pytest.raises(DatabaseError) as exc_info:
            store.get_user_by_wikimedia_id("1")
    assert isinstance(exc_info.value, PersistenceError)


def test_ping_false_when_backend_down(store: SQLiteProvider) -> None:
    with patch.object(store.engine, "begin", side_effect=OperationalError("SELECT 1", {}, Exception("boom"))):
        assert store.ping() is False


# ---------------------------------------------------------------------------
# Dialect-specific upserts
# ---------------------------------------------------------------------------


def _values() -> dict:
    return {
        "username": "Alice",
        "wikimedia_id": "1",
        "email": None,
        "avatar_url": None,
        "roles": '["user"]',
        "last_login": "2026-01-01T00:00:00+00:00",
        "created_at": "2026-01-01T00:00:00+00:00",
        "updated_at": "2026-01-01T00:00:00+00:00",
    }


def test_postgres_upsert_uses_on_conflict() -> None:
    sql = str(PostgresProvider.upsert_user_statement(_values()).compile(dialect=postgresql.dialect()))
    assert "ON CONFLICT (wikimedia_id) DO UPDATE" in sql
    assert "roles = " not in sql.split("DO UPDATE")[1]


def test_mariadb_upsert_uses_on_duplicate_key() -> None:
    sql = str(MariaDBProvider.upsert_user_statement(_values()).compile(dialect=mysql.dialect()))
    assert "ON DUPLICATE KEY UPDATE" in sql
    assert "created_at = " not in sql.split("ON DUPLICATE KEY UPDATE")[1]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def _settings(**overrides) -> Settings:
    return Settings(debug=True, **overrides)


class TestFactory:
    def test_sqlite_default_url(self) -> None:
        with patch("auth.store.create_engine") as fake_engine, patch("auth.store.event"):
            provider = create_database_provider(_settings(db_type="sqlite"))
        assert isinstance(provider, SQLiteProvider)
        assert fake_engine.call_args.args[0] == DEFAULT_SQLITE_URL

    @pytest.mark.parametrize("db_type", ["postgres", "postgresql", "neon", "neondb", "supabase", "POSTGRES"])
    def test_postgres_aliases(self, db_type: str) -> None:
        with patch("auth.store.create_engine") as fake_engine:
            provider = create_database_provider(
                _settings(db_type=db_type, database_url="postgres://u:p@db.example.com/app")
            )
        assert isinstance(provider, PostgresProvider)
        assert fake_engine.call_args.args[0] == "postgresql+psycopg2://u:p@db.example.com/app"
        assert fake_engine.call_args.kwargs["pool_pre_ping"] is True

    @pytest.mark.parametrize("db_type", ["mariadb", "mysql"])
    def test_mariadb_aliases(self, db_type: str) -> None:
        with patch("auth.store.create_engine") as fake_engine:
            provider = create_database_provider(_settings(db_type=db_type, database_url="mysql://u:p@db/app"))
        assert isinstance(provider, MariaDBProvider)
        assert fake_engine.call_args.args[0] == "mysql+pymysql://u:p@db/app"
        assert fake_engine.call_args.kwargs["pool_recycle"] == 3600

    def test_explicit_driver_url_untouched(self) -> None:
        assert PostgresProvider.normalize_url("postgresql+asyncpg://h/db") == "postgresql+asyncpg://h/db"
        assert MariaDBProvider.normalize_url("mariadb://h/db") == "mariadb+pymysql://h/db"

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            create_database_provider(_settings(db_type="oracle"))

    def test_missing_url_for_server_backend_raises(self) -> None:
        with pytest.raises(ConfigurationError):
            create_database_provider(_settings(db_type="postgres"))

    def test_missing_driver_names_extra(self) -> None:
        with patch("auth.store.create_engine", side_effect=ImportError("No module named 'psycopg2'")):
            with pytest.raises(ConfigurationError) as exc_info:
                create_database_provider(_settings(db_type="neon", database_url="postgres://h/db"))
        assert "postgres" in exc_info.value.message
