"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper + Unit of Work.
AuthStore owns the engine and hands out UnitOfWork objects via
transaction(). A UnitOfWork groups one repository per entity, all bound to
the same connection, so everything done inside one `with` block commits or
rolls back together. Services never touch SQL directly.

transaction() is the only way in. There is no non-transactional code path:
single-statement operations simply run in a one-statement transaction.

Security:
  All queries use bound parameters. No f-strings in SQL.

  refresh_tokens.token_hash holds SHA-256(plaintext) only. Password reset and
  email verification tokens are stored in cleartext (single-use, short-lived,
  deleted on consumption).

  UNIQUE(email) and UNIQUE(external_id) are enforced by the database. They
  are the race breaker for concurrent OAuth callbacks that would otherwise
  create the same account twice. SQLite and Postgres both treat NULLs as
  distinct, so any number of unlinked users may have external_id NULL.

Timestamps are stored as ISO 8601 UTC strings (microsecond precision, fixed
width) so lexical comparison in SQL matches chronological order.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event, text
from sqlalchemy.engine import Connection, Engine

from auth.models import PROVIDER_LOCAL, ROLE_USER, OneTimeToken, RefreshToken, User

logger = logging.getLogger("idcore.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'idcore_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # NULL for OAuth-only users
    Column("name", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default=ROLE_USER),
    Column("external_id", String(255), unique=True),  # provider's stable subject id
    Column("auth_provider", String(30), nullable=False, server_default=PROVIDER_LOCAL),
    Column("email_verified_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Index("ix_refresh_tokens_user_id", "user_id"),
)


def _one_time_token_table(name: str) -> Table:
    return Table(
        name,
        _metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, nullable=False),
        Column("token", String(255), nullable=False, unique=True),
        Column("expires_at", String(32), nullable=False),
        Column("created_at", String(32), nullable=False),
        Index(f"ix_{name}_user_id", "user_id"),
    )


_password_reset_tokens = _one_time_token_table("password_reset_tokens")
_email_verification_tokens = _one_time_token_table("email_verification_tokens")


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _parse(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Store and unit of work
# ---------------------------------------------------------------------------


class AuthStore:
    """Owns the engine; the entry point for every unit of work.

    Usage:
        store = AuthStore("sqlite:///:memory:")
        with store.transaction() as uow:
            user = uow.users.get_by_email("a@x.com")
            uow.refresh_tokens.delete_by_user_id(user.id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        """Run a block atomically. Commits on normal exit, rolls back on any exception."""
        with self.engine.begin() as conn:
            yield UnitOfWork(conn)

    def purge_expired_tokens(self, now: datetime | None = None) -> int:
        """Delete every expired refresh, reset and verification token. Returns rows removed."""
        now = now or datetime.now(timezone.utc)
        with self.transaction() as uow:
            removed = (
                uow.refresh_tokens.purge_expired(now)
                + uow.password_resets.purge_expired(now)
                + uow.email_verifications.purge_expired(now)
            )
        if removed:
            logger.info("Purged %d expired tokens", removed)
        return removed

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.exception("Auth store health check failed")
            return False

    def close(self) -> None:
        self.engine.dispose()


class UnitOfWork:
    """Repositories scoped to one open transaction."""

    def __init__(self, conn: Connection) -> None:
        self.users = UserRepository(conn)
        self.refresh_tokens = RefreshTokenRepository(conn)
        self.password_resets = OneTimeTokenRepository(conn, _password_reset_tokens)
        self.email_verifications = OneTimeTokenRepository(conn, _email_verification_tokens)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserRepository:
    """User queries. Every read filters out soft-deleted rows."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def _select_active(self):
        return _users.select().where(_users.c.deleted_at.is_(None))

    def _one(self, stmt) -> User | None:
        row = self._conn.execute(stmt).fetchone()
        return _row_to_user(row) if row is not None else None

    def _touch(self, user_id: int, **values) -> bool:
        result = self._conn.execute(
            _users.update()
            .where((_users.c.id == user_id) & (_users.c.deleted_at.is_(None)))
            .values(updated_at=_now_iso(), **values)
        )
        return result.rowcount > 0

    def get_by_id(self, user_id: int) -> User | None:
        return self._one(self._select_active().where(_users.c.id == user_id))

    def get_by_email(self, email: str) -> User | None:
        """Exact, case-sensitive match on the stored email."""
        return self._one(self._select_active().where(_users.c.email == email))

    def get_by_external_id(self, external_id: str) -> User | None:
        return self._one(self._select_active().where(_users.c.external_id == external_id))

    def create(self, email: str, password_hash: str | None, name: str, role: str = ROLE_USER) -> User:
        """Insert a local user.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken,
        including by a soft-deleted row.
        """
        now = _now_iso()
        result = self._conn.execute(
            _users.insert().values(
                email=email,
                password_hash=password_hash,
                name=name,
                role=role,
                auth_provider=PROVIDER_LOCAL,
                created_at=now,
                updated_at=now,
            )
        )
        return self.get_by_id(result.inserted_primary_key[0])

    def create_oauth_user(self, email: str, name: str, external_id: str, provider: str) -> User:
        """Insert a password-less user whose email the provider already verified."""
        now = _now_iso()
        result = self._conn.execute(
            _users.insert().values(
                email=email,
                password_hash=None,
                name=name,
                external_id=external_id,
                auth_provider=provider,
                email_verified_at=now,
                created_at=now,
                updated_at=now,
            )
        )
        return self.get_by_id(result.inserted_primary_key[0])

    def link_external(self, user_id: int, external_id: str, provider: str) -> User | None:
        if not self._touch(user_id, external_id=external_id, auth_provider=provider):
            return None
        return self.get_by_id(user_id)

    def update_profile(self, user_id: int, name: str, email: str) -> User | None:
        if not self._touch(user_id, name=name, email=email):
            return None
        return self.get_by_id(user_id)

    def update_password(self, user_id: int, password_hash: str) -> bool:
        return self._touch(user_id, password_hash=password_hash)

    def mark_email_verified(self, user_id: int) -> bool:
        return self._touch(user_id, email_verified_at=_now_iso())

    def soft_delete(self, user_id: int) -> bool:
        return self._touch(user_id, deleted_at=_now_iso())

    def is_held_by_deleted(self, email: str, external_id: str) -> bool:
        """True if a soft-deleted row still reserves email or external_id."""
        stmt = _users.select().where(
            _users.c.deleted_at.is_not(None) & ((_users.c.email == email) | (_users.c.external_id == external_id))
        )
        return self._conn.execute(stmt.limit(1)).fetchone() is not None


class RefreshTokenRepository:
    """Refresh tokens, addressed by SHA-256 hash only."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def create(self, user_id: int, token_hash: str, expires_at: datetime) -> RefreshToken:
        created_at = _now_iso()
        result = self._conn.execute(
            _refresh_tokens.insert().values(
                user_id=user_id,
                token_hash=token_hash,
                expires_at=_iso(expires_at),
                created_at=created_at,
            )
        )
        return RefreshToken(
            id=result.inserted_primary_key[0],
            user_id=user_id,
            token_hash=token_hash,
            expires_at=_parse(_iso(expires_at)),
            created_at=_parse(created_at),
        )

    def get_by_hash(self, token_hash: str) -> RefreshToken | None:
        row = self._conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_by_hash(self, token_hash: str) -> int:
        """Delete one token. Idempotent: deleting an unknown hash returns 0, never raises."""
        result = self._conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.token_hash == token_hash))
        return result.rowcount

    def delete_by_user_id(self, user_id: int) -> int:
        result = self._conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.user_id == user_id))
        return result.rowcount

    def list_for_user(self, user_id: int) -> list[RefreshToken]:
        rows = self._conn.execute(
            _refresh_tokens.select().where(_refresh_tokens.c.user_id == user_id).order_by(_refresh_tokens.c.id)
        ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def purge_expired(self, now: datetime) -> int:
        result = self._conn.execute(_refresh_tokens.delete().where(_refresh_tokens.c.expires_at < _iso(now)))
        return result.rowcount


class OneTimeTokenRepository:
    """Password reset or email verification tokens (same shape, different table)."""

    def __init__(self, conn: Connection, table: Table) -> None:
        self._conn = conn
        self._table = table

    def create(self, user_id: int, token: str, expires_at: datetime) -> OneTimeToken:
        created_at = _now_iso()
        result = self._conn.execute(
            self._table.insert().values(
                user_id=user_id,
                token=token,
                expires_at=_iso(expires_at),
                created_at=created_at,
            )
        )
        return OneTimeToken(
            id=result.inserted_primary_key[0],
            user_id=user_id,
            token=token,
            expires_at=_parse(_iso(expires_at)),
            created_at=_parse(created_at),
        )

    def get(self, token: str) -> OneTimeToken | None:
        row = self._conn.execute(self._table.select().where(self._table.c.token == token)).fetchone()
        return _row_to_one_time_token(row) if row is not None else None

    def delete(self, token: str) -> int:
        result = self._conn.execute(self._table.delete().where(self._table.c.token == token))
        return result.rowcount

    def delete_by_user_id(self, user_id: int) -> int:
        result = self._conn.execute(self._table.delete().where(self._table.c.user_id == user_id))
        return result.rowcount

    def list_for_user(self, user_id: int) -> list[OneTimeToken]:
        rows = self._conn.execute(
            self._table.select().where(self._table.c.user_id == user_id).order_by(self._table.c.id)
        ).fetchall()
        return [_row_to_one_time_token(r) for r in rows]

    def purge_expired(self, now: datetime) -> int:
        result = self._conn.execute(self._table.delete().where(self._table.c.expires_at < _iso(now)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        role=row.role,
        external_id=row.external_id,
        auth_provider=row.auth_provider,
        email_verified_at=_parse(row.email_verified_at),
        created_at=_parse(row.created_at),
        updated_at=_parse(row.updated_at),
        deleted_at=_parse(row.deleted_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=_parse(row.expires_at),
        created_at=_parse(row.created_at),
    )


def _row_to_one_time_token(row) -> OneTimeToken:
    return OneTimeToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=_parse(row.expires_at),
        created_at=_parse(row.created_at),
    )
