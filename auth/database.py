"""
auth/database.py -- SQLAlchemy Core schema and engine factory for the auth stores.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

All four stores (users, refresh tokens, blacklist, sessions) share one
engine: they are one logical store with read-after-write consistency.

Timestamps are stored as fixed-width ISO 8601 UTC strings
("2026-01-01T00:00:00.000000+00:00"). Fixed width keeps lexicographic
order equal to chronological order, so range predicates work as plain
string comparisons on every backend.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(100), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for external-only principals
    Column("permissions", BigInteger, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("auth_type", String(16), nullable=False, server_default="password"),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("external_identity", String(255)),  # "DOMAIN\\user"
    Column("domain", String(100)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32)),
    Column("last_login", String(32)),
    # Note: external_identity uniqueness is enforced in code, not SQL.
    # Several backends treat NULLs as distinct, but not all of them do.
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(128), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("created_by_ip", String(64), nullable=False, server_default=""),
    Column("revoked_at", String(32)),
    Column("revoked_by_ip", String(64)),
    Column("replaced_by_token", String(128)),
    Column("auth_type", String(16), nullable=False, server_default="password"),
    Column("user_agent", Text),
    Column("device_info", Text),
    Index("ix_refresh_tokens_user_id", "user_id"),
)

blacklisted_tokens = Table(
    "blacklisted_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_id", String(64), nullable=False, unique=True),  # access token jti
    Column("expires_at", String(32), nullable=False),
    Column("blacklisted_at", String(32), nullable=False),
    Column("reason", String(100)),
    Column("user_id", Integer),
    Column("ip_address", String(64)),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_id", String(64), nullable=False, unique=True),
    Column("user_id", Integer, nullable=False),
    Column("ip_address", String(64), nullable=False, server_default=""),
    Column("user_agent", Text),
    Column("device_info", Text),
    Column("auth_type", String(16), nullable=False, server_default="password"),
    Column("created_at", String(32), nullable=False),
    Column("last_access_at", String(32)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Index("ix_user_sessions_user_id", "user_id"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout for concurrent access.

    WAL lets readers proceed while a writer holds the lock; busy_timeout
    makes a second writer wait instead of failing with "database is locked"
    when two refreshes race. Set per-connection because SQLite PRAGMAs are
    not inherited by new pool connections.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA busy_timeout=5000")


def create_auth_engine(db_url: str) -> Engine:
    """Create the shared engine and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO string.

    Naive datetimes are assumed to already be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
