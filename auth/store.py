"""
auth/store.py -- SQLAlchemy Core persistence for principals (users).

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Service and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Username and email lookups are exact, case-sensitive matches. "Alice" and
  "alice" are different principals; no normalisation is applied on write or
  read so the two paths can never disagree.

  token_version is bumped with a single UPDATE (token_version + 1) so two
  concurrent Revoke-All calls can never both write the same new value.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.database import from_iso, to_iso, users, utcnow
from auth.models import AuthType, User
from auth.permissions import validate_mask


class UserStore:
    """Repository for User entities.

    Usage:
        engine = create_auth_engine("sqlite:///tokenward.db")
        store = UserStore(engine)
        user_id = store.create_user(User(username="alice", email="alice@example.com"))
        user = store.get_by_username("alice")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive), active or not."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_external_identity(self, identity: str) -> User | None:
        """Look up a user by asserted external identity ("DOMAIN\\user")."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users.select().where(users.c.external_identity == identity).order_by(users.c.id)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def username_exists(self, username: str, exclude_user_id: int | None = None) -> bool:
        return self._exists(users.c.username == username, exclude_user_id)

    def email_exists(self, email: str, exclude_user_id: int | None = None) -> bool:
        return self._exists(users.c.email == email, exclude_user_id)

    def external_identity_exists(self, identity: str, exclude_user_id: int | None = None) -> bool:
        return self._exists(users.c.external_identity == identity, exclude_user_id)

    def list_users(self) -> list[User]:
        """Return all users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(users.select().order_by(users.c.username)).fetchall()
        return [_row_to_user(r) for r in rows]

    def get_token_version(self, user_id: int) -> int | None:
        with self.engine.connect() as conn:
            return conn.execute(select(users.c.token_version).where(users.c.id == user_id)).scalar()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers treat that as a concurrent registration that won.
        """
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                users.insert().values(
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    permissions=validate_mask(user.permissions),
                    is_active=1 if user.is_active else 0,
                    auth_type=user.auth_type.value,
                    token_version=user.token_version,
                    external_identity=user.external_identity,
                    domain=user.domain,
                    created_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def update_permissions(self, user_id: int, mask: int) -> bool:
        """Replace a user's bitmask. Returns False if user_id was not found."""
        return self._update(user_id, permissions=validate_mask(mask))

    def bulk_update_permissions(self, user_ids: list[int], mask: int) -> int:
        """Replace the bitmask for every listed user. Returns rows updated."""
        if not user_ids:
            return 0
        with self.engine.connect() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id.in_(user_ids))
                .values(permissions=validate_mask(mask), updated_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount

    def set_active(self, user_id: int, is_active: bool) -> bool:
        return self._update(user_id, is_active=1 if is_active else 0)

    def increment_token_version(self, user_id: int) -> int | None:
        """Atomically bump token_version and return the new value.

        Returns None if user_id was not found.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(token_version=users.c.token_version + 1, updated_at=to_iso(self._clock()))
            )
            if result.rowcount == 0:
                conn.rollback()
                return None
            version = conn.execute(select(users.c.token_version).where(users.c.id == user_id)).scalar()
            conn.commit()
        return version

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login=to_iso(self._clock())))
            conn.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _exists(self, clause, exclude_user_id: int | None) -> bool:
        query = select(func.count()).select_from(users).where(clause)
        if exclude_user_id is not None:
            query = query.where(users.c.id != exclude_user_id)
        with self.engine.connect() as conn:
            count = conn.execute(query).scalar()
        return (count or 0) > 0

    def _update(self, user_id: int, **fields) -> bool:
        fields["updated_at"] = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        permissions=row.permissions,
        is_active=bool(row.is_active),
        auth_type=AuthType(row.auth_type),
        token_version=row.token_version,
        external_identity=row.external_identity,
        domain=row.domain,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        last_login=from_iso(row.last_login),
    )
