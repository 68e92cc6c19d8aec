"""
auth/refresh_tokens.py -- Persistence for refresh-token records.

Rotation safety lives here, not in the service: every revocation is a
conditional UPDATE guarded by "revoked_at IS NULL AND expires_at > now".
When two requests present the same refresh token concurrently, the database
serialises the two UPDATEs and only the first sees rowcount == 1. The loser
observes "not active" without any check-then-act window in request code.

The raw token is the lookup key. It is 512 bits of randomness, so storing
it as-is does not weaken it the way storing a password would; revoked and
expired rows are reaped by the cleanup sweep.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Engine

from auth.database import from_iso, refresh_tokens, to_iso, utcnow
from auth.models import AuthType, RefreshToken


class RefreshTokenStore:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def _active_clause(self, now_iso: str):
        return and_(refresh_tokens.c.revoked_at.is_(None), refresh_tokens.c.expires_at > now_iso)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_token(self, token: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token == token)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def get_active_by_user(self, user_id: int) -> list[RefreshToken]:
        """Active tokens for a user, oldest first."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where((refresh_tokens.c.user_id == user_id) & self._active_clause(now))
                .order_by(refresh_tokens.c.created_at, refresh_tokens.c.id)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def count_active_by_user(self, user_id: int) -> int:
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(refresh_tokens)
                .where((refresh_tokens.c.user_id == user_id) & self._active_clause(now))
            ).scalar()
        return count or 0

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def insert(self, record: RefreshToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.insert().values(
                    token=record.token,
                    user_id=record.user_id,
                    expires_at=to_iso(record.expires_at),
                    created_at=to_iso(record.created_at),
                    created_by_ip=record.created_by_ip,
                    auth_type=record.auth_type.value,
                    user_agent=record.user_agent,
                    device_info=record.device_info,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def revoke(self, token: str, revoked_by_ip: str) -> bool:
        """Mark an active token revoked. Returns True only for the caller that won.

        Already revoked or expired tokens are left untouched and return False.
        """
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.token == token) & self._active_clause(now))
                .values(revoked_at=now, revoked_by_ip=revoked_by_ip)
            )
            conn.commit()
        return result.rowcount == 1

    def set_replaced_by(self, token: str, replaced_by_token: str) -> bool:
        """Record the rotation successor on an already revoked token."""
        with self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.token == token) & refresh_tokens.c.revoked_at.is_not(None))
                .values(replaced_by_token=replaced_by_token)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int, revoked_by_ip: str) -> int:
        """Revoke every active token for a user. Returns the number revoked."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.user_id == user_id) & self._active_clause(now))
                .values(revoked_at=now, revoked_by_ip=revoked_by_ip)
            )
            conn.commit()
        return result.rowcount

    def revoke_oldest(self, user_id: int, revoked_by_ip: str) -> bool:
        """Revoke the oldest active token of a user (by created_at, then id).

        The target is picked by a subquery inside the same UPDATE, so two
        concurrent logins cannot both pick and "revoke" the same row while
        the second-oldest survives.
        """
        now = to_iso(self._clock())
        oldest = (
            select(refresh_tokens.c.id)
            .where((refresh_tokens.c.user_id == user_id) & self._active_clause(now))
            .order_by(refresh_tokens.c.created_at, refresh_tokens.c.id)
            .limit(1)
            .scalar_subquery()
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.id == oldest) & refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=now, revoked_by_ip=revoked_by_ip)
            )
            conn.commit()
        return result.rowcount == 1

    def cleanup_expired(self) -> int:
        """Delete records whose expiry has passed, revoked or not. Idempotent."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at <= now))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mapper
# ---------------------------------------------------------------------------


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        token=row.token,
        user_id=row.user_id,
        expires_at=from_iso(row.expires_at),
        created_at=from_iso(row.created_at),
        created_by_ip=row.created_by_ip,
        revoked_at=from_iso(row.revoked_at),
        revoked_by_ip=row.revoked_by_ip,
        replaced_by_token=row.replaced_by_token,
        auth_type=AuthType(row.auth_type),
        user_agent=row.user_agent,
        device_info=row.device_info,
    )
