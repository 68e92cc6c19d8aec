"""
auth/blacklist.py -- Revoked access-token identifiers.

Access tokens are stateless JWTs; this table is the side channel that lets
one be rejected before its natural expiry. Only the jti is stored, never the
token itself. Each entry expires together with the token it blocks, after
which the cleanup sweep deletes it: by then signature verification rejects
the token on expiry anyway.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.database import blacklisted_tokens, from_iso, to_iso, utcnow
from auth.models import BlacklistedToken


class BlacklistStore:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def add(
        self,
        token_id: str,
        expires_at: datetime,
        reason: str | None = None,
        user_id: int | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Blacklist a jti. Returns False if it was already blacklisted.

        A duplicate is not an error: logout followed by revoke of the same
        token both try to add the entry, and the first insert already did
        the job.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    blacklisted_tokens.insert().values(
                        token_id=token_id,
                        expires_at=to_iso(expires_at),
                        blacklisted_at=to_iso(self._clock()),
                        reason=reason,
                        user_id=user_id,
                        ip_address=ip_address,
                    )
                )
                conn.commit()
        except IntegrityError:
            return False
        return True

    def is_blacklisted(self, token_id: str) -> bool:
        """Membership test by jti. Expired entries still count until swept."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(blacklisted_tokens).where(blacklisted_tokens.c.token_id == token_id)
            ).scalar()
        return (count or 0) > 0

    def get_by_user(self, user_id: int) -> list[BlacklistedToken]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                blacklisted_tokens.select()
                .where(blacklisted_tokens.c.user_id == user_id)
                .order_by(blacklisted_tokens.c.blacklisted_at.desc())
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def cleanup_expired(self) -> int:
        """Delete entries whose expiry has passed. Idempotent."""
        now = to_iso(self._clock())
        with self.engine.connect() as conn:
            result = conn.execute(blacklisted_tokens.delete().where(blacklisted_tokens.c.expires_at <= now))
            conn.commit()
        return result.rowcount


def _row_to_entry(row) -> BlacklistedToken:
    return BlacklistedToken(
        id=row.id,
        token_id=row.token_id,
        expires_at=from_iso(row.expires_at),
        blacklisted_at=from_iso(row.blacklisted_at),
        reason=row.reason,
        user_id=row.user_id,
        ip_address=row.ip_address,
    )
