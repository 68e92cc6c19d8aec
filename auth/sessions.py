"""
auth/sessions.py -- Lightweight session records, one per successful login.

Sessions are for observability and active-session counting. They do not
gate access: access is decided by the token codec, the blacklist and the
principal's token_version.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from auth.database import from_iso, to_iso, user_sessions, utcnow
from auth.models import AuthType, UserSession


class SessionTracker:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utcnow) -> None:
        self.engine = engine
        self._clock = clock

    def create(self, session: UserSession) -> int:
        now = self._clock()
        created_at = session.created_at or now
        last_access_at = session.last_access_at or created_at
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.insert().values(
                    session_id=session.session_id,
                    user_id=session.user_id,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    device_info=session.device_info,
                    auth_type=session.auth_type.value,
                    created_at=to_iso(created_at),
                    last_access_at=to_iso(last_access_at),
                    is_active=1 if session.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_session_id(self, session_id: str) -> UserSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.session_id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_active_by_user(self, user_id: int) -> list[UserSession]:
        """Active sessions for a user, most recently used first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                user_sessions.select()
                .where((user_sessions.c.user_id == user_id) & (user_sessions.c.is_active == 1))
                .order_by(user_sessions.c.last_access_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_active(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(user_sessions)
                .where((user_sessions.c.user_id == user_id) & (user_sessions.c.is_active == 1))
            ).scalar()
        return count or 0

    def deactivate(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update()
                .where((user_sessions.c.session_id == session_id) & (user_sessions.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def deactivate_all_for_user(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update()
                .where((user_sessions.c.user_id == user_id) & (user_sessions.c.is_active == 1))
                .values(is_active=0)
            )
            conn.commit()
        return result.rowcount

    def touch(self, session_id: str, user_id: int | None = None) -> bool:
        """Stamp last_access_at on an active session, optionally only if user_id owns it."""
        clause = (user_sessions.c.session_id == session_id) & (user_sessions.c.is_active == 1)
        if user_id is not None:
            clause = clause & (user_sessions.c.user_id == user_id)
        with self.engine.connect() as conn:
            result = conn.execute(
                user_sessions.update()
                .where(clause)
                .values(last_access_at=to_iso(self._clock()))
            )
            conn.commit()
        return result.rowcount > 0

    def cleanup_inactive(self, threshold: timedelta) -> int:
        """Delete sessions not accessed within threshold, active flag or not.

        Deactivated sessions go through the same rule: they are kept for the
        threshold period for auditing, then reaped. Idempotent.
        """
        cutoff = to_iso(self._clock() - threshold)
        last_seen = func.coalesce(user_sessions.c.last_access_at, user_sessions.c.created_at)
        with self.engine.connect() as conn:
            result = conn.execute(user_sessions.delete().where(last_seen < cutoff))
            conn.commit()
        return result.rowcount


def _row_to_session(row) -> UserSession:
    return UserSession(
        id=row.id,
        session_id=row.session_id,
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        device_info=row.device_info,
        auth_type=AuthType(row.auth_type),
        created_at=from_iso(row.created_at),
        last_access_at=from_iso(row.last_access_at),
        is_active=bool(row.is_active),
    )
