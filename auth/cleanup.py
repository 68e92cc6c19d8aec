"""
auth/cleanup.py -- Periodic sweep of expired blacklist entries, refresh tokens and stale sessions.

Three independent sweeps run on every tick:
  1. blacklist entries whose token expiry has passed
  2. refresh-token records past expiry (revoked or not)
  3. sessions not accessed within the inactivity threshold

Each sweep is isolated: a failure is logged and the remaining sweeps still
run. No sweep touches anything that could still affect an authentication
decision, so the whole pass is idempotent and safe to run at any time.

CleanupScheduler.run() is the long-lived asyncio task started from the API
lifespan. The synchronous run_once() executes in a worker thread so blocking
database I/O never stalls the event loop. The first sweep runs at start.
Stopping is cooperative: set the stop event and the task exits once the
current sweep, if any, has finished.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from auth.blacklist import BlacklistStore
from auth.refresh_tokens import RefreshTokenStore
from auth.sessions import SessionTracker

logger = logging.getLogger("tokenward.auth.cleanup")


@dataclass
class CleanupReport:
    """Row counts removed by one pass. A failed sweep is named in failures."""

    blacklist_removed: int = 0
    refresh_tokens_removed: int = 0
    sessions_removed: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class CleanupScheduler:
    def __init__(
        self,
        blacklist: BlacklistStore,
        refresh_tokens: RefreshTokenStore,
        sessions: SessionTracker,
        interval: timedelta = timedelta(minutes=30),
        inactivity_threshold: timedelta = timedelta(days=7),
    ) -> None:
        self.blacklist = blacklist
        self.refresh_tokens = refresh_tokens
        self.sessions = sessions
        self.interval = interval
        self.inactivity_threshold = inactivity_threshold

    def run_once(self) -> CleanupReport:
        report = CleanupReport()

        try:
            report.blacklist_removed = self.blacklist.cleanup_expired()
        except Exception:
            logger.exception("Blacklist cleanup failed")
            report.failures.append("blacklist")

        try:
            report.refresh_tokens_removed = self.refresh_tokens.cleanup_expired()
        except Exception:
            logger.exception("Refresh token cleanup failed")
            report.failures.append("refresh_tokens")

        try:
            report.sessions_removed = self.sessions.cleanup_inactive(self.inactivity_threshold)
        except Exception:
            logger.exception("Session cleanup failed")
            report.failures.append("sessions")

        logger.info(
            "Cleanup pass: %d blacklist entries, %d refresh tokens, %d sessions removed",
            report.blacklist_removed,
            report.refresh_tokens_removed,
            report.sessions_removed,
        )
        return report

    async def _sweep(self) -> None:
        try:
            await asyncio.to_thread(self.run_once)
        except Exception:
            # One bad pass must not end the schedule.
            logger.exception("Cleanup pass crashed")

    async def run(self, stop: asyncio.Event) -> None:
        """Sweep immediately, then once per interval until stop is set.

        Rows left over from before a restart are reaped on start instead of
        waiting out a full interval.
        """
        seconds = self.interval.total_seconds()
        logger.info("Cleanup scheduler started (interval=%ss)", int(seconds))
        while not stop.is_set():
            await self._sweep()
            try:
                await asyncio.wait_for(stop.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Cleanup scheduler stopped")
