"""
Deadline sweeper.

Deadlines live in the database (`timeout_at` on change requests,
`expires_at` on exceptions), not in process memory. Each tick reconciles them
against the clock: expired exceptions re-arm enforcement first, then overdue
temporary changes are auto-reverted. A restart loses nothing; the next tick
picks up whatever came due while the process was down.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edictflow.changes.service import ChangeRequestService
from edictflow.config import Settings, get_settings
from edictflow.core.clock import Clock, utcnow
from edictflow.events import EventPublisher
from edictflow.exception_requests.service import ExceptionService

logger = structlog.get_logger()


@dataclass(slots=True)
class SweepResult:
    exceptions_expired: int = 0
    changes_reverted: int = 0


class EnforcementSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        events: EventPublisher,
        settings: Settings | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.events = events
        self.settings = settings or get_settings()
        self.clock = clock

    async def sweep_once(self) -> SweepResult:
        now = self.clock()
        result = SweepResult()
        async with self.session_factory() as session:
            exceptions = ExceptionService(session, self.events, self.settings, self.clock)
            result.exceptions_expired = await exceptions.expire_exceptions(now)

            changes = ChangeRequestService(session, self.events, self.settings, self.clock)
            result.changes_reverted = await changes.expire_overdue(now)

        if result.exceptions_expired or result.changes_reverted:
            logger.info(
                "sweep_completed",
                exceptions_expired=result.exceptions_expired,
                changes_reverted=result.changes_reverted,
            )
        return result

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """Sweep every interval until `stop` is set. Failures wait for the next tick."""
        stop = stop or asyncio.Event()
        interval = self.settings.sweeper_interval_seconds
        logger.info("sweeper_started", interval_seconds=interval)
        while not stop.is_set():
            try:
                await self.sweep_once()
            except Exception as exc:
                logger.error("sweep_failed", error=str(exc), exc_info=True)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("sweeper_stopped")
