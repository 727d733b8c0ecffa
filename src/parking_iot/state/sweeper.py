"""Periodic expiry of overdue reservations."""

import asyncio
import logging
from typing import Optional

from .authority import ReservationAuthority
from .models import LogLevel, SweepResult

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """
    Force-releases reservations past their end time.

    The authority is the source of truth for reservation deadlines, so
    expiry takes effect locally whether or not the release command ever
    reaches the lock. Each sweep also retires unacknowledged commands and
    flags gateways whose heartbeats stopped.
    """

    def __init__(self, authority: ReservationAuthority, interval_seconds: float = 30.0):
        self.authority = authority
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def sweep(self) -> SweepResult:
        """Run one sweep."""
        expired = await self.authority.expire_due_reservations()
        unresolved = self.authority.resolve_unresolved_commands()
        offline = self.authority.check_gateways()

        if expired or unresolved or offline:
            logger.info(
                f"Sweep: {len(expired)} expired, {len(unresolved)} unresolved commands, "
                f"{len(offline)} gateways offline"
            )
        return SweepResult(expired=expired, unresolved_commands=unresolved, offline_gateways=offline)

    async def run(self) -> None:
        logger.info(f"Starting expiration sweeper (interval: {self.interval_seconds}s)")

        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Expiration sweep error: {e}")
                self.authority.log_event("Sweep Error", str(e), LogLevel.ERROR)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
