"""Periodic non-interactive reconcile loop.

The host platform owns the timer in production (widget refresh worker, app
resume); this loop is the in-process equivalent for long-running hosts.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from orgcal.errors import OperationStatus

if TYPE_CHECKING:
    from orgcal.sync import SyncEngine

logger = logging.getLogger(__name__)


class ReconcilePoller:
    """Calls ``engine.reconcile()`` every *interval_minutes*, or sooner on request.

    The interval defaults to the engine's ``[agenda.sync] interval_minutes``.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_minutes: float | None = None,
    ) -> None:
        if interval_minutes is None:
            interval_minutes = engine.config.sync.interval_minutes
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")
        self._engine = engine
        self.interval_minutes = interval_minutes
        self._interval_seconds = interval_minutes * 60
        self._wake = asyncio.Event()
        self._stopping = False
        self.runs = 0
        self.last_status: OperationStatus | None = None

    def request_reconcile(self) -> None:
        """Run the next reconcile now instead of at the end of the interval."""
        self._wake.set()

    def stop(self) -> None:
        self._stopping = True
        self._wake.set()

    async def run(self) -> None:
        logger.debug("Reconcile poller started (interval=%ss)", self._interval_seconds)
        while not self._stopping:
            try:
                self.last_status = await self._engine.reconcile()
                logger.info(
                    "Reconcile finished: %s (%s)", self.last_status.kind, self.last_status.message
                )
            except Exception as exc:
                logger.error("Reconcile poller error: %s", exc, exc_info=True)
            self.runs += 1

            if self._stopping:
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._interval_seconds)
                self._wake.clear()
                logger.debug("Reconcile poller woken before the interval elapsed")
            except TimeoutError:
                pass
        logger.debug("Reconcile poller stopped after %d run(s)", self.runs)


async def run_reconcile_poller(
    engine: SyncEngine,
    interval_minutes: float | None = None,
    stop: asyncio.Event | None = None,
) -> ReconcilePoller:
    """Run a :class:`ReconcilePoller` until *stop* is set; returns the finished poller."""
    poller = ReconcilePoller(engine, interval_minutes)
    watcher: asyncio.Future | None = None
    if stop is not None:

        async def _stop_when_set() -> None:
            await stop.wait()
            poller.stop()

        watcher = asyncio.ensure_future(_stop_when_set())
    try:
        await poller.run()
    finally:
        if watcher is not None:
            watcher.cancel()
    return poller
