"""
Settlement Scheduler
Runs the settlement batch on a fixed interval inside the API process.

Each tick first requeues stale PROCESSING settlements, then processes one
batch. A failing tick is logged and the loop carries on; the interval is also
the retry backoff for requeued settlements.
"""

import asyncio
import logging
from typing import Optional

from schemas import BatchResult
from settlement_service import SettlementOrchestrator

log = logging.getLogger(__name__)


class SettlementScheduler:

    def __init__(self, orchestrator: SettlementOrchestrator, interval_seconds: float = 300.0):
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="settlement-scheduler")
        log.info(f"Settlement scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if not self.running:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        log.info("Settlement scheduler stopped")

    async def tick(self) -> Optional[BatchResult]:
        """One scheduled pass; never raises"""
        try:
            await self.orchestrator.reconcile_stale()
        except Exception as e:
            log.exception(f"Stale settlement sweep failed: {e}")

        try:
            return await self.orchestrator.process_batch()
        except Exception as e:
            log.exception(f"Settlement batch aborted: {e}")
            return None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                await self.tick()
