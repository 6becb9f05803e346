"""Periodic liquidation sweeps on an APScheduler ``AsyncIOScheduler``.

The composition root owns one ``LiquidationScheduler``: it starts it once and
shuts it down on exit. Tests call ``LiquidationMonitor.sweep`` directly.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from liquidation_monitor.monitor import LiquidationMonitor, SweepSummary

log = logging.getLogger(__name__)

JOB_ID = "liquidation-sweep"


class LiquidationScheduler:
    def __init__(self, monitor: LiquidationMonitor, *, interval_ms: int, initial_delay_ms: int = 0):
        self._monitor = monitor
        self._interval_ms = interval_ms
        self._initial_delay_ms = initial_delay_ms
        self.scheduler: Optional[AsyncIOScheduler] = None

    async def step(self) -> Optional[SweepSummary]:
        """Run one sweep; errors are logged so the job keeps its schedule."""
        try:
            return await self._monitor.sweep()
        except Exception:
            log.exception("Liquidation sweep failed")
            return None

    def start(self) -> None:
        if self.scheduler is not None:
            raise RuntimeError("liquidation scheduler already started")
        scheduler = AsyncIOScheduler(timezone=timezone.utc)
        scheduler.add_job(
            self.step,
            "interval",
            id=JOB_ID,
            seconds=self._interval_ms / 1000,
            next_run_time=datetime.now(timezone.utc) + timedelta(milliseconds=self._initial_delay_ms),
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self.scheduler = scheduler
        log.info(
            "Liquidation sweeps every %ss (first in %ss)",
            self._interval_ms / 1000, self._initial_delay_ms / 1000,
        )

    def shutdown(self) -> None:
        if self.scheduler is None:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = None
        log.info("Liquidation scheduler stopped")
