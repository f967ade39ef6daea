"""
jobs.py — Periodic maintenance for the alert store.

ExpirySweeper runs as one asyncio task owned by the application lifespan:

    every ALERT_SWEEP_INTERVAL_SECONDS:
        expire_overdue()                       unresolved alerts past expires_at
        purge_older_than(ALERT_RETENTION_DAYS) history cleanup

A failing cycle is logged and the loop carries on with the next one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from backend.app.alerts.alert_service import AlertStore

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        store: AlertStore,
        *,
        interval_seconds: float = 60.0,
        retention_days: int = 30,
    ):
        self.store = store
        self.interval_seconds = interval_seconds
        self.retention_days = retention_days
        self._task: Optional[asyncio.Task] = None
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, int]:
        """One sweep cycle; returns how many alerts were expired and purged."""
        expired = await self.store.expire_overdue()
        purged = await self.store.purge_older_than(self.retention_days)
        self.cycles += 1
        return {"expired": expired, "purged": purged}

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Expiry sweep failed; retrying next cycle")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="alert-expiry-sweeper")
        logger.info("Expiry sweeper started (every %.0fs)", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")
