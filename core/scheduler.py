"""
core/scheduler.py — Session Expiry Sweeper
===========================================
Background task that moves DRAFT registration sessions past their TTL to
EXPIRED. Started and stopped by the lifespan in main.py:

    await expiry_sweeper.start()
    ...
    await expiry_sweeper.stop()

Each sweep runs in its own database session and transaction. `submit`
re-checks `expires_at` itself, so a sweep landing mid-request is harmless.
"""

import asyncio
import logging
from typing import Optional

from config import settings
from db.session import AsyncSessionLocal
from modules.registration import expire_sessions

logger = logging.getLogger("cadastre.scheduler")


class ExpirySweeper:

    def __init__(self, interval_seconds: int, session_factory=None):
        self.interval_seconds = interval_seconds
        self.session_factory = session_factory
        self._task: Optional[asyncio.Task] = None
        self.last_expired = 0

    async def sweep_once(self) -> int:
        factory = self.session_factory or AsyncSessionLocal
        async with factory() as db:
            self.last_expired = await expire_sessions(db)
        return self.last_expired

    async def _run(self):
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # keep sweeping; the next run retries the same rows
                logger.exception("Session expiry sweep failed")
            await asyncio.sleep(self.interval_seconds)

    async def start(self):
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name="session-expiry-sweeper")
        logger.info(f"ExpirySweeper: running every {self.interval_seconds}s")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("ExpirySweeper: stopped")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()


# Singleton, import this everywhere:  from core.scheduler import expiry_sweeper
expiry_sweeper = ExpirySweeper(settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
