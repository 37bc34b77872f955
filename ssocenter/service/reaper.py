from __future__ import annotations

import asyncio
from typing import Optional

from ssocenter.logging import get_logger
from ssocenter.service.revocation import RevocationCache

logger = get_logger(__name__)


class Reaper:
    """Background task that purges expired entries from the local blacklist."""

    def __init__(self, revocations: RevocationCache, *, interval_seconds: float = 3600) -> None:
        self.revocations = revocations
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            logger.warning("reaper_already_running")
            return
        self._task = asyncio.create_task(self._run_loop())
        logger.info("reaper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("reaper_stopped")

    def run_once(self) -> int:
        removed = self.revocations.purge_expired()
        logger.info("blacklist_purged", removed=removed, remaining=self.revocations.local_size)
        return removed

    async def _run_loop(self) -> None:
        try:
            while True:
                try:
                    self.run_once()
                except Exception as exc:
                    logger.error(
                        "reaper_sweep_failed",
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("reaper_task_cancelled")
            raise
