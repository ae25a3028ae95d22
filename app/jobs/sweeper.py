"""Periodic deletion of stale files in the staging and status directories.

Backstop for jobs that never reached their own cleanup (crash, client disconnect,
abandoned download). Independent of job bookkeeping: it only looks at file age.
"""
import asyncio
import os
import time
from typing import Callable, Iterable, Optional

import aiofiles.os

from app.core.logging import get_logger

logger = get_logger("cleanup")

RESERVED_NAMES = frozenset({"README.md", ".gitkeep"})


class CleanupSweeper:
    """Owns one background sweep task. start() and stop() are both idempotent."""

    def __init__(
        self,
        directories: Iterable[str],
        max_age_seconds: float = 60 * 60,
        interval_seconds: float = 15 * 60,
        reserved: Iterable[str] = RESERVED_NAMES,
        clock: Callable[[], float] = time.time,
    ):
        self.directories = [os.path.abspath(d) for d in directories]
        self.max_age_seconds = max_age_seconds
        self.interval_seconds = interval_seconds
        self.reserved = frozenset(reserved)
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self, now: Optional[float] = None) -> int:
        """Delete regular files older than max_age. Returns how many were removed.
        A file whose age equals max_age is kept; per-file errors are logged and skipped."""
        now = self._clock() if now is None else now
        removed = 0
        for directory in self.directories:
            try:
                entries = await aiofiles.os.listdir(directory)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.error("Failed to read directory", extra={"dir": directory, "err": str(e)})
                continue

            for name in entries:
                if name in self.reserved:
                    continue
                path = os.path.join(directory, name)
                try:
                    if not await aiofiles.os.path.isfile(path):
                        continue
                    age = now - await aiofiles.os.path.getmtime(path)
                    if age > self.max_age_seconds:
                        await aiofiles.os.remove(path)
                        removed += 1
                        logger.info("Deleted old file", extra={"file": name, "age_min": round(age / 60)})
                except OSError as e:
                    # may have been removed by its own job in the meantime
                    logger.warning("Could not process file", extra={"file": name, "err": str(e)})
        return removed

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Sweep failed", exc_info=e)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Sweep now, then every interval. No-op while already running. Must be called from a running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="cleanup-sweeper")
        logger.info(
            "Scheduler started",
            extra={"interval_min": self.interval_seconds / 60, "max_age_min": self.max_age_seconds / 60},
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Scheduler stopped")
