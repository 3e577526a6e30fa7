"""Periodic flush of both stores, independent of the per-mutation writes."""

from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from .errors import PersistenceError
from .storage.container import Container


class PersistenceScheduler:
    def __init__(self, container: Container, interval_seconds: float) -> None:
        self._container = container
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self.flush_count = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="persistence-flush")
        logger.debug("Persistence flush every {}s", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def flush_once(self) -> bool:
        try:
            self._container.flush()
        except PersistenceError as exc:
            # Retried on the next tick.
            logger.error("Periodic flush failed: {}", exc)
            return False
        self.flush_count += 1
        logger.debug("Periodic flush #{} complete", self.flush_count)
        return True

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self.flush_once()
