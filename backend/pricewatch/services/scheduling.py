from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PeriodicService(ABC):
    """Background loop calling ``tick()`` on a fixed cadence.

    Subclasses implement ``_run()`` and name the pydantic ``report_type`` it
    returns. Ticks never overlap: ``tick()`` called while another is in
    progress returns a report with ``skipped=True``. A tick that overruns the
    interval makes the loop skip the ticks it missed instead of running them
    back to back, and any exception escaping a tick is logged without
    stopping the loop.
    """

    name = "periodic"
    report_type: Any = None

    def __init__(self, interval_seconds: float, *, clock: Callable[[], datetime] = utc_now) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = float(interval_seconds)
        self._clock = clock
        self._in_tick = False
        self._task: asyncio.Task | None = None

    async def tick(self) -> Any:
        started_at = self._clock()
        if self._in_tick:
            logger.warning("%s tick requested while previous tick is still running; skipping", self.name)
            return self.report_type(started_at=started_at, skipped=True)
        self._in_tick = True
        try:
            return await self._run(started_at)
        finally:
            self._in_tick = False

    @abstractmethod
    async def _run(self, started_at: datetime) -> Any:
        """One pass of the service's work; returns a ``report_type`` instance."""

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        next_due = loop.time()
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("%s tick failed", self.name)

            next_due += self.interval_seconds
            now = loop.time()
            if now > next_due:
                missed = int((now - next_due) // self.interval_seconds) + 1
                logger.warning("%s tick overran; skipping %d scheduled tick(s)", self.name, missed)
                next_due += missed * self.interval_seconds
            await asyncio.sleep(next_due - now)

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever(), name=f"{self.name}-loop")

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._task.done():
            self._task = None
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
