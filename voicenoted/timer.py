"""Periodic elapsed-time ticks for the capture stage."""

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def format_elapsed(seconds: float) -> str:
    """Format a duration as ``MM:SS``, or ``HH:MM:SS`` past one hour."""
    total = max(0, int(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class ElapsedTimer:
    """Calls ``on_tick`` with the elapsed seconds every ``interval`` seconds."""

    def __init__(
        self,
        interval: float,
        on_tick: Callable[[float], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.on_tick = on_tick
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._started_at: float = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.on_tick(self.clock() - self._started_at)
            except Exception:
                logger.exception("Error in elapsed-time tick handler")

    def start(self) -> None:
        """Start ticking. A running timer is restarted from zero."""
        self.stop()
        self._started_at = self.clock()
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        """Stop ticking. Safe to call when not running."""
        if self._task is not None:
            if not self._task.done():
                self._task.cancel()
            self._task = None
