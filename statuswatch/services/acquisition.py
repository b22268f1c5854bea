from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from ..metrics.base import RawReading
from ..metrics.sources import RawReadingSource

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    task: "asyncio.Future[RawReading]"
    completed_at: Optional[float] = None


class SharedAcquirer:
    """Serves channels that share a source key from a single OS read.

    Concurrent requests for the same key await one in-flight acquisition.
    A successful reading is reused for ``window_seconds`` after it
    completes; failures are never reused.
    """

    def __init__(self, window_seconds: float = 0.5) -> None:
        if window_seconds < 0:
            raise ValueError(f"Shared reading window must not be negative, got {window_seconds!r}")
        self.window_seconds = window_seconds
        self._entries: Dict[str, _Entry] = {}
        self.acquisitions = 0

    async def acquire(self, source: RawReadingSource) -> RawReading:
        entry = self._entries.get(source.key)
        if entry is not None:
            if not entry.task.done():
                logger.debug("Joining in-flight read of %s", source.key)
                return await asyncio.shield(entry.task)
            if (
                entry.completed_at is not None
                and not entry.task.cancelled()
                and entry.task.exception() is None
                and time.monotonic() - entry.completed_at <= self.window_seconds
            ):
                logger.debug("Reusing read of %s", source.key)
                return entry.task.result()

        self.acquisitions += 1
        entry = _Entry(task=asyncio.ensure_future(source.acquire()))
        entry.task.add_done_callback(lambda _: setattr(entry, "completed_at", time.monotonic()))
        self._entries[source.key] = entry
        return await asyncio.shield(entry.task)

    def clear(self) -> None:
        self._entries.clear()
