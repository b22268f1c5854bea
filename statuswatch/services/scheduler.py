from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from ..metrics.registry import MetricRegistry, Pollable
from .acquisition import SharedAcquirer

logger = logging.getLogger(__name__)

Broadcast = Callable[[str, Any], Any]


class _Poller:
    def __init__(self, target: Pollable) -> None:
        self.target = target
        self.stop_event = asyncio.Event()
        self.wakeup = asyncio.Event()
        self.task: Optional[asyncio.Task[None]] = None
        self.running = False
        self.ticks = 0


class PollScheduler:
    """Runs one polling task per active channel or group.

    A target is polled immediately when it starts and then every
    ``interval_seconds``, read afresh before each wait so that
    ``reschedule`` takes effect on a running poller. Its ticks run one
    after another, so a slow acquisition delays the next tick rather than
    overlapping with it.
    Stopping lets an in-flight tick finish and broadcast.
    """

    def __init__(
        self,
        registry: MetricRegistry,
        broadcast: Broadcast,
        acquirer: Optional[SharedAcquirer] = None,
    ) -> None:
        self.registry = registry
        self.broadcast = broadcast
        self.acquirer = acquirer or SharedAcquirer()
        self._pollers: Dict[str, _Poller] = {}

    def start(self, target_id: str) -> None:
        target = self.registry.get(target_id)
        poller = self._pollers.get(target_id)
        target.activate()
        if poller is not None and poller.running:
            if poller.stop_event.is_set():
                logger.debug("Resuming poller for %s", target_id)
                poller.stop_event.clear()
            return

        poller = _Poller(target)
        poller.running = True
        poller.task = asyncio.get_running_loop().create_task(
            self._run(poller), name=f"poll-{target_id}"
        )
        self._pollers[target_id] = poller
        logger.info("Polling %s every %.1fs", target_id, target.interval_seconds)

    def stop(self, target_id: str) -> None:
        poller = self._pollers.get(target_id)
        if poller is None or not poller.running:
            return
        poller.stop_event.set()
        poller.wakeup.set()
        poller.target.deactivate()
        logger.info("Stopped polling %s", target_id)

    def reschedule(self, target_id: str) -> None:
        """Wake a running poller so its current wait uses the new interval."""
        poller = self._pollers.get(target_id)
        if poller is None or not poller.running:
            return
        logger.info("Polling %s every %.1fs", target_id, poller.target.interval_seconds)
        poller.wakeup.set()

    def is_polling(self, target_id: str) -> bool:
        poller = self._pollers.get(target_id)
        return poller is not None and poller.running and not poller.stop_event.is_set()

    def tick_count(self, target_id: str) -> int:
        poller = self._pollers.get(target_id)
        return poller.ticks if poller is not None else 0

    async def shutdown(self) -> None:
        pollers = list(self._pollers.values())
        for poller in pollers:
            poller.stop_event.set()
            poller.wakeup.set()
            if poller.task is not None:
                poller.task.cancel()
        for poller in pollers:
            if poller.task is None:
                continue
            try:
                await poller.task
            except asyncio.CancelledError:
                pass
        self._pollers.clear()

    async def _run(self, poller: _Poller) -> None:
        loop = asyncio.get_running_loop()
        try:
            while not poller.stop_event.is_set():
                started = loop.time()
                await self._tick(poller)
                await self._wait_next(poller, started)
        finally:
            poller.running = False
            if self._pollers.get(poller.target.id) is poller:
                del self._pollers[poller.target.id]

    async def _wait_next(self, poller: _Poller, started: float) -> None:
        loop = asyncio.get_running_loop()
        while not poller.stop_event.is_set():
            poller.wakeup.clear()
            delay = poller.target.interval_seconds - (loop.time() - started)
            if delay <= 0:
                return
            try:
                await asyncio.wait_for(poller.wakeup.wait(), timeout=delay)
            except asyncio.TimeoutError:
                return

    async def _tick(self, poller: _Poller) -> None:
        target = poller.target
        try:
            snapshot = await target.tick(self.acquirer)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Tick of %s failed", target.id)
            snapshot = target.snapshot()
        poller.ticks += 1
        logger.debug("Tick %d of %s", poller.ticks, target.id)
        self.broadcast(target.id, snapshot)
