from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from ..config import Settings
from ..metrics.base import ChannelValue, Snapshot
from ..metrics.channel import ChannelGroup
from ..metrics.registry import MetricRegistry
from ..metrics.system import Hardware, build_default_registry, detect_hardware
from .acquisition import SharedAcquirer
from .scheduler import PollScheduler
from .subscriptions import Consumer, SubscriptionRegistry

logger = logging.getLogger(__name__)


def _check_window(target_id: str, interval_seconds: float, window_seconds: float) -> None:
    if interval_seconds <= window_seconds:
        raise ValueError(
            f"Interval of '{target_id}' ({interval_seconds}s) must exceed "
            f"the shared reading window ({window_seconds}s)"
        )


class MetricsEngine:
    """Wires channels, subscriptions and polling together.

    Construct one per process (or per test) and pass it to consumers.
    ``subscribe`` and ``unsubscribe`` must be called from the event loop
    thread since they start and stop polling tasks.
    """

    def __init__(self, registry: MetricRegistry, shared_reading_window_seconds: float = 0.5) -> None:
        for target in registry.all():
            _check_window(target.id, target.interval_seconds, shared_reading_window_seconds)
        self.registry = registry
        self.acquirer = SharedAcquirer(shared_reading_window_seconds)
        self.subscriptions = SubscriptionRegistry(on_first=self._activate, on_last=self._deactivate)
        self.scheduler = PollScheduler(registry, self.subscriptions.broadcast, self.acquirer)

    @classmethod
    def from_settings(cls, settings: Settings, hardware: Optional[Hardware] = None) -> "MetricsEngine":
        hardware = hardware or detect_hardware(settings.proc_root)
        registry = build_default_registry(settings, hardware)
        return cls(registry, settings.shared_reading_window_seconds)

    def subscribe(self, target_id: str, consumer: Consumer) -> None:
        self.registry.get(target_id)
        self.subscriptions.subscribe(target_id, consumer)

    def unsubscribe(self, target_id: str, consumer: Consumer) -> None:
        self.subscriptions.unsubscribe(target_id, consumer)

    def snapshot(self, target_id: str) -> Snapshot:
        """Latest retained state of a channel or group, without polling."""
        return self.registry.get(target_id).snapshot()

    def history(self, channel_id: str, limit: Optional[int] = None) -> Tuple[ChannelValue, ...]:
        ring = self.registry.get_channel(channel_id).history
        return ring.snapshot() if limit is None else ring.latest(limit)

    def group_history(
        self, group_id: str, limit: Optional[int] = None
    ) -> Dict[str, Tuple[ChannelValue, ...]]:
        """Per-member histories of a group, keyed by channel id."""
        group = self.registry.get(group_id)
        if not isinstance(group, ChannelGroup):
            raise KeyError(f"Metric '{group_id}' is not a group.")
        return {channel.id: self.history(channel.id, limit) for channel in group.channels}

    def set_interval(self, target_id: str, interval_seconds: float) -> None:
        """Change the polling cadence of a channel or group, even while it is polled."""
        target = self.registry.get(target_id)
        _check_window(target_id, interval_seconds, self.acquirer.window_seconds)
        target.set_interval(interval_seconds)
        self.scheduler.reschedule(target_id)

    def is_polling(self, target_id: str) -> bool:
        return self.scheduler.is_polling(target_id)

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()
        logger.info("Metrics engine stopped")

    def _activate(self, target_id: str) -> None:
        self.scheduler.start(target_id)

    def _deactivate(self, target_id: str) -> None:
        self.scheduler.stop(target_id)
