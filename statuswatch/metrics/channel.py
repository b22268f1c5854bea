from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, List, Optional

from ..errors import StatusWatchError
from .base import (
    ChannelSnapshot,
    ChannelValue,
    GroupSnapshot,
    MetricDefinition,
    MetricDisplayConfig,
    RawReading,
    Sampler,
)
from .history import HistoryRing
from .sources import RawReadingSource

if TYPE_CHECKING:
    from ..services.acquisition import SharedAcquirer

logger = logging.getLogger(__name__)

# Failures of a single tick that degrade to the unavailable sentinel.
TICK_ERRORS = (StatusWatchError, OSError, ValueError, KeyError, TypeError, ArithmeticError)


def _check_interval(interval_seconds: float) -> float:
    if interval_seconds <= 0:
        raise ValueError(f"Polling interval must be positive, got {interval_seconds!r}")
    return float(interval_seconds)


class MetricChannel:
    """One sampler, one source and one history ring, polled as a unit.

    The previous reading and the history are mutated only by ``tick``, which
    never runs twice at once for the same channel.
    """

    def __init__(
        self,
        channel_id: str,
        sampler: Sampler,
        source: RawReadingSource,
        capacity: int,
        interval_seconds: float,
        definition: Optional[MetricDefinition] = None,
        resume_window_seconds: float = 0.0,
    ) -> None:
        if not channel_id:
            raise ValueError("Channel id must not be empty")
        self.id = channel_id
        self.sampler = sampler
        self.source = source
        self.history: HistoryRing[ChannelValue] = HistoryRing(capacity)
        self.interval_seconds = _check_interval(interval_seconds)
        self.resume_window_seconds = resume_window_seconds
        self.definition = definition or MetricDefinition(
            id=channel_id,
            name=channel_id,
            display=MetricDisplayConfig(unit=sampler.unit.value),
        )
        self.group_id: Optional[str] = None
        self._previous: Optional[RawReading] = None
        self._last_value: Optional[ChannelValue] = None
        self._idle_since: Optional[float] = None
        self._failing = False
        self._lock = asyncio.Lock()

    @property
    def has_previous_reading(self) -> bool:
        return self._previous is not None

    def set_interval(self, interval_seconds: float) -> None:
        self.interval_seconds = _check_interval(interval_seconds)

    def activate(self, now: Optional[float] = None) -> None:
        """Prepare for polling after a period with no subscribers."""
        now = time.monotonic() if now is None else now
        if self._idle_since is not None and now - self._idle_since > self.resume_window_seconds:
            logger.debug("Channel %s idle for %.1fs, resetting", self.id, now - self._idle_since)
            self.reset()
        self._idle_since = None

    def deactivate(self, now: Optional[float] = None) -> None:
        self._idle_since = time.monotonic() if now is None else now

    def reset(self) -> None:
        """Forget the previous reading and history, e.g. after a hardware change."""
        self._previous = None
        self._last_value = None
        self.history.clear()

    async def tick(self, acquirer: Optional["SharedAcquirer"] = None) -> ChannelSnapshot:
        """Acquire, derive, record. Failures yield the unavailable sentinel."""
        async with self._lock:
            value = await self._sample(acquirer)
            if value is not None:
                self.history.push(value)
                self._last_value = value
            return self.snapshot()

    async def _sample(self, acquirer: Optional["SharedAcquirer"]) -> Optional[ChannelValue]:
        try:
            if acquirer is not None:
                reading = await acquirer.acquire(self.source)
            else:
                reading = await self.source.acquire()
            if self._previous is not None and reading.captured_at <= self._previous.captured_at:
                logger.debug("Channel %s got a stale reading, keeping last value", self.id)
                return None
            value = self.sampler.derive(self._previous, reading, self._last_value)
        except TICK_ERRORS as exc:
            if not self._failing:
                logger.warning("Channel %s unavailable: %s", self.id, exc)
            else:
                logger.debug("Channel %s still unavailable: %s", self.id, exc)
            self._failing = True
            return self.sampler.unavailable(time.monotonic())

        if self._failing:
            logger.info("Channel %s recovered", self.id)
            self._failing = False
        self._previous = reading
        return value

    def snapshot(self) -> ChannelSnapshot:
        value = self._last_value
        if value is None:
            value = self.sampler.unavailable()
        return ChannelSnapshot(
            channel_id=self.id,
            value=value,
            history=self.history.snapshot(),
            timestamp=datetime.now(timezone.utc),
        )

    def __repr__(self) -> str:
        return f"MetricChannel({self.id!r}, source={self.source!r})"


class ChannelGroup:
    """Several channels polled on one cadence and broadcast as one snapshot."""

    def __init__(
        self,
        group_id: str,
        channels: Iterable[MetricChannel],
        interval_seconds: float,
        definition: Optional[MetricDefinition] = None,
    ) -> None:
        if not group_id:
            raise ValueError("Group id must not be empty")
        self.id = group_id
        self.channels: List[MetricChannel] = list(channels)
        if not self.channels:
            raise ValueError(f"Group '{group_id}' has no channels")
        self.interval_seconds = _check_interval(interval_seconds)
        self.definition = definition or MetricDefinition(
            id=group_id,
            name=group_id,
            display=MetricDisplayConfig(type="group"),
        )
        for channel in self.channels:
            if channel.group_id is not None:
                raise ValueError(
                    f"Channel '{channel.id}' already belongs to group '{channel.group_id}'"
                )
            channel.group_id = group_id

    def set_interval(self, interval_seconds: float) -> None:
        """Change the cadence of the group and of every member."""
        self.interval_seconds = _check_interval(interval_seconds)
        for channel in self.channels:
            channel.set_interval(self.interval_seconds)

    def activate(self, now: Optional[float] = None) -> None:
        for channel in self.channels:
            channel.activate(now)

    def deactivate(self, now: Optional[float] = None) -> None:
        for channel in self.channels:
            channel.deactivate(now)

    def reset(self) -> None:
        for channel in self.channels:
            channel.reset()

    async def tick(self, acquirer: Optional["SharedAcquirer"] = None) -> GroupSnapshot:
        snapshots = await asyncio.gather(*(channel.tick(acquirer) for channel in self.channels))
        return GroupSnapshot(
            group_id=self.id,
            channels={snap.channel_id: snap for snap in snapshots},
            timestamp=datetime.now(timezone.utc),
        )

    def snapshot(self) -> GroupSnapshot:
        return GroupSnapshot(
            group_id=self.id,
            channels={channel.id: channel.snapshot() for channel in self.channels},
            timestamp=datetime.now(timezone.utc),
        )

    def __repr__(self) -> str:
        return f"ChannelGroup({self.id!r}, channels={[c.id for c in self.channels]!r})"
