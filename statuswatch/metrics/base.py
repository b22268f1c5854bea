from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union


class Unit(str, Enum):
    PERCENT = "percent"
    BYTES_PER_SECOND = "bytes_per_second"
    BYTES = "bytes"
    CELSIUS = "celsius"
    COUNT = "count"
    LOAD = "load"


@dataclass(frozen=True)
class DerivedValue:
    """A unit-tagged metric value. ``value is None`` means "unavailable"."""

    value: Optional[float]
    unit: Unit
    captured_at: Optional[float] = None

    def __post_init__(self) -> None:
        if self.value is None:
            return
        if not math.isfinite(self.value):
            raise ValueError(f"Derived value must be finite, got {self.value!r}")
        if self.unit is Unit.PERCENT:
            object.__setattr__(self, "value", min(max(float(self.value), 0.0), 100.0))
        elif self.unit in (Unit.BYTES_PER_SECOND, Unit.BYTES, Unit.COUNT, Unit.LOAD):
            object.__setattr__(self, "value", max(float(self.value), 0.0))

    @classmethod
    def unavailable(cls, unit: Unit, captured_at: Optional[float] = None) -> "DerivedValue":
        return cls(None, unit, captured_at)

    @classmethod
    def zero(cls, unit: Unit, captured_at: Optional[float] = None) -> "DerivedValue":
        return cls(0.0, unit, captured_at)

    @property
    def available(self) -> bool:
        return self.value is not None

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "unit": self.unit.value}


ChannelValue = Union[DerivedValue, Dict[str, DerivedValue]]


def _freeze(counters: Mapping[str, float]) -> Mapping[str, float]:
    return MappingProxyType(dict(counters))


@dataclass(frozen=True)
class RawReading:
    """Timestamped OS counters, as returned by a raw reading source.

    ``groups`` carries per-device counters keyed by a stable identifier
    (``cpu0``, ``eth0``, ``nvme0n1``) for keyed samplers.
    """

    counters: Mapping[str, float]
    captured_at: float = field(default_factory=time.monotonic)
    groups: Mapping[str, Mapping[str, float]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "counters", _freeze(self.counters))
        object.__setattr__(
            self,
            "groups",
            MappingProxyType({key: _freeze(value) for key, value in self.groups.items()}),
        )

    def group(self, key: str) -> "RawReading":
        return RawReading(self.groups[key], self.captured_at)


@dataclass(frozen=True)
class MetricDisplayConfig:
    """Configuration for how a metric should be rendered on the client."""

    type: str = "timeseries"  # e.g. timeseries, gauge, table
    unit: Optional[str] = None
    options: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class MetricDefinition:
    """Declarative description of a channel for the dashboard."""

    id: str
    name: str
    description: str = ""
    category: str = "system"
    display: MetricDisplayConfig = field(default_factory=MetricDisplayConfig)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Sampler(ABC):
    """Turns a previous and a current raw reading into a derived value.

    Samplers hold configuration only. ``last`` is the channel's previous
    derived value, used by samplers that hold their value when a delta is
    degenerate.
    """

    unit: Unit

    @abstractmethod
    def derive(
        self,
        previous: Optional[RawReading],
        current: RawReading,
        last: Optional[ChannelValue] = None,
    ) -> ChannelValue:
        """Return the derived value for ``current``."""

    def unavailable(self, captured_at: Optional[float] = None) -> DerivedValue:
        return DerivedValue.unavailable(self.unit, captured_at)


def value_to_dict(value: ChannelValue) -> Any:
    if isinstance(value, DerivedValue):
        return value.to_dict()
    return {key: item.to_dict() for key, item in value.items()}


@dataclass(frozen=True)
class ChannelSnapshot:
    """Consistent view of one channel after a tick."""

    channel_id: str
    value: ChannelValue
    history: Tuple[ChannelValue, ...]
    timestamp: datetime

    @property
    def available(self) -> bool:
        if isinstance(self.value, DerivedValue):
            return self.value.available
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "timestamp": self.timestamp.isoformat(),
            "available": self.available,
            "value": value_to_dict(self.value),
            "history": [value_to_dict(item) for item in self.history],
        }


@dataclass(frozen=True)
class GroupSnapshot:
    """Bundled snapshot of every channel in a group, delivered as one message."""

    group_id: str
    channels: Mapping[str, ChannelSnapshot]
    timestamp: datetime

    def __getitem__(self, channel_id: str) -> ChannelSnapshot:
        return self.channels[channel_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "group_id": self.group_id,
            "timestamp": self.timestamp.isoformat(),
            "channels": {key: snap.to_dict() for key, snap in self.channels.items()},
        }


Snapshot = Union[ChannelSnapshot, GroupSnapshot]
