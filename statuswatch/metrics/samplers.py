"""Delta math shared by every channel.

Rate samplers report zero on the first tick, on a non-positive elapsed time
and on counter resets. Busy ratio samplers hold the previous value when no
ticks elapsed. Gauges pass the current reading through.
"""

from typing import Callable, Dict, Optional, Sequence

from ..errors import SampleError
from .base import ChannelValue, DerivedValue, RawReading, Sampler, Unit


def _counter(reading: RawReading, key: str) -> float:
    try:
        return float(reading.counters[key])
    except KeyError as exc:
        raise SampleError(f"Reading has no counter '{key}'") from exc
    except (TypeError, ValueError) as exc:
        raise SampleError(f"Counter '{key}' is not numeric") from exc


def _sum_counters(reading: RawReading, keys: Sequence[str]) -> float:
    return sum(_counter(reading, key) for key in keys)


class RateSampler(Sampler):
    """Per-second rate of a monotonically increasing counter."""

    def __init__(self, counter: str, unit: Unit = Unit.BYTES_PER_SECOND, scale: float = 1.0) -> None:
        self.counter = counter
        self.unit = unit
        self.scale = scale

    def derive(
        self,
        previous: Optional[RawReading],
        current: RawReading,
        last: Optional[ChannelValue] = None,
    ) -> DerivedValue:
        value = _counter(current, self.counter)
        if previous is None:
            return DerivedValue.zero(self.unit, current.captured_at)
        elapsed = current.captured_at - previous.captured_at
        delta = value - _counter(previous, self.counter)
        if elapsed <= 0 or delta < 0:
            return DerivedValue.zero(self.unit, current.captured_at)
        return DerivedValue(delta * self.scale / elapsed, self.unit, current.captured_at)


class BusyRatioSampler(Sampler):
    """Busy share of elapsed ticks, ``(dTotal - dIdle) / dTotal * 100``."""

    unit = Unit.PERCENT

    def __init__(self, idle: Sequence[str] = ("idle",), total: Sequence[str] = ("total",)) -> None:
        self.idle = tuple(idle)
        self.total = tuple(total)

    def derive(
        self,
        previous: Optional[RawReading],
        current: RawReading,
        last: Optional[ChannelValue] = None,
    ) -> DerivedValue:
        idle = _sum_counters(current, self.idle)
        total = _sum_counters(current, self.total)
        if previous is None:
            return DerivedValue.zero(self.unit, current.captured_at)
        delta_idle = idle - _sum_counters(previous, self.idle)
        delta_total = total - _sum_counters(previous, self.total)
        if delta_total == 0:
            if isinstance(last, DerivedValue) and last.available:
                return DerivedValue(last.value, self.unit, current.captured_at)
            return DerivedValue.zero(self.unit, current.captured_at)
        if delta_total < 0:
            # counters reset
            return DerivedValue.zero(self.unit, current.captured_at)
        usage = (delta_total - delta_idle) / delta_total * 100.0
        return DerivedValue(usage, self.unit, current.captured_at)


class GaugeSampler(Sampler):
    """Passes a single counter through with optional conversion."""

    def __init__(
        self,
        counter: str,
        unit: Unit,
        convert: Optional[Callable[[float], float]] = None,
    ) -> None:
        self.counter = counter
        self.unit = unit
        self.convert = convert

    def derive(
        self,
        previous: Optional[RawReading],
        current: RawReading,
        last: Optional[ChannelValue] = None,
    ) -> DerivedValue:
        value = _counter(current, self.counter)
        if self.convert is not None:
            value = self.convert(value)
        return DerivedValue(value, self.unit, current.captured_at)


class RatioGaugeSampler(Sampler):
    """``used / total * 100`` from two counters of the same reading."""

    unit = Unit.PERCENT

    def __init__(self, used: str, total: str) -> None:
        self.used = used
        self.total = total

    def derive(
        self,
        previous: Optional[RawReading],
        current: RawReading,
        last: Optional[ChannelValue] = None,
    ) -> DerivedValue:
        total = _counter(current, self.total)
        if total <= 0:
            return DerivedValue.zero(self.unit, current.captured_at)
        used = _counter(current, self.used)
        return DerivedValue(used / total * 100.0, self.unit, current.captured_at)


class KeyedSampler(Sampler):
    """Applies ``inner`` independently to each device group of a reading.

    Devices are matched by key, not position. A device missing from the
    previous reading is treated as a first tick for that device only.
    """

    def __init__(self, inner: Sampler) -> None:
        self.inner = inner
        self.unit = inner.unit

    def derive(
        self,
        previous: Optional[RawReading],
        current: RawReading,
        last: Optional[ChannelValue] = None,
    ) -> Dict[str, DerivedValue]:
        results: Dict[str, DerivedValue] = {}
        last_values = last if isinstance(last, dict) else {}
        for key in current.groups:
            before = None
            if previous is not None and key in previous.groups:
                before = previous.group(key)
            results[key] = self.inner.derive(before, current.group(key), last_values.get(key))
        return results
