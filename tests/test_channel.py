import asyncio

import pytest

from statuswatch.errors import AcquisitionError, AcquisitionTimeout
from statuswatch.metrics.base import ChannelSnapshot, GroupSnapshot, Unit
from statuswatch.metrics.channel import ChannelGroup, MetricChannel
from statuswatch.metrics.samplers import BusyRatioSampler, GaugeSampler, RateSampler


def _channel(channel_id, sampler, source, **kwargs):
    kwargs.setdefault("capacity", 60)
    kwargs.setdefault("interval_seconds", 2.0)
    return MetricChannel(channel_id, sampler, source, **kwargs)


def test_cpu_usage_scenario(make_source, reading):
    source = make_source(
        "stat",
        readings=[
            reading({"idle": 100, "total": 1000}, at=1.0),
            reading({"idle": 150, "total": 1200}, at=3.0),
            reading({"idle": 150, "total": 1200}, at=5.0),
        ],
    )
    channel = _channel("cpu", BusyRatioSampler(), source)

    async def main():
        return [await channel.tick() for _ in range(3)]

    first, second, third = asyncio.run(main())
    assert first.value.value == 0.0
    assert second.value.value == pytest.approx(75.0)
    assert third.value.value == pytest.approx(75.0)
    assert [item.value for item in third.history] == [0.0, pytest.approx(75.0), pytest.approx(75.0)]


def test_network_rate_scenario(make_source, reading):
    source = make_source(
        "net",
        readings=[reading({"rx": 1000}, at=0.0), reading({"rx": 3000}, at=2.0)],
    )
    channel = _channel("net.rx", RateSampler("rx"), source)

    async def main():
        await channel.tick()
        return await channel.tick()

    snapshot = asyncio.run(main())
    assert snapshot.value.value == pytest.approx(1000.0)
    assert snapshot.value.unit is Unit.BYTES_PER_SECOND


def test_acquisition_failure_yields_unavailable_then_recovers(make_source, reading):
    source = make_source("gpu", fail=AcquisitionError("nvidia-smi not found"))
    channel = _channel("gpu", GaugeSampler("utilization", Unit.PERCENT), source)

    async def main():
        failed = await channel.tick()
        source.fail = None
        source.readings = [reading({"utilization": 40}, at=10.0)]
        recovered = await channel.tick()
        return failed, recovered

    failed, recovered = asyncio.run(main())
    assert not failed.available
    assert failed.value.value is None
    assert recovered.available
    assert recovered.value.value == 40.0
    assert [item.available for item in recovered.history] == [False, True]


def test_malformed_reading_yields_unavailable(make_source, reading):
    source = make_source("mem", readings=[reading({"unexpected": 1}, at=1.0)])
    channel = _channel("memory", GaugeSampler("percent", Unit.PERCENT), source)
    snapshot = asyncio.run(channel.tick())
    assert not snapshot.available
    assert not channel.has_previous_reading


def test_timeout_yields_unavailable(make_source):
    source = make_source("sensors", delay=1.0, timeout=0.05)
    channel = _channel("temperature.cpu", GaugeSampler("cpu", Unit.CELSIUS), source)
    snapshot = asyncio.run(channel.tick())
    assert not snapshot.available


def test_failure_keeps_previous_reading(make_source, reading):
    source = make_source("net", readings=[reading({"rx": 0}, at=0.0)])
    channel = _channel("net.rx", RateSampler("rx"), source)

    async def main():
        await channel.tick()
        source.fail = AcquisitionTimeout("slow")
        await channel.tick()
        source.fail = None
        source.readings = [reading({"rx": 4000}, at=4.0)]
        return await channel.tick()

    snapshot = asyncio.run(main())
    assert snapshot.value.value == pytest.approx(1000.0)


def test_stale_reading_keeps_last_value(make_source, reading):
    source = make_source(
        "net",
        readings=[reading({"rx": 0}, at=0.0), reading({"rx": 500}, at=1.0), reading({"rx": 900}, at=1.0)],
    )
    channel = _channel("net.rx", RateSampler("rx"), source)

    async def main():
        for _ in range(3):
            snapshot = await channel.tick()
        return snapshot

    snapshot = asyncio.run(main())
    assert snapshot.value.value == pytest.approx(500.0)
    assert len(snapshot.history) == 2


def test_resubscribe_inside_window_keeps_previous_reading(make_source):
    channel = _channel("cpu", BusyRatioSampler(), make_source("stat"), resume_window_seconds=30.0)
    channel._previous = object()
    channel.history.push("value")
    channel.deactivate(now=100.0)
    channel.activate(now=120.0)
    assert channel.has_previous_reading
    assert len(channel.history) == 1


def test_resubscribe_after_window_starts_fresh(make_source):
    channel = _channel("cpu", BusyRatioSampler(), make_source("stat"), resume_window_seconds=30.0)
    channel._previous = object()
    channel.history.push("value")
    channel.deactivate(now=100.0)
    channel.activate(now=131.0)
    assert not channel.has_previous_reading
    assert len(channel.history) == 0


def test_first_activation_does_not_reset(make_source):
    channel = _channel("cpu", BusyRatioSampler(), make_source("stat"))
    channel.history.push("value")
    channel.activate(now=1000.0)
    assert len(channel.history) == 1


def test_snapshot_before_any_tick_is_unavailable(make_source):
    snapshot = _channel("cpu", BusyRatioSampler(), make_source("stat")).snapshot()
    assert isinstance(snapshot, ChannelSnapshot)
    assert not snapshot.available
    assert snapshot.history == ()


def test_history_is_bounded_by_capacity(make_source):
    channel = _channel("load", GaugeSampler("value", Unit.LOAD), make_source("load"), capacity=3)

    async def main():
        for _ in range(5):
            snapshot = await channel.tick()
        return snapshot

    snapshot = asyncio.run(main())
    assert [item.value for item in snapshot.history] == [3.0, 4.0, 5.0]


@pytest.mark.parametrize("kwargs", [{"capacity": 0}, {"interval_seconds": 0}, {"interval_seconds": -2}])
def test_invalid_construction(make_source, kwargs):
    with pytest.raises(ValueError):
        _channel("cpu", BusyRatioSampler(), make_source("stat"), **kwargs)


def test_group_tick_bundles_channels(make_source):
    cpu = _channel("dashboard.cpu", GaugeSampler("value", Unit.PERCENT), make_source("a"))
    load = _channel("dashboard.load", GaugeSampler("value", Unit.LOAD), make_source("b"))
    group = ChannelGroup("dashboard", [cpu, load], interval_seconds=10.0)

    snapshot = asyncio.run(group.tick())
    assert isinstance(snapshot, GroupSnapshot)
    assert set(snapshot.channels) == {"dashboard.cpu", "dashboard.load"}
    assert snapshot["dashboard.load"].value.value == 1.0
    assert snapshot.to_dict()["channels"]["dashboard.cpu"]["value"]["unit"] == "percent"


def test_channel_cannot_join_two_groups(make_source):
    cpu = _channel("cpu", BusyRatioSampler(), make_source("stat"))
    ChannelGroup("one", [cpu], interval_seconds=10.0)
    with pytest.raises(ValueError):
        ChannelGroup("two", [cpu], interval_seconds=10.0)


def test_empty_group_is_rejected():
    with pytest.raises(ValueError):
        ChannelGroup("empty", [], interval_seconds=10.0)
