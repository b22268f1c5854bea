"""
Shared fixtures for statuswatch tests.
"""
import asyncio
import time

import pytest

from statuswatch.metrics.base import RawReading
from statuswatch.metrics.sources import RawReadingSource


class FakeSource(RawReadingSource):
    """In-memory source that replays readings and counts acquisitions."""

    def __init__(self, key="fake", readings=None, delay=0.0, fail=None, timeout=None):
        super().__init__(key, timeout)
        self.readings = list(readings or [])
        self.delay = delay
        self.fail = fail
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def _acquire(self):
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail is not None:
                raise self.fail
            if self.readings:
                item = self.readings.pop(0)
                if isinstance(item, RawReading):
                    return item
                return RawReading(item, time.monotonic())
            return RawReading({"value": float(self.calls)}, time.monotonic())
        finally:
            self.in_flight -= 1


@pytest.fixture()
def make_source():
    """Factory for FakeSource instances."""
    return FakeSource


@pytest.fixture()
def reading():
    """Build a RawReading at an explicit capture time."""

    def build(counters, at, groups=None):
        return RawReading(counters, captured_at=at, groups=groups or {})

    return build
