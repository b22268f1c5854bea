import pytest

from statuswatch.metrics.history import HistoryRing


def test_history_keeps_most_recent_values():
    ring = HistoryRing(5)
    for value in range(12):
        ring.push(value)
    assert ring.snapshot() == (7, 8, 9, 10, 11)
    assert len(ring) == 5


def test_history_below_capacity_is_oldest_first():
    ring = HistoryRing(60)
    ring.push("a")
    ring.push("b")
    assert ring.snapshot() == ("a", "b")


def test_snapshot_is_a_copy():
    ring = HistoryRing(3)
    ring.push(1)
    snap = ring.snapshot()
    ring.push(2)
    assert snap == (1,)


def test_latest_and_clear():
    ring = HistoryRing(4)
    for value in range(4):
        ring.push(value)
    assert ring.latest(2) == (2, 3)
    assert ring.latest(0) == ()
    ring.clear()
    assert ring.snapshot() == ()


@pytest.mark.parametrize("capacity", [0, -1, 2.5, True])
def test_invalid_capacity(capacity):
    with pytest.raises(ValueError):
        HistoryRing(capacity)
