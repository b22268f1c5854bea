import threading
from collections import deque
from typing import Deque, Generic, Tuple, TypeVar

T = TypeVar("T")


class HistoryRing(Generic[T]):
    """Fixed-capacity FIFO of derived values, oldest first."""

    def __init__(self, capacity: int) -> None:
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise ValueError(f"History capacity must be a positive integer, got {capacity!r}")
        self.capacity = capacity
        self._values: Deque[T] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def push(self, value: T) -> None:
        with self._lock:
            self._values.append(value)

    def snapshot(self) -> Tuple[T, ...]:
        with self._lock:
            return tuple(self._values)

    def latest(self, limit: int) -> Tuple[T, ...]:
        values = self.snapshot()
        return values[-limit:] if limit > 0 else ()

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)
