"""Consumer bookkeeping per channel or channel group.

``broadcast`` delivers to a copy of the subscriber set taken at broadcast
time, skipping consumers that left while the broadcast was running. The first subscriber of a target fires ``on_first`` and the last one
to leave fires ``on_last``; both are decided under the registry lock.
"""

import logging
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Consumer = Callable[[Any], Any]
TransitionHook = Callable[[str], None]


class SubscriptionRegistry:
    def __init__(
        self,
        on_first: Optional[TransitionHook] = None,
        on_last: Optional[TransitionHook] = None,
    ) -> None:
        self._lock = threading.RLock()
        # { target_id: {consumer: None} }, dicts keep delivery order stable
        self._subscribers: Dict[str, Dict[Consumer, None]] = {}
        self._on_first = on_first
        self._on_last = on_last

    def subscribe(self, target_id: str, consumer: Consumer) -> None:
        """Register ``consumer`` for ``target_id``. Subscribing twice is a no-op."""
        if consumer is None or not callable(consumer):
            raise TypeError(f"Consumer must be callable, got {consumer!r}")
        with self._lock:
            consumers = self._subscribers.setdefault(target_id, {})
            if consumer in consumers:
                return
            consumers[consumer] = None
            if len(consumers) == 1 and self._on_first is not None:
                try:
                    self._on_first(target_id)
                except Exception:
                    del self._subscribers[target_id]
                    raise

    def unsubscribe(self, target_id: str, consumer: Consumer) -> None:
        """Remove ``consumer``; unknown consumers are ignored."""
        with self._lock:
            consumers = self._subscribers.get(target_id)
            if not consumers or consumer not in consumers:
                return
            del consumers[consumer]
            if not consumers:
                del self._subscribers[target_id]
                if self._on_last is not None:
                    self._on_last(target_id)

    def unsubscribe_all(self, consumer: Consumer) -> None:
        with self._lock:
            targets = [key for key, consumers in self._subscribers.items() if consumer in consumers]
        for target_id in targets:
            self.unsubscribe(target_id, consumer)

    def subscriber_count(self, target_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(target_id, ()))

    def is_active(self, target_id: str) -> bool:
        return self.subscriber_count(target_id) > 0

    def broadcast(self, target_id: str, snapshot: Any) -> int:
        """Deliver ``snapshot`` to the current subscribers. Returns the delivery count."""
        with self._lock:
            consumers = list(self._subscribers.get(target_id, ()))
        delivered = 0
        for consumer in consumers:
            if not self._still_subscribed(target_id, consumer):
                continue
            try:
                consumer(snapshot)
            except Exception as exc:
                logger.warning("Consumer %r of %s raised: %s", consumer, target_id, exc)
                continue
            delivered += 1
        return delivered

    def _still_subscribed(self, target_id: str, consumer: Consumer) -> bool:
        with self._lock:
            return consumer in self._subscribers.get(target_id, ())
