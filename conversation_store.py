"""
The bounded, append-only conversation log of a session.
"""
import threading
from typing import Optional

from data_models import ConversationItem, MessageAppended
from event_bus import EventBus
from sequence_clock import SequenceClock
from tracer import trace
from utils import estimate_tokens


class ConversationStore:
    """
    Holds a session's conversation items in creation order.

    At most `max_items` user/assistant items are kept; once the bound is
    exceeded the oldest of them is evicted. System items are bookkeeping and
    are neither counted nor evicted.
    """

    def __init__(
        self,
        max_items: int,
        clock: SequenceClock,
        bus: Optional[EventBus] = None,
        session_id: str = "",
    ):
        if max_items < 1:
            raise ValueError("max_items must be at least 1")
        self.max_items = max_items
        self.clock = clock
        self.bus = bus
        self.session_id = session_id
        self._lock = threading.Lock()
        self._items: list[ConversationItem] = []

    @trace
    def append(self, item: ConversationItem) -> ConversationItem:
        """
        Appends an item, stamping it with the next sequence number.

        Returns:
            The stored (stamped) item.
        """
        with self._lock:
            seq = self.clock.next()
            stored = item.model_copy(update={"seq": seq})
            self._items.append(stored)
            self._evict()
        if self.bus is not None:
            self.bus.publish(MessageAppended(seq=seq, session_id=self.session_id, item=stored))
        return stored

    def _evict(self) -> None:
        # Caller holds the lock.
        evictable = sum(1 for item in self._items if item.is_evictable)
        while evictable > self.max_items:
            oldest = next(i for i, item in enumerate(self._items) if item.is_evictable)
            del self._items[oldest]
            evictable -= 1

    def snapshot(self) -> tuple[ConversationItem, ...]:
        with self._lock:
            return tuple(self._items)

    def estimated_token_count(self) -> int:
        return sum(estimate_tokens(item.content) for item in self.snapshot())

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
