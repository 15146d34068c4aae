from collections import deque
from typing import Any
from typing import Deque
from typing import List
from typing import Optional

import attr

from llmtrail.internal import forksafe


@attr.s
class EventQueue(object):
    """A thread-safe, bounded FIFO of items waiting to be delivered.

    When the queue is full the oldest item is evicted to make room for the new one; ``put`` returns the evicted
    item so that the caller can report it.

    :param max_size: The maximum number of items held by the queue.
    """

    max_size = attr.ib(type=int)
    _lock = attr.ib(init=False, factory=forksafe.RLock, repr=False)
    _items = attr.ib(init=False, factory=deque, repr=False, type=Deque[Any])

    def __len__(self):
        return len(self._items)

    def put(self, item):
        # type: (Any) -> Optional[Any]
        """Append an item, evicting and returning the oldest one if the queue is full."""
        evicted = None
        with self._lock:
            if self.max_size <= 0:
                return item
            if len(self._items) >= self.max_size:
                evicted = self._items.popleft()
            self._items.append(item)
        return evicted

    def get(self, limit=None):
        # type: (Optional[int]) -> List[Any]
        """Remove and return up to ``limit`` items in enqueue order (all of them by default)."""
        with self._lock:
            if limit is None or limit >= len(self._items):
                items = list(self._items)
                self._items.clear()
                return items
            return [self._items.popleft() for _ in range(limit)]
