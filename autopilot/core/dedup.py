"""
Recently-handled inbound message ids.

A bounded LRU set: once ``capacity`` ids are tracked, the least recently seen
one is forgotten. The decision engine owns one instance, so a repeated
delivery of the same inbound message is only processed once.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict

logger = logging.getLogger(__name__)


class RecentMessageSet:
    def __init__(self, capacity: int = 500):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()
        self._hits = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def acquire(self, message_id: str) -> bool:
        """
        Mark a message id as seen.

        Returns True if this is a new id (should process).
        Returns False if the id was already tracked.
        """
        if message_id in self._ids:
            self._ids.move_to_end(message_id)
            self._hits += 1
            return False

        self._ids[message_id] = None
        while len(self._ids) > self._capacity:
            evicted, _ = self._ids.popitem(last=False)
            logger.debug(f"Evicted message id {evicted} from dedup set")
        return True

    def remove(self, message_id: str) -> bool:
        if message_id in self._ids:
            del self._ids[message_id]
            return True
        return False

    def clear(self):
        self._ids.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "tracked": len(self._ids),
            "capacity": self._capacity,
            "duplicate_hits": self._hits,
        }
