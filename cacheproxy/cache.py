"""A thread-safe, size-bounded response cache with least-recently-used eviction."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_SIZE = 200 * (1 << 20)
MAX_ELEMENT_SIZE = 10 * (1 << 20)
# Fixed bookkeeping cost charged to every cached element.
ELEMENT_OVERHEAD = 40


@dataclass
class CacheElement:
    """A cached response, keyed by the raw request that produced it."""

    url: bytes
    data: bytes
    lru_time: float

    @property
    def size(self) -> int:
        """Space this element takes up in the cache's budget."""
        return len(self.data) + 1 + len(self.url) + ELEMENT_OVERHEAD


class LRUCache:
    """Cache of responses that evicts the least recently used entry first."""

    def __init__(
        self,
        max_size: int = MAX_SIZE,
        max_element_size: int = MAX_ELEMENT_SIZE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_size = max_size
        self.max_element_size = max_element_size
        self.size = 0
        self._clock = clock
        self._elements: list[CacheElement] = []  # most recently added first
        self._lock = threading.Lock()

    def find(self, url: bytes) -> CacheElement | None:
        """Return the entry for url, marking it as just used, or None."""
        with self._lock:
            for element in self._elements:
                if element.url == url:
                    logger.debug("url found, LRU time before: %s", element.lru_time)
                    element.lru_time = self._clock()
                    return element
            logger.debug("url not found")
            return None

    def add(self, url: bytes, data: bytes) -> bool:
        """Store data under url; return False if it is too large to cache."""
        element = CacheElement(url=url, data=data, lru_time=self._clock())
        element_size = element.size
        with self._lock:
            if element_size > self.max_element_size:
                return False
            while self.size + element_size > self.max_size:
                if self._remove_oldest_locked() is None:
                    break
            self._elements.insert(0, element)
            self.size += element_size
            return True

    def remove_oldest(self) -> CacheElement | None:
        """Evict and return the least recently used entry, or None if empty."""
        with self._lock:
            return self._remove_oldest_locked()

    def _remove_oldest_locked(self) -> CacheElement | None:
        if not self._elements:
            return None
        # min() keeps the first of equal times, i.e. the most recently added.
        oldest = min(self._elements, key=lambda element: element.lru_time)
        self._elements.remove(oldest)
        self.size -= oldest.size
        return oldest

    def __len__(self) -> int:
        with self._lock:
            return len(self._elements)

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return any(element.url == url for element in self._elements)