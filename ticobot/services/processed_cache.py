import time
from collections import OrderedDict
from typing import Callable

DEFAULT_MAX_SIZE = 5000
DEFAULT_TTL_SECONDS = 24 * 60 * 60


class ProcessedMessageCache:
    """Message ids already dispatched, bounded by size with TTL eviction.

    Shared by the live event path and the polling fallback. ``add_if_new`` is
    the only way ids get in, so both paths agree on what was seen.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._seen: OrderedDict[str, float] = OrderedDict()

    def __contains__(self, message_id: str) -> bool:
        return bool(message_id) and message_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def add_if_new(self, message_id: str) -> bool:
        """Record an id; False when it was already present."""
        if not message_id:
            return True
        if message_id in self._seen:
            return False
        self._seen[message_id] = self._clock()
        if len(self._seen) > self.max_size:
            self._evict()
        return True

    def _evict(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        for message_id, seen_at in list(self._seen.items()):
            if seen_at < cutoff:
                del self._seen[message_id]
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
