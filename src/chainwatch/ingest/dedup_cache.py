"""
Deduplication cache and the gate between Canonicalizer and Dispatch Queue.

Best-effort: entries expire after a TTL and the cache is capped, so a
duplicate can slip through after expiry or eviction. Storage upserts keyed by
the same event id absorb those.
"""

import logging
import time
from collections import OrderedDict
from typing import Awaitable, Callable, Optional

from chainwatch.framework.errors import DuplicateEvent
from chainwatch.framework.models import ComplianceEvent

logger = logging.getLogger(__name__)


class DedupCache:
    """
    TTL-bounded set of recently seen event ids.

    Entries are kept in insertion order, so expiry and size eviction both pop
    from the front.
    """

    def __init__(
        self, ttl_seconds: float, max_entries: int = 100_000, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._expiry: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._expiry)

    def seen_recently(self, event_id: str) -> bool:
        expires_at = self._expiry.get(event_id)
        if expires_at is None:
            return False
        if expires_at <= self._clock():
            del self._expiry[event_id]
            return False
        return True

    def mark_seen(self, event_id: str, ttl: Optional[float] = None) -> None:
        now = self._clock()
        self._expiry.pop(event_id, None)
        self._expiry[event_id] = now + (ttl if ttl is not None else self.ttl_seconds)
        self._purge(now)

    def forget(self, event_id: str) -> None:
        self._expiry.pop(event_id, None)

    def _purge(self, now: float) -> None:
        # Per-call ttl overrides can break expiry order; stop at the first live entry
        while self._expiry:
            event_id, expires_at = next(iter(self._expiry.items()))
            if expires_at > now and len(self._expiry) <= self.max_entries:
                break
            self._expiry.popitem(last=False)


class DedupGate:
    """
    Drops recently seen events, otherwise marks and enqueues them.

    If enqueue fails the mark is withdrawn so a retried window is not
    mistaken for a duplicate.
    """

    def __init__(self, cache: DedupCache, enqueue: Callable[[ComplianceEvent], Awaitable[None]]) -> None:
        self.cache = cache
        self._enqueue = enqueue
        self.dropped = 0

    async def admit(self, event: ComplianceEvent) -> bool:
        try:
            self._check(event)
        except DuplicateEvent as exc:
            self.dropped += 1
            logger.debug("Duplicate event dropped | event_id=%s | source=%s", exc.event_id, event.source_id)
            return False
        self.cache.mark_seen(event.event_id)
        try:
            await self._enqueue(event)
        except BaseException:
            self.cache.forget(event.event_id)
            raise
        return True

    def _check(self, event: ComplianceEvent) -> None:
        if self.cache.seen_recently(event.event_id):
            raise DuplicateEvent(event.event_id)
