# finsim/pricing/cache.py
"""
Time-bounded in-memory quote cache.

One instance is created by the quote feed and shared with its fetch scheduler.
Entries are stamped with the clock's monotonic time when stored, so tests can
drive expiry with a fake clock.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional

from finsim.domain.models import Quote

logger = logging.getLogger(__name__)


class SystemClock:
    """Monotonic time and real sleeping."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass
class CacheEntry:
    quote: Quote
    stored_at: float


class QuoteCache:
    """Latest quote per symbol with a freshness window."""

    def __init__(self, ttl_seconds: float = 120.0, clock=None):
        self.ttl_seconds = ttl_seconds
        self.clock = clock or SystemClock()
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get_fresh(self, symbol: str) -> Optional[Quote]:
        """Cached quote if younger than the TTL, else None."""
        with self._lock:
            entry = self._entries.get(symbol)
        if entry is None:
            return None
        if self.clock.now() - entry.stored_at >= self.ttl_seconds:
            return None
        return entry.quote

    def put(self, quote: Quote) -> Quote:
        with self._lock:
            self._entries[quote.symbol] = CacheEntry(quote=quote, stored_at=self.clock.now())
        return quote

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.debug(f"Cleared {count} cached quotes")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
