# finsim/pricing/scheduler.py
"""
Single-lane scheduler for quote provider calls.

Requests go into an asyncio queue drained by one worker task, so at most one
provider call is ever in flight. Calls that reach the provider are spaced by
a minimum interval, and a sliding window refuses calls locally once the
per-minute (or daily) quota is used up. Refused, failed or invalid fetches
resolve to a synthetic quote instead of an error.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from finsim.domain.models import Quote
from finsim.io.alpha_vantage import ProviderError
from finsim.pricing.cache import QuoteCache, SystemClock

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400.0


class RateWindow:
    """Sliding log of provider calls: per-minute quota plus a daily ceiling."""

    def __init__(
        self,
        max_calls: int,
        window_seconds: float = 60.0,
        daily_limit: Optional[int] = None,
        clock=None,
    ):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.daily_limit = daily_limit
        self.clock = clock or SystemClock()
        self._calls: Deque[float] = deque()
        self._day_started: Optional[float] = None
        self._day_count = 0

    def _evict(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_seconds:
            self._calls.popleft()
        if self._day_started is not None and now - self._day_started >= DAY_SECONDS:
            self._day_started = None
            self._day_count = 0

    def calls_in_window(self) -> int:
        self._evict(self.clock.now())
        return len(self._calls)

    def try_acquire(self) -> bool:
        """Record a call if the quota allows it; False means refuse locally."""
        now = self.clock.now()
        self._evict(now)
        if len(self._calls) >= self.max_calls:
            return False
        if self.daily_limit is not None and self._day_count >= self.daily_limit:
            return False
        self._calls.append(now)
        if self._day_started is None:
            self._day_started = now
        self._day_count += 1
        return True


@dataclass
class FetchRequest:
    symbol: str
    future: asyncio.Future
    force: bool = False


class FetchScheduler:
    """Owns the fetch queue and its single worker task."""

    def __init__(
        self,
        provider,
        cache: QuoteCache,
        fallback: Callable[[str], Quote],
        rate_window: RateWindow,
        min_interval_seconds: float,
        clock=None,
    ):
        self.provider = provider
        self.cache = cache
        self.fallback = fallback
        self.rate_window = rate_window
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock or SystemClock()
        self.calls_made = 0
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._last_call_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker in the running event loop (idempotent)."""
        if self.running:
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._worker_loop(), name="quote-fetch-worker")
        logger.info("Quote fetch worker started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

        # Requests still queued get a fallback so no caller waits forever
        while not self._queue.empty():
            request = self._queue.get_nowait()
            self._queue.task_done()
            if not request.future.done():
                request.future.set_result(self.cache.put(self.fallback(request.symbol)))
        logger.info("Quote fetch worker stopped")

    async def submit(self, symbol: str, force: bool = False) -> Quote:
        """
        Queue a live fetch and wait for its result.

        Args:
            force: skip the cache re-check (background refresh)
        """
        self.start()
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(FetchRequest(symbol=symbol, future=future, force=force))
        return await future

    async def _worker_loop(self) -> None:
        while True:
            request = await self._queue.get()
            try:
                quote = await self._serve(request)
            except asyncio.CancelledError:
                if not request.future.done():
                    request.future.cancel()
                raise
            except Exception as e:
                logger.error(f"Fetch worker failed for {request.symbol}: {e!r}")
                quote = self.cache.put(self.fallback(request.symbol))
            finally:
                self._queue.task_done()

            # A caller that stopped waiting has a cancelled future; drop the result
            if not request.future.done():
                request.future.set_result(quote)

    async def _serve(self, request: FetchRequest) -> Quote:
        symbol = request.symbol

        if not request.force:
            # Another request may have filled the cache while this one waited
            cached = self.cache.get_fresh(symbol)
            if cached is not None:
                return cached

        await self._wait_for_slot()

        if not self.rate_window.try_acquire():
            logger.warning(f"Rate limit reached, using fallback price for {symbol}")
            return self.cache.put(self.fallback(symbol))

        self._last_call_at = self.clock.now()
        self.calls_made += 1
        try:
            quote = await self.provider.fetch_quote(symbol)
        except ProviderError as e:
            logger.warning(f"Provider failed for {symbol}, using fallback: {e}")
            quote = self.fallback(symbol)

        return self.cache.put(quote)

    async def _wait_for_slot(self) -> None:
        if self._last_call_at is None:
            return
        wait = self._last_call_at + self.min_interval_seconds - self.clock.now()
        if wait > 0:
            await self.clock.sleep(wait)
