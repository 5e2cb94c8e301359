# finsim/pricing/feed.py
"""
Quote feed: the single entry point for prices.

Resolution order for `get_quote`: fresh cache entry, then the two latest
stored closes, then a scheduled live fetch, then a synthetic fallback.
No method raises to the caller; every path ends in a cached Quote.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Sequence

from finsim.config import FeedSettings
from finsim.db.models import utcnow
from finsim.domain.models import Quote
from finsim.io.alpha_vantage import AlphaVantageClient
from finsim.pricing.cache import QuoteCache, SystemClock
from finsim.pricing.fallback import FallbackPricer, quote_from_history
from finsim.pricing.scheduler import FetchScheduler, RateWindow

logger = logging.getLogger(__name__)


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class QuoteFeed:
    """Cache, history lookup, rate-limited live fetches and fallback behind one API."""

    def __init__(
        self,
        settings: Optional[FeedSettings] = None,
        provider=None,
        history=None,
        reference_prices=None,
        clock=None,
    ):
        """
        Args:
            settings: Feed configuration, defaults to FeedSettings()
            provider: Object with `async fetch_quote(symbol) -> Quote`; None disables live fetches
            history: Object with `latest_points(symbol, limit)`; None skips the historical step
            reference_prices: Symbol -> base price for synthetic quotes
            clock: Object with `now()` and `async sleep(seconds)`
        """
        self.settings = settings or FeedSettings()
        self.clock = clock or SystemClock()
        self.provider = provider
        self.history = history
        self.cache = QuoteCache(ttl_seconds=self.settings.cache_ttl_seconds, clock=self.clock)
        self.pricer = FallbackPricer(reference_prices=reference_prices, seed=self.settings.fallback_seed)
        self.scheduler = FetchScheduler(
            provider=provider,
            cache=self.cache,
            fallback=self._synthesize,
            rate_window=RateWindow(
                max_calls=self.settings.max_calls_per_minute,
                window_seconds=60.0,
                daily_limit=self.settings.daily_call_limit,
                clock=self.clock,
            ),
            min_interval_seconds=self.settings.min_interval_seconds,
            clock=self.clock,
        )

    @classmethod
    def from_settings(cls, settings: Optional[FeedSettings] = None, history=None) -> "QuoteFeed":
        """Feed wired to Alpha Vantage when an API key is configured."""
        settings = settings or FeedSettings.from_env()
        provider = AlphaVantageClient.from_settings(settings) if settings.api_key else None
        if provider is None:
            logger.warning("Alpha Vantage API key not configured, live quotes disabled")

        reference_prices = None
        if history is not None and hasattr(history, "reference_prices"):
            try:
                reference_prices = history.reference_prices() or None
            except Exception as e:
                logger.warning(f"Could not load reference prices from store: {e}")

        return cls(settings=settings, provider=provider, history=history, reference_prices=reference_prices)

    def start(self) -> None:
        if self.provider is not None:
            self.scheduler.start()

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.provider is not None and hasattr(self.provider, "close"):
            await self.provider.close()

    async def get_quote(self, symbol: str) -> Quote:
        """Best available quote for `symbol`; never raises."""
        symbol = normalize_symbol(symbol)
        try:
            cached = self.cache.get_fresh(symbol)
            if cached is not None:
                return cached

            if self.history is not None:
                quote = await self._quote_from_history(symbol)
                if quote is not None:
                    return self.cache.put(quote)

            return await self._live_or_fallback(symbol)
        except Exception as e:
            logger.error(f"Quote lookup failed for {symbol}, using fallback: {e!r}")
            return self.cache.put(self._synthesize(symbol))

    async def get_live_quote(self, symbol: str) -> Quote:
        """Like get_quote but skips stored history: cache, live fetch, fallback."""
        symbol = normalize_symbol(symbol)
        try:
            cached = self.cache.get_fresh(symbol)
            if cached is not None:
                return cached
            return await self._live_or_fallback(symbol)
        except Exception as e:
            logger.error(f"Live quote failed for {symbol}, using fallback: {e!r}")
            return self.cache.put(self._synthesize(symbol))

    async def get_quotes_batch(self, symbols: Sequence[str]) -> Dict[str, Quote]:
        """Resolve every symbol concurrently; keys are the normalized symbols."""
        unique = list(dict.fromkeys(normalize_symbol(s) for s in symbols))
        quotes = await asyncio.gather(*(self.get_quote(s) for s in unique))
        return dict(zip(unique, quotes))

    def invalidate(self) -> None:
        """Drop every cached quote."""
        self.cache.clear()

    def refresh_in_background(
        self,
        symbols: Sequence[str],
        on_update: Optional[Callable[[str, Quote], None]] = None,
    ) -> asyncio.Task:
        """
        Replace cached quotes with live ones, one symbol at a time through the
        fetch queue. `on_update` is called with each new quote.
        """
        return asyncio.create_task(self._refresh(list(symbols), on_update), name="quote-refresh")

    async def _refresh(self, symbols, on_update) -> None:
        for raw in symbols:
            symbol = normalize_symbol(raw)
            try:
                if self.provider is None:
                    quote = self.cache.put(self._synthesize(symbol))
                else:
                    quote = await self.scheduler.submit(symbol, force=True)
                if on_update is not None:
                    on_update(symbol, quote)
            except Exception as e:
                logger.error(f"Background refresh failed for {symbol}: {e!r}")

    async def _quote_from_history(self, symbol: str) -> Optional[Quote]:
        try:
            points = await asyncio.to_thread(self.history.latest_points, symbol, 2)
        except Exception as e:
            logger.warning(f"History lookup failed for {symbol}: {e}")
            return None
        return quote_from_history(symbol, points, utcnow())

    async def _live_or_fallback(self, symbol: str) -> Quote:
        if self.provider is None:
            return self.cache.put(self._synthesize(symbol))
        return await self.scheduler.submit(symbol)

    def _synthesize(self, symbol: str) -> Quote:
        return self.pricer.quote(symbol, utcnow())
