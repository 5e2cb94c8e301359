# tests/test_quote_feed.py
from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from conftest import FakeClock, StubProvider, add_history, make_instrument
from finsim.config import FeedSettings
from finsim.db.history import SqlHistoryStore
from finsim.domain.models import Provenance
from finsim.io.alpha_vantage import AlphaVantageClient, QuotaExceeded
from finsim.pricing.feed import QuoteFeed, normalize_symbol


class BlockingProvider(StubProvider):
    """Provider that holds every call until released."""

    def __init__(self, clock=None):
        super().__init__(clock=clock)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_quote(self, symbol):
        self.started.set()
        await self.release.wait()
        return await super().fetch_quote(symbol)


class BrokenHistory:
    def latest_points(self, symbol, limit=2):
        raise RuntimeError("history store offline")


def test_normalize_symbol():
    assert normalize_symbol("  reliance ") == "RELIANCE"
    assert normalize_symbol(None) == ""


def test_provider_calls_respect_rolling_window():
    clock = FakeClock()
    provider = StubProvider(clock=clock)
    symbols = [f"SYM{i}" for i in range(12)]

    async def scenario():
        feed = QuoteFeed(settings=FeedSettings(max_calls_per_minute=5), provider=provider, clock=clock)
        feed.start()
        quotes = await feed.get_quotes_batch(symbols)
        await feed.close()
        return quotes

    quotes = asyncio.run(scenario())

    assert all(q.provenance is Provenance.LIVE for q in quotes.values())
    times = provider.call_times
    assert len(times) == 12
    for start in times:
        assert sum(1 for t in times if start <= t < start + 60) <= 5
    assert all(later - earlier >= 12 for earlier, later in zip(times, times[1:]))


def test_concurrent_requests_for_one_symbol_share_a_fetch():
    clock = FakeClock()
    provider = StubProvider(clock=clock)

    async def scenario():
        feed = QuoteFeed(provider=provider, clock=clock)
        first, second = await asyncio.gather(feed.get_quote("TCS"), feed.get_quote("TCS"))
        await feed.close()
        return first, second

    first, second = asyncio.run(scenario())

    assert len(provider.calls) == 1
    assert first is second


def test_daily_limit_falls_back_without_calling_provider():
    clock = FakeClock()
    provider = StubProvider(clock=clock)

    async def scenario():
        feed = QuoteFeed(settings=FeedSettings(daily_call_limit=2), provider=provider, clock=clock)
        quotes = [await feed.get_quote(s) for s in ("TCS", "INFY", "ITC")]
        cached = feed.cache.get_fresh("ITC")
        await feed.close()
        return quotes, cached

    quotes, cached = asyncio.run(scenario())

    assert [q.provenance for q in quotes] == [Provenance.LIVE, Provenance.LIVE, Provenance.SYNTHETIC]
    assert [s for s, _ in provider.calls] == ["TCS", "INFY"]
    assert cached is quotes[2]


def test_provider_error_yields_cached_synthetic_quote():
    clock = FakeClock()
    provider = StubProvider(clock=clock, error=QuotaExceeded("Thank you for using Alpha Vantage!"))

    async def scenario():
        feed = QuoteFeed(provider=provider, clock=clock)
        first = await feed.get_quote("WIPRO")
        second = await feed.get_quote("WIPRO")
        await feed.close()
        return first, second

    first, second = asyncio.run(scenario())

    assert first.provenance is Provenance.SYNTHETIC
    assert abs(first.price - Decimal("456.80")) <= Decimal("456.80") * Decimal("0.0201")
    assert second is first
    assert len(provider.calls) == 1


def test_cancelled_caller_still_populates_cache():
    clock = FakeClock()

    async def scenario():
        provider = BlockingProvider(clock=clock)
        feed = QuoteFeed(provider=provider, clock=clock)
        feed.start()

        caller = asyncio.create_task(feed.get_quote("TCS"))
        await provider.started.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        provider.release.set()
        await feed.scheduler._queue.join()
        cached = feed.cache.get_fresh("TCS")
        running = feed.scheduler.running
        await feed.close()
        return cached, running

    cached, running = asyncio.run(scenario())

    assert cached is not None
    assert cached.provenance is Provenance.LIVE
    assert running


def test_history_quote_from_two_latest_closes(engine):
    instrument = make_instrument(engine, "SBIN", "State Bank of India")
    add_history(engine, instrument, {date(2025, 1, 13): 90, date(2025, 1, 14): 95, date(2025, 1, 15): 100})
    provider = StubProvider()

    async def scenario():
        feed = QuoteFeed(provider=provider, history=SqlHistoryStore(engine), clock=FakeClock())
        quote = await feed.get_quote("sbin")
        await feed.close()
        return quote

    quote = asyncio.run(scenario())

    assert quote.provenance is Provenance.HISTORICAL
    assert quote.price == Decimal("100")
    assert quote.previous_close == Decimal("95")
    assert quote.change == Decimal("5")
    assert quote.change_percent == Decimal("5.26")
    assert provider.calls == []


def test_live_quote_skips_history(engine):
    instrument = make_instrument(engine, "SBIN")
    add_history(engine, instrument, {date(2025, 1, 15): 100})
    provider = StubProvider(prices={"SBIN": "611.10"})

    async def scenario():
        feed = QuoteFeed(provider=provider, history=SqlHistoryStore(engine), clock=FakeClock())
        quote = await feed.get_live_quote("SBIN")
        await feed.close()
        return quote

    quote = asyncio.run(scenario())

    assert quote.provenance is Provenance.LIVE
    assert quote.price == Decimal("611.10")


def test_history_failure_falls_through_to_provider():
    provider = StubProvider()

    async def scenario():
        feed = QuoteFeed(provider=provider, history=BrokenHistory(), clock=FakeClock())
        quote = await feed.get_quote("TCS")
        await feed.close()
        return quote

    assert asyncio.run(scenario()).provenance is Provenance.LIVE
    assert len(provider.calls) == 1


def test_symbol_without_history_or_provider_is_synthetic(engine):
    async def scenario():
        feed = QuoteFeed(history=SqlHistoryStore(engine), clock=FakeClock())
        return await feed.get_quote("NOSUCH")

    quote = asyncio.run(scenario())

    assert quote.provenance is Provenance.SYNTHETIC
    assert quote.previous_close == Decimal("1000.00")


def test_batch_normalizes_and_dedupes():
    clock = FakeClock()
    provider = StubProvider(clock=clock)

    async def scenario():
        feed = QuoteFeed(provider=provider, clock=clock)
        quotes = await feed.get_quotes_batch(["tcs", " TCS ", "infy"])
        await feed.close()
        return quotes

    quotes = asyncio.run(scenario())

    assert set(quotes) == {"TCS", "INFY"}
    assert sorted(s for s, _ in provider.calls) == ["INFY", "TCS"]


def test_cached_quote_is_returned_until_invalidated():
    clock = FakeClock()
    provider = StubProvider(clock=clock)

    async def scenario():
        feed = QuoteFeed(provider=provider, clock=clock)
        first = await feed.get_quote("TCS")
        again = await feed.get_quote("TCS")
        feed.invalidate()
        fresh = await feed.get_quote("TCS")
        await feed.close()
        return first, again, fresh

    first, again, fresh = asyncio.run(scenario())

    assert again is first
    assert fresh is not first
    assert len(provider.calls) == 2


def test_refresh_in_background_replaces_cached_quotes():
    clock = FakeClock()
    provider = StubProvider(clock=clock, prices={"TCS": "3600.00"})
    updates = []

    async def scenario():
        feed = QuoteFeed(provider=provider, clock=clock)
        await feed.get_quote("TCS")
        provider.prices["TCS"] = "3700.00"

        task = feed.refresh_in_background(["tcs"], on_update=lambda s, q: updates.append((s, q.price)))
        await task
        cached = feed.cache.get_fresh("TCS")
        await feed.close()
        return cached

    cached = asyncio.run(scenario())

    assert updates == [("TCS", Decimal("3700.00"))]
    assert cached.price == Decimal("3700.00")
    assert len(provider.calls) == 2


def test_from_settings_without_api_key(engine):
    make_instrument(engine, "RELIANCE", reference_price="2500.00")
    feed = QuoteFeed.from_settings(FeedSettings(api_key=None), history=SqlHistoryStore(engine))

    assert feed.provider is None
    assert feed.pricer.reference_price("RELIANCE") == Decimal("2500.00")


def test_from_settings_with_api_key():
    feed = QuoteFeed.from_settings(FeedSettings(api_key="demo", exchange_suffix=".NS"))

    assert isinstance(feed.provider, AlphaVantageClient)
    assert feed.provider.provider_symbol("TCS") == "TCS.NS"


def test_history_store_returns_newest_first(engine):
    instrument = make_instrument(engine, "ITC")
    add_history(engine, instrument, {date(2025, 1, 10): 450, date(2025, 1, 14): 455, date(2025, 1, 13): 452})

    points = SqlHistoryStore(engine).latest_points("ITC", 2)

    assert [p.day for p in points] == [date(2025, 1, 14), date(2025, 1, 13)]
    assert points[0].close == Decimal("455")
    assert SqlHistoryStore(engine).latest_points("UNKNOWN") == []


def test_close_settles_requests_still_queued():
    clock = FakeClock()

    async def scenario():
        provider = BlockingProvider(clock=clock)
        feed = QuoteFeed(provider=provider, clock=clock)
        feed.start()

        first = asyncio.create_task(feed.get_quote("TCS"))
        await provider.started.wait()
        second = asyncio.create_task(feed.get_quote("INFY"))
        await asyncio.sleep(0)

        await feed.close()
        queued = await second
        first.cancel()
        return queued

    queued = asyncio.run(scenario())

    assert queued.symbol == "INFY"
    assert queued.provenance is Provenance.SYNTHETIC
