# finsim/pricing/fallback.py
"""Quotes computed without the live provider: from stored history, or synthesized."""

import random
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Sequence

from finsim.domain.models import HistoricalPoint, Provenance, Quote, to_cents

DEFAULT_BASE_PRICE = Decimal("1000")

# Maximum synthetic deviation from the reference price, either direction
MAX_VARIATION = 0.02

# Reference prices for the NSE universe, used when nothing better is known
REFERENCE_PRICES: Mapping[str, Decimal] = {
    "RELIANCE": Decimal("2456.50"),
    "TCS": Decimal("3678.25"),
    "HDFCBANK": Decimal("1632.75"),
    "INFY": Decimal("1456.80"),
    "ICICIBANK": Decimal("945.30"),
    "HINDUNILVR": Decimal("2587.60"),
    "ITC": Decimal("456.75"),
    "SBIN": Decimal("612.40"),
    "BHARTIARTL": Decimal("1234.80"),
    "KOTAKBANK": Decimal("1789.50"),
    "LT": Decimal("3456.20"),
    "AXISBANK": Decimal("1045.60"),
    "ASIANPAINT": Decimal("3201.40"),
    "MARUTI": Decimal("11234.50"),
    "SUNPHARMA": Decimal("1456.30"),
    "TITAN": Decimal("3456.70"),
    "ULTRACEMCO": Decimal("9876.40"),
    "BAJFINANCE": Decimal("6543.20"),
    "NESTLEIND": Decimal("23456.80"),
    "HCLTECH": Decimal("1234.50"),
    "WIPRO": Decimal("456.80"),
    "POWERGRID": Decimal("234.60"),
    "NTPC": Decimal("345.20"),
    "ONGC": Decimal("234.50"),
    "COALINDIA": Decimal("345.60"),
    "TATAMOTORS": Decimal("876.40"),
    "TATASTEEL": Decimal("134.50"),
    "JSWSTEEL": Decimal("876.30"),
    "INDUSINDBK": Decimal("1345.60"),
    "ADANIPORTS": Decimal("1234.50"),
    "TECHM": Decimal("1234.50"),
    "BAJAJFINSV": Decimal("1567.80"),
    "DRREDDY": Decimal("5678.40"),
    "CIPLA": Decimal("1234.50"),
    "EICHERMOT": Decimal("4567.30"),
    "HEROMOTOCO": Decimal("4321.50"),
    "GRASIM": Decimal("2345.60"),
    "BRITANNIA": Decimal("4876.50"),
    "BAJAJ-AUTO": Decimal("8765.30"),
    "HINDALCO": Decimal("567.40"),
    "BPCL": Decimal("567.80"),
}


def build_quote(
    symbol: str,
    price,
    previous_close,
    retrieved_at: datetime,
    provenance: Provenance,
) -> Quote:
    """Quote with change and percent change derived from the two prices."""
    price = Decimal(str(price))
    previous_close = Decimal(str(previous_close))
    change = price - previous_close
    change_percent = change / previous_close * 100 if previous_close else Decimal("0")
    return Quote(
        symbol=symbol,
        price=to_cents(price),
        previous_close=to_cents(previous_close),
        change=to_cents(change),
        change_percent=to_cents(change_percent),
        retrieved_at=retrieved_at,
        provenance=provenance,
    )


def quote_from_history(
    symbol: str,
    points: Sequence[HistoricalPoint],
    retrieved_at: datetime,
) -> Optional[Quote]:
    """
    Same-day quote from the most recent closes.

    Args:
        points: bars ordered newest first; only the first two are used

    Returns:
        Quote, or None when there is no usable close
    """
    if not points:
        return None

    latest = points[0]
    previous = points[1] if len(points) > 1 else latest
    if latest.close is None or latest.close <= 0 or previous.close is None or previous.close <= 0:
        return None

    return build_quote(symbol, latest.close, previous.close, retrieved_at, Provenance.HISTORICAL)


class FallbackPricer:
    """Synthesizes quotes around a reference price with a seeded generator."""

    def __init__(self, reference_prices: Optional[Mapping[str, Decimal]] = None, seed: Optional[int] = 0):
        self.reference_prices = dict(REFERENCE_PRICES if reference_prices is None else reference_prices)
        self._rng = random.Random(seed)

    def reference_price(self, symbol: str) -> Decimal:
        price = self.reference_prices.get(symbol)
        if price is None or price <= 0:
            return DEFAULT_BASE_PRICE
        return Decimal(str(price))

    def quote(self, symbol: str, retrieved_at: datetime) -> Quote:
        base = self.reference_price(symbol)
        variation = Decimal(str((self._rng.random() - 0.5) * 2 * MAX_VARIATION))
        price = max(to_cents(base * (1 + variation)), Decimal("0.01"))
        return build_quote(symbol, price, base, retrieved_at, Provenance.SYNTHETIC)
