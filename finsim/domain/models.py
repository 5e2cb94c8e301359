# finsim/domain/models.py
"""Domain value objects."""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

CENT = Decimal("0.01")


def to_cents(value) -> Decimal:
    """Round a number to 2 decimal places the way displayed prices are rounded."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Provenance(str, Enum):
    """Where a quote came from."""
    HISTORICAL = "historical"
    LIVE = "live"
    SYNTHETIC = "synthetic"


@dataclass(frozen=True)
class Quote:
    """Point-in-time price reading for one symbol."""
    symbol: str
    price: Decimal
    previous_close: Decimal
    change: Decimal
    change_percent: Decimal
    retrieved_at: datetime
    provenance: Provenance = Provenance.LIVE

    @property
    def is_trusted(self) -> bool:
        """Synthetic quotes are placeholders, not market data."""
        return self.provenance is not Provenance.SYNTHETIC


@dataclass(frozen=True)
class HistoricalPoint:
    """One daily bar as returned by a history store."""
    day: date
    close: Decimal
    open: Optional[Decimal] = None
    high: Optional[Decimal] = None
    low: Optional[Decimal] = None
