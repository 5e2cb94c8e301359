# finsim/db/history.py
"""Read-only access to stored daily prices for the quote feed."""

from decimal import Decimal
from typing import Dict, List

from sqlmodel import Session, select

from finsim.db.models import Instrument, PriceHistory
from finsim.domain.models import HistoricalPoint


class SqlHistoryStore:
    """Looks up price history by symbol. Safe to call from worker threads."""

    def __init__(self, engine):
        self.engine = engine

    def latest_points(self, symbol: str, limit: int = 2) -> List[HistoricalPoint]:
        """Most recent bars for `symbol`, newest first. Empty for unknown symbols."""
        with Session(self.engine) as session:
            stmt = (
                select(PriceHistory)
                .join(Instrument)
                .where(Instrument.symbol == symbol)
                .order_by(PriceHistory.day.desc())
                .limit(limit)
            )
            rows = session.exec(stmt).all()

        return [
            HistoricalPoint(day=row.day, close=row.close, open=row.open, high=row.high, low=row.low)
            for row in rows
        ]

    def reference_prices(self) -> Dict[str, Decimal]:
        """Symbol -> last known reference price, for instruments that have one."""
        with Session(self.engine) as session:
            stmt = select(Instrument).where(Instrument.reference_price != None)  # noqa: E711
            return {i.symbol: i.reference_price for i in session.exec(stmt).all()}
