# finsim/domain/order_desk.py
"""Market orders by symbol: quote first, then settle at the quoted price."""

import asyncio
import logging
from typing import Tuple

from sqlmodel import Session, select

from finsim.db.models import Instrument, LedgerEntry
from finsim.domain.models import Quote, Side
from finsim.domain.settlement import TradeSettlement
from finsim.exceptions import UnknownInstrument
from finsim.pricing.feed import QuoteFeed, normalize_symbol

logger = logging.getLogger(__name__)


class OrderDesk:
    """Async front for the settlement engine; database work runs in worker threads."""

    def __init__(self, feed: QuoteFeed, settlement: TradeSettlement):
        self.feed = feed
        self.settlement = settlement

    async def buy(self, account_id: str, symbol: str, quantity: int) -> Tuple[LedgerEntry, Quote]:
        return await self._place(Side.BUY, account_id, symbol, quantity)

    async def sell(self, account_id: str, symbol: str, quantity: int) -> Tuple[LedgerEntry, Quote]:
        return await self._place(Side.SELL, account_id, symbol, quantity)

    async def _place(self, side: Side, account_id: str, symbol: str, quantity: int) -> Tuple[LedgerEntry, Quote]:
        symbol = normalize_symbol(symbol)
        instrument_id = await asyncio.to_thread(self._instrument_id, symbol)
        quote = await self.feed.get_quote(symbol)

        if not quote.is_trusted:
            logger.warning(f"{side.value} {symbol} for {account_id} priced from a synthetic quote ({quote.price})")

        execute = self.settlement.execute_buy if side is Side.BUY else self.settlement.execute_sell
        entry = await asyncio.to_thread(execute, account_id, instrument_id, quantity, quote.price)
        return entry, quote

    def _instrument_id(self, symbol: str) -> str:
        with Session(self.settlement.engine) as session:
            instrument = session.exec(select(Instrument).where(Instrument.symbol == symbol)).first()
        if instrument is None:
            raise UnknownInstrument(f"No instrument with symbol {symbol}")
        return instrument.id
