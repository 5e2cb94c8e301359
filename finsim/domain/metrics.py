# finsim/domain/metrics.py
"""Portfolio valuation and ledger replay."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Mapping, Optional, Tuple

import pandas as pd
from sqlmodel import Session, select

from finsim.db.models import Account, Instrument, LedgerEntry, Position
from finsim.domain.models import Quote, Side
from finsim.domain.settlement import add_lot, average_cost
from finsim.exceptions import AccountNotFound


@dataclass
class LedgerReplay:
    """State rebuilt from the ledger alone."""
    cash: Decimal
    positions: Dict[str, Tuple[int, Decimal]] = field(default_factory=dict)  # instrument_id -> (qty, avg)
    realized_pnl: Decimal = Decimal("0")
    buy_total: Decimal = Decimal("0")
    sell_total: Decimal = Decimal("0")


class PortfolioMetrics:
    """Calculate holdings, valuation and trade history for an account."""

    @staticmethod
    def replay_ledger(session: Session, account_id: str) -> LedgerReplay:
        """
        Rebuild cash, positions and realized P&L from the account's opening
        cash and its ledger, using the same average-cost rules as settlement.
        """
        account = session.get(Account, account_id)
        if account is None:
            raise AccountNotFound(f"Account not found: {account_id}")

        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.id)
        )
        entries = session.exec(stmt).all()

        replay = LedgerReplay(cash=account.opening_cash)
        basis: Dict[str, Tuple[Decimal, int]] = {}  # instrument_id -> (cost_basis, basis_qty)
        for entry in entries:
            qty, avg = replay.positions.get(entry.instrument_id, (0, Decimal("0")))

            if entry.side == Side.BUY.value:
                replay.cash -= entry.total
                replay.buy_total += entry.total
                cost_basis, basis_qty = basis.get(entry.instrument_id, (Decimal("0"), 0))
                cost_basis, basis_qty = add_lot(qty, cost_basis, basis_qty, entry.quantity, entry.price)
                basis[entry.instrument_id] = (cost_basis, basis_qty)
                replay.positions[entry.instrument_id] = (qty + entry.quantity, average_cost(cost_basis, basis_qty))
            else:
                replay.cash += entry.total
                replay.sell_total += entry.total
                replay.realized_pnl += (entry.price - avg) * entry.quantity
                remaining = qty - entry.quantity
                if remaining > 0:
                    replay.positions[entry.instrument_id] = (remaining, avg)
                else:
                    replay.positions.pop(entry.instrument_id, None)
                    basis.pop(entry.instrument_id, None)

        return replay

    @staticmethod
    def holdings_frame(
        session: Session,
        account_id: str,
        quotes: Optional[Mapping[str, Quote]] = None,
    ) -> pd.DataFrame:
        """
        Current positions valued at the given quotes.

        Positions without a quote are valued at the instrument reference price,
        or at cost when there is none.

        Returns DataFrame with columns: symbol, name, quantity, average_cost, price,
        cost_basis, market_value, unrealized_pnl, unrealized_pct, provenance
        """
        columns = [
            "symbol", "name", "quantity", "average_cost", "price", "cost_basis",
            "market_value", "unrealized_pnl", "unrealized_pct", "provenance",
        ]
        quotes = quotes or {}

        stmt = (
            select(Position, Instrument)
            .join(Instrument, Position.instrument_id == Instrument.id)
            .where(Position.account_id == account_id)
            .order_by(Instrument.symbol)
        )
        rows = session.exec(stmt).all()

        if not rows:
            return pd.DataFrame(columns=columns)

        records = []
        for position, instrument in rows:
            quote = quotes.get(instrument.symbol)
            if quote is not None:
                price, provenance = quote.price, quote.provenance.value
            elif instrument.reference_price is not None:
                price, provenance = instrument.reference_price, "reference"
            else:
                price, provenance = position.average_cost, "cost"

            cost_basis = position.average_cost * position.quantity
            market_value = price * position.quantity
            records.append(
                {
                    "symbol": instrument.symbol,
                    "name": instrument.name,
                    "quantity": position.quantity,
                    "average_cost": float(position.average_cost),
                    "price": float(price),
                    "cost_basis": float(cost_basis),
                    "market_value": float(market_value),
                    "unrealized_pnl": float(market_value - cost_basis),
                    "unrealized_pct": float((market_value - cost_basis) / cost_basis * 100) if cost_basis else 0.0,
                    "provenance": provenance,
                }
            )

        return pd.DataFrame(records, columns=columns)

    @staticmethod
    def ledger_frame(session: Session, account_id: str) -> pd.DataFrame:
        """
        Trade history, newest first.

        Returns DataFrame with columns: executed_at, symbol, side, quantity, price, total
        """
        stmt = (
            select(LedgerEntry, Instrument.symbol)
            .join(Instrument, LedgerEntry.instrument_id == Instrument.id)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.id.desc())
        )
        rows = session.exec(stmt).all()

        if not rows:
            return pd.DataFrame(columns=["executed_at", "symbol", "side", "quantity", "price", "total"])

        return pd.DataFrame(
            [
                {
                    "executed_at": entry.executed_at,
                    "symbol": symbol,
                    "side": entry.side,
                    "quantity": entry.quantity,
                    "price": float(entry.price),
                    "total": float(entry.total),
                }
                for entry, symbol in rows
            ]
        )

    @staticmethod
    def account_summary(
        session: Session,
        account_id: str,
        quotes: Optional[Mapping[str, Quote]] = None,
    ) -> Dict:
        """Cash, holdings value and P&L totals for one account."""
        account = session.get(Account, account_id)
        if account is None:
            raise AccountNotFound(f"Account not found: {account_id}")

        holdings = PortfolioMetrics.holdings_frame(session, account_id, quotes)
        replay = PortfolioMetrics.replay_ledger(session, account_id)

        invested = float(holdings["cost_basis"].sum()) if not holdings.empty else 0.0
        market_value = float(holdings["market_value"].sum()) if not holdings.empty else 0.0
        cash = float(account.cash)

        return {
            "cash": cash,
            "invested": invested,
            "market_value": market_value,
            "total_value": cash + market_value,
            "unrealized_pnl": market_value - invested,
            "realized_pnl": float(replay.realized_pnl),
            "positions_count": len(holdings),
            "trades_count": len(PortfolioMetrics.ledger_frame(session, account_id)),
        }
