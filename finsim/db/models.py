# finsim/db/models.py
"""
SQLModel definitions for the trading simulator store.
Designed for SQLite locally, PostgreSQL in production.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional
import uuid

import pytz
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class Account(SQLModel, table=True):
    """Simulated trading account holding a cash balance."""
    __tablename__ = "account"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    display_name: str = Field(default="", index=True)

    cash: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=2)
    opening_cash: Decimal = Field(default=Decimal("0"), max_digits=18, decimal_places=2)

    # Bumped on every cash change; settlement updates are conditional on it
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow)

    positions: List["Position"] = Relationship(back_populates="account")
    ledger_entries: List["LedgerEntry"] = Relationship(back_populates="account")


class Instrument(SQLModel, table=True):
    """Tradable instrument of the fixed universe."""
    __tablename__ = "instrument"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    symbol: str = Field(unique=True, index=True)  # e.g., RELIANCE
    name: str = Field(default="")

    # Last known price, informational only
    reference_price: Optional[Decimal] = Field(default=None, max_digits=18, decimal_places=2)
    updated_at: datetime = Field(default_factory=utcnow)

    positions: List["Position"] = Relationship(back_populates="instrument")
    history: List["PriceHistory"] = Relationship(back_populates="instrument")


class Position(SQLModel, table=True):
    """Current holding of one instrument in one account. Never stored with quantity 0."""
    __tablename__ = "position"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    account_id: str = Field(foreign_key="account.id", index=True)
    instrument_id: str = Field(foreign_key="instrument.id", index=True)

    quantity: int = Field()
    average_cost: Decimal = Field(max_digits=18, decimal_places=6)

    # Exact cost of the shares carrying the average; average_cost = cost_basis / basis_quantity.
    # Sells leave both alone, so basis_quantity != quantity after a partial sell.
    cost_basis: Decimal = Field(default=Decimal("0"), max_digits=24, decimal_places=6)
    basis_quantity: int = Field(default=0)

    version: int = Field(default=0)
    opened_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "instrument_id", name="uq_account_instrument"),
    )

    account: Account = Relationship(back_populates="positions")
    instrument: Instrument = Relationship(back_populates="positions")


class LedgerEntry(SQLModel, table=True):
    """Immutable record of one executed trade."""
    __tablename__ = "ledger_entry"

    # Integer key keeps insertion order for ledger replay
    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: str = Field(foreign_key="account.id", index=True)
    instrument_id: str = Field(foreign_key="instrument.id", index=True)

    side: str = Field()  # BUY or SELL
    quantity: int = Field()
    price: Decimal = Field(max_digits=18, decimal_places=2)
    total: Decimal = Field(max_digits=18, decimal_places=2)  # quantity * price

    executed_at: datetime = Field(default_factory=utcnow, index=True)

    account: Account = Relationship(back_populates="ledger_entries")
    instrument: Instrument = Relationship()


class PriceHistory(SQLModel, table=True):
    """Daily OHLC bar, loaded by external tooling and only read here."""
    __tablename__ = "price_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    instrument_id: str = Field(foreign_key="instrument.id", index=True)
    day: date = Field(index=True)

    open: Decimal = Field(max_digits=18, decimal_places=2)
    high: Decimal = Field(max_digits=18, decimal_places=2)
    low: Decimal = Field(max_digits=18, decimal_places=2)
    close: Decimal = Field(max_digits=18, decimal_places=2)

    __table_args__ = (
        UniqueConstraint("instrument_id", "day", name="uq_instrument_day"),
    )

    instrument: Instrument = Relationship(back_populates="history")
