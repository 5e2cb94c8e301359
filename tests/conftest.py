# tests/conftest.py
"""Test configuration and fixtures."""

import asyncio
from decimal import Decimal

import pytest
from sqlmodel import Session, SQLModel, create_engine, select
from sqlmodel.pool import StaticPool

from finsim.db.models import Account, Instrument, Position, PriceHistory, utcnow
from finsim.domain.models import Provenance, Quote
from finsim.domain.settlement import TradeSettlement


class FakeClock:
    """Virtual clock: sleeping advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.current = start
        self.sleeps = []

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        await asyncio.sleep(0)


class StubProvider:
    """Quote provider double recording each call and the clock time it was made."""

    def __init__(self, clock=None, prices=None, error=None):
        self.clock = clock
        self.prices = prices or {}
        self.error = error
        self.calls = []

    async def fetch_quote(self, symbol: str) -> Quote:
        self.calls.append((symbol, self.clock.now() if self.clock else None))
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        price = Decimal(str(self.prices.get(symbol, "100.00")))
        return Quote(
            symbol=symbol,
            price=price,
            previous_close=price - 1,
            change=Decimal("1.00"),
            change_percent=(Decimal("100") / (price - 1)).quantize(Decimal("0.01")),
            retrieved_at=utcnow(),
            provenance=Provenance.LIVE,
        )

    @property
    def call_times(self):
        return [t for _, t in self.calls]


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite database shared by every session of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine, expire_on_commit=False) as session:
        yield session


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


def make_account(engine, cash="1000.00", name="student") -> Account:
    with Session(engine, expire_on_commit=False) as session:
        account = Account(display_name=name, cash=Decimal(cash), opening_cash=Decimal(cash))
        session.add(account)
        session.commit()
        return account


def make_instrument(engine, symbol, name="", reference_price=None) -> Instrument:
    with Session(engine, expire_on_commit=False) as session:
        instrument = Instrument(
            symbol=symbol,
            name=name or symbol,
            reference_price=Decimal(reference_price) if reference_price is not None else None,
        )
        session.add(instrument)
        session.commit()
        return instrument


def add_history(engine, instrument, closes_by_day):
    with Session(engine) as session:
        for day, close in closes_by_day.items():
            close = Decimal(str(close))
            session.add(
                PriceHistory(
                    instrument_id=instrument.id,
                    day=day,
                    open=close,
                    high=close,
                    low=close,
                    close=close,
                )
            )
        session.commit()


def load_account(engine, account_id) -> Account:
    with Session(engine) as session:
        return session.get(Account, account_id)


def load_position(engine, account_id, instrument_id):
    with Session(engine) as session:
        return session.exec(
            select(Position).where(
                Position.account_id == account_id,
                Position.instrument_id == instrument_id,
            )
        ).first()


@pytest.fixture(name="account")
def account_fixture(engine):
    return make_account(engine, cash="1000.00")


@pytest.fixture(name="instrument")
def instrument_fixture(engine):
    return make_instrument(engine, "RELIANCE", "Reliance Industries Ltd.", "2456.50")


@pytest.fixture(name="settlement")
def settlement_fixture(engine):
    return TradeSettlement(engine)
