# finsim/domain/settlement.py
"""
Trade settlement.
Applies an immediate market buy or sell as one transaction over the account
cash, the position row and the ledger.
"""

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from finsim.db.models import Account, Instrument, LedgerEntry, Position, utcnow
from finsim.domain.models import Side, to_cents
from finsim.exceptions import (
    AccountNotFound,
    InsufficientFunds,
    InsufficientShares,
    InvalidOrder,
    PersistenceFailure,
    UnknownInstrument,
)

logger = logging.getLogger(__name__)

AVERAGE_COST_STEP = Decimal("0.000001")


class StaleRowError(Exception):
    """A conditional write matched no row because another writer changed it first."""


class _AccountLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class AccountLocks:
    """One lock per account id, dropped again once nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _AccountLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, account_id: str):
        with self._guard:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = self._locks[account_id] = _AccountLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[account_id]


def add_lot(held_qty: int, cost_basis: Decimal, basis_qty: int, qty: int, price: Decimal) -> Tuple[Decimal, int]:
    """
    Cost basis and basis quantity after buying `qty` shares at `price`.

    While no shares were sold the basis is the exact sum of q*p over every buy,
    so the average does not depend on the order of the buys. After a partial
    sell the held shares are carried into the new basis at the current average.
    """
    if basis_qty != held_qty:
        carried = cost_basis * held_qty / basis_qty if basis_qty else Decimal("0")
        cost_basis = carried.quantize(AVERAGE_COST_STEP, rounding=ROUND_HALF_UP)
        basis_qty = held_qty
    return cost_basis + qty * price, basis_qty + qty


def average_cost(cost_basis: Decimal, basis_qty: int) -> Decimal:
    return (cost_basis / basis_qty).quantize(AVERAGE_COST_STEP, rounding=ROUND_HALF_UP)


class TradeSettlement:
    """Settles market orders; serializes all trades of one account."""

    def __init__(self, engine, max_attempts: int = 3):
        self.engine = engine
        self.max_attempts = max_attempts
        self._locks = AccountLocks()

    def execute_buy(self, account_id: str, instrument_id: str, quantity: int, price_per_share) -> LedgerEntry:
        """
        Buy `quantity` shares at `price_per_share`.

        Raises:
            InsufficientFunds: total cost exceeds the account cash
            InvalidOrder: quantity or price not positive
            PersistenceFailure: store failed, nothing was applied
        """
        return self._settle(Side.BUY, account_id, instrument_id, quantity, price_per_share)

    def execute_sell(self, account_id: str, instrument_id: str, quantity: int, price_per_share) -> LedgerEntry:
        """
        Sell `quantity` held shares at `price_per_share`.
        Average cost of the remaining shares is left untouched.

        Raises:
            InsufficientShares: no position, or fewer shares held than requested
            InvalidOrder: quantity or price not positive
            PersistenceFailure: store failed, nothing was applied
        """
        return self._settle(Side.SELL, account_id, instrument_id, quantity, price_per_share)

    def _settle(self, side: Side, account_id: str, instrument_id: str, quantity, price_per_share) -> LedgerEntry:
        quantity, price = self._validate_order(quantity, price_per_share)

        with self._locks.hold(account_id):
            for attempt in range(1, self.max_attempts + 1):
                try:
                    return self._apply(side, account_id, instrument_id, quantity, price)
                except StaleRowError as e:
                    logger.warning(
                        f"{side.value} {quantity} x {instrument_id} for {account_id}: "
                        f"concurrent update detected (attempt {attempt}/{self.max_attempts}): {e}"
                    )

        raise PersistenceFailure(
            f"Could not settle {side.value} for account {account_id}: "
            f"rows kept changing after {self.max_attempts} attempts"
        )

    @staticmethod
    def _validate_order(quantity, price_per_share):
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidOrder(f"Quantity must be a positive whole number, got {quantity!r}")
        try:
            price = Decimal(str(price_per_share))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidOrder(f"Price must be a number, got {price_per_share!r}")
        if not price.is_finite() or price <= 0:
            raise InvalidOrder(f"Price must be positive, got {price_per_share!r}")
        try:
            in_cents = to_cents(price)
        except InvalidOperation:
            raise InvalidOrder(f"Price out of range, got {price_per_share!r}")
        # Orders execute at exactly the given price; sub-cent prices are refused, not rounded
        if in_cents != price:
            raise InvalidOrder(f"Price must be a whole number of cents, got {price_per_share!r}")
        return quantity, in_cents

    def _apply(self, side: Side, account_id: str, instrument_id: str, quantity: int, price: Decimal) -> LedgerEntry:
        """One attempt: every write happens in a single transaction or not at all."""
        total = price * quantity

        with Session(self.engine, expire_on_commit=False) as session:
            try:
                with session.begin():
                    account = session.get(Account, account_id)
                    if account is None:
                        raise AccountNotFound(f"Account not found: {account_id}")
                    if session.get(Instrument, instrument_id) is None:
                        raise UnknownInstrument(f"Instrument not found: {instrument_id}")

                    position = session.exec(
                        select(Position).where(
                            Position.account_id == account_id,
                            Position.instrument_id == instrument_id,
                        )
                    ).first()

                    if side is Side.BUY:
                        if total > account.cash:
                            raise InsufficientFunds(
                                f"Buy of {quantity} @ {price} costs {total}, available cash is {account.cash}"
                            )
                        self._write_cash(session, account, account.cash - total)
                        self._add_to_position(session, position, account_id, instrument_id, quantity, price)
                    else:
                        held = position.quantity if position is not None else 0
                        if quantity > held:
                            raise InsufficientShares(f"Sell of {quantity} requested, {held} held")
                        self._write_cash(session, account, account.cash + total)
                        self._reduce_position(session, position, quantity)

                    entry = LedgerEntry(
                        account_id=account_id,
                        instrument_id=instrument_id,
                        side=side.value,
                        quantity=quantity,
                        price=price,
                        total=total,
                    )
                    session.add(entry)
                    session.flush()
            except SQLAlchemyError as e:
                logger.error(f"{side.value} for account {account_id} rolled back: {e}")
                raise PersistenceFailure(f"Store failed while settling {side.value}: {e}") from e

        if side is Side.SELL:
            realized = (price - position.average_cost) * quantity
            logger.info(
                f"SELL {quantity} x {instrument_id} @ {price} for {account_id} "
                f"(total {total}, realized P&L {realized})"
            )
        else:
            logger.info(f"BUY {quantity} x {instrument_id} @ {price} for {account_id} (total {total})")

        return entry

    @staticmethod
    def _write_cash(session: Session, account: Account, new_cash: Decimal) -> None:
        matched = session.query(Account).filter(
            Account.id == account.id,
            Account.version == account.version,
        ).update(
            {"cash": new_cash, "version": account.version + 1},
            synchronize_session=False,
        )
        if matched != 1:
            raise StaleRowError(f"account {account.id} changed since it was read")

    @staticmethod
    def _add_to_position(
        session: Session,
        position: Optional[Position],
        account_id: str,
        instrument_id: str,
        quantity: int,
        price: Decimal,
    ) -> None:
        if position is None:
            session.add(
                Position(
                    account_id=account_id,
                    instrument_id=instrument_id,
                    quantity=quantity,
                    average_cost=price,
                    cost_basis=price * quantity,
                    basis_quantity=quantity,
                )
            )
            try:
                session.flush()
            except IntegrityError as e:
                # another writer opened the same position first
                raise StaleRowError(str(e)) from e
            return

        cost_basis, basis_quantity = add_lot(
            position.quantity, position.cost_basis, position.basis_quantity, quantity, price
        )
        matched = session.query(Position).filter(
            Position.id == position.id,
            Position.version == position.version,
        ).update(
            {
                "quantity": position.quantity + quantity,
                "average_cost": average_cost(cost_basis, basis_quantity),
                "cost_basis": cost_basis,
                "basis_quantity": basis_quantity,
                "version": position.version + 1,
                "updated_at": utcnow(),
            },
            synchronize_session=False,
        )
        if matched != 1:
            raise StaleRowError(f"position {position.id} changed since it was read")

    @staticmethod
    def _reduce_position(session: Session, position: Position, quantity: int) -> None:
        remaining = position.quantity - quantity
        stmt = session.query(Position).filter(
            Position.id == position.id,
            Position.version == position.version,
        )
        if remaining == 0:
            matched = stmt.delete(synchronize_session=False)
        else:
            matched = stmt.update(
                {"quantity": remaining, "version": position.version + 1, "updated_at": utcnow()},
                synchronize_session=False,
            )
        if matched != 1:
            raise StaleRowError(f"position {position.id} changed since it was read")
