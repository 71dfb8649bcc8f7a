"""
Ledger Store: durable balances, the append-only ledger, and trade/swap rows.

The store owns transactions and row locking but no business rules: whether a
mutation is allowed is decided by the wallet service and the engines. Every
balance change goes through write_entry, which updates the balance row and
appends its ledger entry in the same unit of work.
"""
import json
import logging
import threading
from contextlib import contextmanager, nullcontext
from decimal import Decimal
from typing import Dict, Iterable, Iterator, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from common.error_handling import NotFoundError, StateConflictError, StorageUnavailableError
from escrow_service.domain import ZERO, EntryKind, quantize_asset
from escrow_service.models import Balance, Base, LedgerEntry, Outbox, Trade

logger = logging.getLogger(__name__)

BalanceKey = Tuple[str, str]  # (user_id, asset)

class LedgerStore:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        # SQLite ignores FOR UPDATE and admits one writer: serialize units of work
        self._serial = threading.RLock() if engine.dialect.name == "sqlite" else None

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def ping(self) -> bool:
        with self._translate_errors():
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        return True

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except StaleDataError as e:
            raise StateConflictError("Concurrent update detected, reload and retry") from e
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Ledger storage failure: {e}")
            raise StorageUnavailableError("Ledger storage is unavailable", original_error=e) from e

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Plain session outside any unit of work; the caller commits, if at all."""
        with self._translate_errors():
            with self._sessions() as session:
                yield session

    @contextmanager
    def unit_of_work(self, session: Optional[Session] = None) -> Iterator[Session]:
        """One atomic transaction. Joins the caller's unit when a session is given."""
        if session is not None:
            yield session
            return
        with self._serial if self._serial is not None else nullcontext():
            with self._translate_errors():
                with self._sessions() as session:
                    with session.begin():
                        yield session

    # -- balances -----------------------------------------------------------

    @staticmethod
    def _balance_query(user_id: str, asset: str):
        return select(Balance).where(Balance.user_id == user_id, Balance.asset == asset)

    def find_balance(self, session: Session, user_id: str, asset: str) -> Optional[Balance]:
        return session.execute(self._balance_query(user_id, asset)).scalar_one_or_none()

    def lock_balances(self, session: Session, keys: Iterable[BalanceKey]) -> Dict[BalanceKey, Balance]:
        """Lock every requested balance row, creating missing rows at zero.

        Rows are locked in sorted key order so that a transfer racing its
        reverse transfer cannot deadlock.
        """
        locked = {}
        for user_id, asset in sorted(set(keys)):
            locked[(user_id, asset)] = self._lock_or_create(session, user_id, asset)
        return locked

    def _lock_or_create(self, session: Session, user_id: str, asset: str) -> Balance:
        stmt = (self._balance_query(user_id, asset)
                .with_for_update()
                .execution_options(populate_existing=True))
        balance = session.execute(stmt).scalar_one_or_none()
        if balance is not None:
            return balance

        balance = Balance(user_id=user_id, asset=asset, amount=ZERO)
        if self._serial is not None:
            session.add(balance)
            session.flush()
            return balance
        try:
            with session.begin_nested():
                session.add(balance)
        except IntegrityError:
            # Another transaction created the row first
            return session.execute(stmt).scalar_one()
        return balance

    def write_entry(self, session: Session, balance: Balance, delta: Decimal,
                    kind: EntryKind, reference_id: Optional[str]) -> LedgerEntry:
        """Apply delta to a locked balance and append its ledger entry."""
        balance.amount = quantize_asset(Decimal(balance.amount) + delta)
        entry = LedgerEntry(
            balance_id=balance.id,
            delta=delta,
            resulting_balance=balance.amount,
            kind=kind.value,
            reference_id=reference_id,
        )
        session.add(entry)
        session.flush()
        return entry

    # -- trades -------------------------------------------------------------

    def get_trade(self, session: Session, trade_id: str) -> Trade:
        trade = session.get(Trade, trade_id)
        if trade is None:
            raise NotFoundError("Trade not found", field="trade_id", context={"trade_id": trade_id})
        return trade

    def lock_trade(self, session: Session, trade_id: str) -> Trade:
        stmt = (select(Trade).where(Trade.id == trade_id)
                .with_for_update()
                .execution_options(populate_existing=True))
        trade = session.execute(stmt).scalar_one_or_none()
        if trade is None:
            raise NotFoundError("Trade not found", field="trade_id", context={"trade_id": trade_id})
        return trade

    # -- outbox -------------------------------------------------------------

    def enqueue_event(self, session: Session, topic: str, payload: dict) -> Outbox:
        row = Outbox(topic=topic, payload=json.dumps(payload, default=str), status="new")
        session.add(row)
        return row
