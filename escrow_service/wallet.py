"""
Wallet Service: the only component allowed to mutate balances.

transfer and adjust_single are the two mutation entry points. Both lock every
balance they touch (ordered by key) and write the balance update together with
its ledger entry, so for every balance

    amount == sum(entry.delta for entry in its ledger)

holds after every committed unit of work.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from common.error_handling import (AuthorizationError, InsufficientBalanceError, StateConflictError,
                                   ValidationError)
from common.settings import Settings, settings as default_settings
from escrow_service.domain import (ZERO, Asset, EntryKind, page_window, parse_asset, quantize_asset,
                                   require_positive, to_decimal)
from escrow_service.ledger_store import LedgerStore
from escrow_service.models import Balance, LedgerEntry, WalletAddress

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class TransferResult:
    reference_id: str
    from_balance: Decimal
    to_balance: Decimal
    debit: LedgerEntry
    credit: LedgerEntry

class WalletService:
    def __init__(self, store: LedgerStore, provisioner=None, config: Settings = None):
        self._store = store
        self._provisioner = provisioner
        self._config = config or default_settings

    # -- reads --------------------------------------------------------------

    def get_balance(self, user_id: str, asset) -> Decimal:
        asset = parse_asset(asset)
        with self._store.session() as session:
            balance = self._store.find_balance(session, user_id, asset.value)
            return quantize_asset(Decimal(balance.amount)) if balance else quantize_asset(ZERO)

    def list_balances(self, user_id: str) -> Dict[Asset, Decimal]:
        with self._store.session() as session:
            rows = session.scalars(select(Balance).where(Balance.user_id == user_id)).all()
        found = {row.asset: quantize_asset(Decimal(row.amount)) for row in rows}
        return {asset: found.get(asset.value, quantize_asset(ZERO)) for asset in Asset}

    def list_entries(self, user_id: str, asset, page: int = 1, limit: int = 20) -> Tuple[List[LedgerEntry], int]:
        """Newest-first page of one balance's ledger plus the total entry count."""
        asset = parse_asset(asset)
        offset, limit = page_window(page, limit)
        scope = (LedgerEntry.balance_id == Balance.id, Balance.user_id == user_id, Balance.asset == asset.value)
        with self._store.session() as session:
            total = session.scalar(select(func.count(LedgerEntry.id)).where(*scope))
            entries = session.scalars(
                select(LedgerEntry).where(*scope).order_by(LedgerEntry.id.desc()).offset(offset).limit(limit)
            ).all()
        return list(entries), total or 0

    def entries_for_reference(self, reference_id: str) -> List[LedgerEntry]:
        with self._store.session() as session:
            return list(session.scalars(
                select(LedgerEntry).where(LedgerEntry.reference_id == reference_id).order_by(LedgerEntry.id)
            ).all())

    def reconcile(self, user_id: str, asset) -> Tuple[Decimal, Decimal]:
        """Return (stored amount, sum of ledger deltas) for one balance."""
        asset = parse_asset(asset)
        with self._store.session() as session:
            balance = self._store.find_balance(session, user_id, asset.value)
            if balance is None:
                return ZERO, ZERO
            deltas = session.scalars(select(LedgerEntry.delta).where(LedgerEntry.balance_id == balance.id)).all()
            # Summed in Python: SQLite would sum in floating point
            return quantize_asset(Decimal(balance.amount)), quantize_asset(sum((Decimal(d) for d in deltas), ZERO))

    # -- mutations ----------------------------------------------------------

    def transfer(self, from_user_id: str, to_user_id: str, asset, amount,
                 reference_id: Optional[str] = None, session: Optional[Session] = None) -> TransferResult:
        """Move amount of asset between two users atomically.

        Writes exactly one WITHDRAWAL and one DEPOSIT entry sharing
        reference_id. A rejected transfer leaves both balances untouched.
        """
        asset = parse_asset(asset)
        amount = self._positive_amount(amount)
        if from_user_id == to_user_id:
            raise ValidationError("Cannot transfer to the same user", field="to_user_id")
        reference_id = reference_id or str(uuid.uuid4())

        with self._store.unit_of_work(session) as s:
            locked = self._store.lock_balances(s, [(from_user_id, asset.value), (to_user_id, asset.value)])
            source = locked[(from_user_id, asset.value)]
            target = locked[(to_user_id, asset.value)]

            available = Decimal(source.amount)
            if available < amount:
                raise InsufficientBalanceError(
                    f"Insufficient {asset.value} balance",
                    context={"user_id": from_user_id, "asset": asset.value,
                             "available": str(available), "required": str(amount)},
                )

            debit = self._store.write_entry(s, source, -amount, EntryKind.WITHDRAWAL, reference_id)
            credit = self._store.write_entry(s, target, amount, EntryKind.DEPOSIT, reference_id)

        logger.info(f"💸 Transfer {reference_id}: {amount} {asset.value} {from_user_id} -> {to_user_id}")
        return TransferResult(
            reference_id=reference_id,
            from_balance=debit.resulting_balance,
            to_balance=credit.resulting_balance,
            debit=debit,
            credit=credit,
        )

    def adjust_single(self, user_id: str, asset, delta, kind: EntryKind,
                      reference_id: Optional[str] = None, session: Optional[Session] = None) -> LedgerEntry:
        """Apply a one-sided signed delta; the result may not go negative."""
        asset = parse_asset(asset)
        delta = quantize_asset(to_decimal(delta, "delta"))
        if delta == ZERO:
            raise ValidationError("delta must be non-zero", field="delta")

        with self._store.unit_of_work(session) as s:
            balance = self._store.lock_balances(s, [(user_id, asset.value)])[(user_id, asset.value)]
            current = Decimal(balance.amount)
            if current + delta < ZERO:
                raise InsufficientBalanceError(
                    f"Insufficient {asset.value} balance",
                    context={"user_id": user_id, "asset": asset.value,
                             "available": str(current), "required": str(-delta)},
                )
            entry = self._store.write_entry(s, balance, delta, kind, reference_id)

        logger.info(f"Ledger {kind.value} {delta} {asset.value} for {user_id} (ref={reference_id})")
        return entry

    def deposit(self, user_id: str, asset, amount, reference_id: Optional[str] = None,
                session: Optional[Session] = None) -> LedgerEntry:
        return self.adjust_single(user_id, asset, self._positive_amount(amount), EntryKind.DEPOSIT,
                                  reference_id, session=session)

    def seed_demo_balances(self, user_id: str) -> Dict[Asset, Decimal]:
        """Top both balances up to the configured demo amounts (non-production only)."""
        if self._config.is_production:
            raise AuthorizationError("Demo balance not available in production")

        targets = {
            Asset.BTC: quantize_asset(self._config.demo_btc_balance),
            Asset.USDT: quantize_asset(self._config.demo_usdt_balance),
        }
        reference_id = f"demo-{uuid.uuid4()}"
        with self._store.unit_of_work() as s:
            locked = self._store.lock_balances(s, [(user_id, asset.value) for asset in targets])
            for asset, target in targets.items():
                balance = locked[(user_id, asset.value)]
                shortfall = target - Decimal(balance.amount)
                if shortfall > ZERO:
                    self._store.write_entry(s, balance, shortfall, EntryKind.DEPOSIT, reference_id)
            result = {asset: quantize_asset(Decimal(locked[(user_id, asset.value)].amount)) for asset in targets}

        logger.info(f"Demo balances seeded for {user_id}: {result}")
        return result

    def provision_addresses(self, user_id: str) -> Tuple[Dict[str, str], bool]:
        """Make sure the user has a deposit address per asset.

        Returns ({asset: address}, whether any address was newly generated).
        """
        if self._provisioner is None:
            raise ValidationError("Wallet provisioning is not configured")
        try:
            with self._store.unit_of_work() as s:
                rows = s.scalars(select(WalletAddress).where(WalletAddress.user_id == user_id)).all()
                addresses = {row.asset: row.address for row in rows}
                generated = False
                for asset in Asset:
                    if asset.value in addresses:
                        continue
                    address = self._provisioner.provision(user_id, asset)
                    s.add(WalletAddress(user_id=user_id, asset=asset.value, address=address))
                    addresses[asset.value] = address
                    generated = True
        except IntegrityError as e:
            raise StateConflictError("Wallet addresses are already being generated for this user") from e
        return addresses, generated

    @staticmethod
    def _positive_amount(amount) -> Decimal:
        amount = quantize_asset(require_positive(amount))
        if amount == ZERO:
            raise ValidationError("amount is below the smallest asset unit", field="amount")
        return amount
