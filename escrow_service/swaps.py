"""
Swap Engine: single-step BTC <-> USDT conversion against the platform rate.
"""
import logging
import uuid
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select

from common.error_handling import (AuthorizationError, NotFoundError,
                                   ValidationError)
from common.kafka import TOPIC_SWAP_EVENTS
from common.schemas import SwapEvent
from common.settings import Settings, settings as default_settings
from escrow_service.domain import (ZERO, Asset, EntryKind, SwapStatus, page_window, parse_asset, quantize_asset,
                                   require_positive)
from escrow_service.ledger_store import LedgerStore
from escrow_service.models import Swap, utcnow
from escrow_service.wallet import WalletService

logger = logging.getLogger(__name__)

class StaticRateProvider:
    """Mock exchange rate until a real price feed exists"""

    def __init__(self, btc_usdt_rate: Decimal = None):
        rate = btc_usdt_rate if btc_usdt_rate is not None else default_settings.btc_usdt_rate
        self.btc_usdt_rate = require_positive(rate, "btc_usdt_rate")

    def quote(self, from_asset, to_asset) -> Decimal:
        from_asset, to_asset = parse_asset(from_asset), parse_asset(to_asset)
        if from_asset == to_asset:
            raise ValidationError("Cannot swap same asset", field="to_asset")
        if from_asset == Asset.BTC:
            return self.btc_usdt_rate
        return Decimal(1) / self.btc_usdt_rate

def swap_event(swap: Swap) -> dict:
    return SwapEvent(
        type="SwapCompleted",
        swap_id=swap.id,
        user_id=swap.user_id,
        from_asset=swap.from_asset,
        to_asset=swap.to_asset,
        from_amount=swap.from_amount,
        to_amount=swap.to_amount,
        rate=swap.rate,
        at=utcnow(),
    ).model_dump(mode="json")

class SwapEngine:
    def __init__(self, store: LedgerStore, wallet: WalletService, rates: StaticRateProvider = None,
                 config: Settings = None):
        self._store = store
        self._wallet = wallet
        self._rates = rates or StaticRateProvider((config or default_settings).btc_usdt_rate)

    def quote(self, from_asset, to_asset) -> Decimal:
        return self._rates.quote(from_asset, to_asset)

    def execute_swap(self, user_id: str, from_asset, to_asset, from_amount, rate=None) -> Swap:
        """Debit from_asset and credit to_asset in one unit of work.

        An insufficient balance persists nothing. A failure after the debit
        rolls the unit back and records the attempt as FAILED before
        re-raising.
        """
        from_asset, to_asset = parse_asset(from_asset), parse_asset(to_asset)
        if from_asset == to_asset:
            raise ValidationError("Cannot swap same asset", field="to_asset")
        from_amount = quantize_asset(require_positive(from_amount, "from_amount"))
        rate = require_positive(rate, "rate") if rate is not None else self.quote(from_asset, to_asset)
        to_amount = quantize_asset(from_amount * rate)
        if from_amount <= ZERO or to_amount <= ZERO:
            raise ValidationError("Swap amount is too small", field="from_amount")

        swap_id = str(uuid.uuid4())
        debited = False
        try:
            with self._store.unit_of_work() as s:
                self._wallet.adjust_single(user_id, from_asset, -from_amount, EntryKind.SWAP_DEBIT,
                                           reference_id=swap_id, session=s)
                debited = True
                self._wallet.adjust_single(user_id, to_asset, to_amount, EntryKind.SWAP_CREDIT,
                                           reference_id=swap_id, session=s)
                swap = Swap(id=swap_id, user_id=user_id, from_asset=from_asset.value, to_asset=to_asset.value,
                            from_amount=from_amount, to_amount=to_amount, rate=rate,
                            status=SwapStatus.COMPLETED.value)
                s.add(swap)
                s.flush()
                self._store.enqueue_event(s, TOPIC_SWAP_EVENTS, swap_event(swap))
        except Exception:
            if debited:
                self._record_failed(swap_id, user_id, from_asset, to_asset, from_amount, to_amount, rate)
            raise

        logger.info(f"🔄 Swap {swap_id}: {from_amount} {from_asset.value} -> {to_amount} {to_asset.value} "
                    f"@ {rate} for {user_id}")
        return swap

    def _record_failed(self, swap_id, user_id, from_asset, to_asset, from_amount, to_amount, rate) -> None:
        logger.error(f"❌ Swap {swap_id} failed after debit, ledger changes rolled back")
        with self._store.unit_of_work() as s:
            s.add(Swap(id=swap_id, user_id=user_id, from_asset=from_asset.value, to_asset=to_asset.value,
                       from_amount=from_amount, to_amount=to_amount, rate=rate,
                       status=SwapStatus.FAILED.value))

    def get_swap(self, swap_id: str, user_id: str) -> Swap:
        with self._store.session() as s:
            swap = s.get(Swap, swap_id)
        if swap is None:
            raise NotFoundError("Swap not found", field="swap_id", context={"swap_id": swap_id})
        if swap.user_id != user_id:
            raise AuthorizationError("Not your swap", context={"swap_id": swap_id})
        return swap

    def list_swaps(self, user_id: str, page: int = 1, limit: int = 20,
                   status: Optional[SwapStatus] = None) -> Tuple[List[Swap], int]:
        offset, limit = page_window(page, limit)
        conditions = [Swap.user_id == user_id]
        if status is not None:
            conditions.append(Swap.status == SwapStatus(status).value)
        with self._store.session() as s:
            total = s.scalar(select(func.count(Swap.id)).where(*conditions))
            swaps = s.scalars(
                select(Swap).where(*conditions).order_by(Swap.created_at.desc(), Swap.id).offset(offset).limit(limit)
            ).all()
        return list(swaps), total or 0
