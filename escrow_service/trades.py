"""
Trade Lifecycle Engine.

Drives a trade through the state machine in escrow_service.state_machine and
calls the wallet service at release time. Every transition runs in one unit of
work on the locked trade row: the status change, any ledger entries and the
outbox event commit together or not at all.
"""
import logging
import uuid
from decimal import Decimal
from typing import List, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from common.error_handling import (InsufficientBalanceError, InsufficientSellerBalance, InvalidAmountRange,
                                   SelfTradeForbidden, ValidationError)
from common.kafka import TOPIC_TRADE_EVENTS
from common.schemas import TradeEvent
from escrow_service import state_machine
from escrow_service.domain import (ZERO, AdvertisementSnapshot, TradeStatus, TradeType, page_window,
                                   to_decimal)
from escrow_service.ledger_store import LedgerStore
from escrow_service.models import Trade, utcnow
from escrow_service.state_machine import TradeAction
from escrow_service.wallet import WalletService

logger = logging.getLogger(__name__)

MAX_DISPUTE_REASON = 1000

EVENT_TYPES = {
    TradeStatus.PENDING: "TradeOpened",
    TradeStatus.PAID: "TradePaid",
    TradeStatus.COMPLETED: "TradeCompleted",
    TradeStatus.DISPUTED: "TradeDisputed",
    TradeStatus.CANCELLED: "TradeCancelled",
}

def trade_event(trade: Trade) -> dict:
    return TradeEvent(
        type=EVENT_TYPES[trade.trade_status],
        trade_id=trade.id,
        advertisement_id=trade.advertisement_id,
        buyer_id=trade.buyer_id,
        seller_id=trade.seller_id,
        asset=trade.asset,
        asset_amount=trade.asset_amount,
        fiat_amount=trade.fiat_amount,
        status=trade.status,
        at=utcnow(),
    ).model_dump(mode="json")

class TradeEngine:
    def __init__(self, store: LedgerStore, wallet: WalletService):
        self._store = store
        self._wallet = wallet

    def open_trade(self, snapshot: AdvertisementSnapshot, initiator_id: str, fiat_amount) -> Trade:
        """Create a PENDING trade against an (already verified ACTIVE) advertisement."""
        fiat_amount = to_decimal(fiat_amount, "amount")
        if not snapshot.min_limit <= fiat_amount <= snapshot.max_limit:
            raise InvalidAmountRange(
                f"Amount must be between {snapshot.min_limit} and {snapshot.max_limit}",
                field="amount",
                context={"min_limit": str(snapshot.min_limit), "max_limit": str(snapshot.max_limit),
                         "amount": str(fiat_amount)},
            )
        if initiator_id == snapshot.owner_id:
            raise SelfTradeForbidden("Cannot trade with your own advertisement", field="advertisement_id")

        asset_amount = snapshot.asset_amount_for(fiat_amount)
        if asset_amount <= ZERO:
            raise InvalidAmountRange("Amount is too small to convert at this rate", field="amount")

        if snapshot.trade_type == TradeType.SELL:
            buyer_id, seller_id = initiator_id, snapshot.owner_id
            # Advisory only: nothing is held, release re-checks under lock
            available = self._wallet.get_balance(seller_id, snapshot.asset)
            if available < asset_amount:
                raise InsufficientSellerBalance(
                    "Seller has insufficient balance",
                    context={"asset": snapshot.asset.value, "available": str(available),
                             "required": str(asset_amount)},
                )
        else:
            buyer_id, seller_id = snapshot.owner_id, initiator_id

        trade = Trade(
            id=str(uuid.uuid4()),
            advertisement_id=snapshot.advertisement_id,
            asset=snapshot.asset.value,
            trade_type=snapshot.trade_type.value,
            rate=snapshot.rate,
            min_limit=snapshot.min_limit,
            max_limit=snapshot.max_limit,
            ad_owner_id=snapshot.owner_id,
            currency=snapshot.currency,
            payment_method=snapshot.payment_method,
            buyer_id=buyer_id,
            seller_id=seller_id,
            fiat_amount=fiat_amount,
            asset_amount=asset_amount,
            status=TradeStatus.PENDING.value,
        )
        with self._store.unit_of_work() as s:
            s.add(trade)
            s.flush()
            self._store.enqueue_event(s, TOPIC_TRADE_EVENTS, trade_event(trade))

        logger.info(f"🤝 Trade {trade.id} opened on ad {snapshot.advertisement_id}: "
                    f"{asset_amount} {snapshot.asset.value} for {fiat_amount} (buyer={buyer_id}, seller={seller_id})")
        return trade

    def submit_payment_proof(self, trade_id: str, actor_id: str, proof_ref: str) -> Trade:
        if not proof_ref:
            raise ValidationError("Payment proof reference is required", field="proof")
        with self._store.unit_of_work() as s:
            trade = self._transition(s, trade_id, actor_id, TradeAction.SUBMIT_PROOF)
            trade.payment_proof_ref = proof_ref
            self._finish(s, trade)
        logger.info(f"🧾 Payment proof submitted for trade {trade_id}")
        return trade

    def release(self, trade_id: str, actor_id: str) -> Trade:
        """Move the frozen asset amount from seller to buyer and complete the trade."""
        with self._store.unit_of_work() as s:
            trade = self._transition(s, trade_id, actor_id, TradeAction.RELEASE)
            try:
                self._wallet.transfer(trade.seller_id, trade.buyer_id, trade.asset, Decimal(trade.asset_amount),
                                      reference_id=trade.id, session=s)
            except InsufficientBalanceError as e:
                raise InsufficientSellerBalance(
                    "Seller has insufficient balance to release this trade",
                    context={"trade_id": trade_id, **e.context},
                ) from e
            trade.completed_at = utcnow()
            self._finish(s, trade)
        logger.info(f"✅ Trade {trade_id} released: {trade.asset_amount} {trade.asset} "
                    f"{trade.seller_id} -> {trade.buyer_id}")
        return trade

    def dispute(self, trade_id: str, actor_id: str, reason: str) -> Trade:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Dispute reason is required", field="reason")
        if len(reason) > MAX_DISPUTE_REASON:
            raise ValidationError(f"Dispute reason must be at most {MAX_DISPUTE_REASON} characters", field="reason")
        with self._store.unit_of_work() as s:
            trade = self._transition(s, trade_id, actor_id, TradeAction.DISPUTE)
            trade.dispute_reason = reason
            self._finish(s, trade)
        logger.warning(f"⚠️ Trade {trade_id} disputed by {actor_id}")
        return trade

    def cancel(self, trade_id: str, actor_id: str) -> Trade:
        with self._store.unit_of_work() as s:
            trade = self._transition(s, trade_id, actor_id, TradeAction.CANCEL)
            self._finish(s, trade)
        logger.info(f"Trade {trade_id} cancelled by {actor_id}")
        return trade

    def get_trade(self, trade_id: str, viewer_id: str) -> Trade:
        with self._store.session() as s:
            trade = self._store.get_trade(s, trade_id)
        state_machine.role_of(viewer_id, trade.buyer_id, trade.seller_id)
        return trade

    def list_trades(self, user_id: str, page: int = 1, limit: int = 20) -> Tuple[List[Trade], int]:
        offset, limit = page_window(page, limit)
        mine = or_(Trade.buyer_id == user_id, Trade.seller_id == user_id)
        with self._store.session() as s:
            total = s.scalar(select(func.count(Trade.id)).where(mine))
            trades = s.scalars(
                select(Trade).where(mine).order_by(Trade.created_at.desc(), Trade.id).offset(offset).limit(limit)
            ).all()
        return list(trades), total or 0

    def _transition(self, session: Session, trade_id: str, actor_id: str, action: TradeAction) -> Trade:
        trade = self._store.lock_trade(session, trade_id)
        target = state_machine.apply(action, trade.trade_status, actor_id, trade.buyer_id, trade.seller_id)
        trade.status = target.value
        return trade

    def _finish(self, session: Session, trade: Trade) -> None:
        session.flush()
        self._store.enqueue_event(session, TOPIC_TRADE_EVENTS, trade_event(trade))
