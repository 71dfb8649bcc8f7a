from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (Column, Integer, String, BigInteger, DateTime, Numeric, Text, ForeignKey,
                        UniqueConstraint, Index)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from escrow_service.domain import SwapStatus, TradeStatus

Base = declarative_base()

class DecimalText(TypeDecorator):
    """Exact decimals on SQLite, whose NUMERIC affinity stores REAL."""
    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return format(Decimal(value), "f")

    def process_result_value(self, value, dialect):
        return None if value is None else Decimal(value)

# SQLite only autoincrements INTEGER PRIMARY KEY
BigId = BigInteger().with_variant(Integer, "sqlite")
Amount = Numeric(28, 8).with_variant(DecimalText(), "sqlite")
Rate = Numeric(36, 18).with_variant(DecimalText(), "sqlite")

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class Balance(Base):
    __tablename__ = "balances"
    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    asset = Column(String(8), nullable=False)
    amount = Column(Amount, nullable=False, default=0)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "asset", name="uq_balances_user_asset"),)
    __mapper_args__ = {"version_id_col": version}

class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(BigId, primary_key=True, autoincrement=True)
    balance_id = Column(BigId, ForeignKey("balances.id"), nullable=False, index=True)
    delta = Column(Amount, nullable=False)  # +credit / -debit
    resulting_balance = Column(Amount, nullable=False)
    kind = Column(String(16), nullable=False)
    reference_id = Column(String(64), index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

class Trade(Base):
    __tablename__ = "trades"
    id = Column(String(36), primary_key=True)
    # advertisement snapshot, frozen at open
    advertisement_id = Column(String(64), nullable=False, index=True)
    asset = Column(String(8), nullable=False)
    trade_type = Column(String(4), nullable=False)
    rate = Column(Amount, nullable=False)
    min_limit = Column(Amount, nullable=False)
    max_limit = Column(Amount, nullable=False)
    ad_owner_id = Column(String(64), nullable=False)
    currency = Column(String(8))
    payment_method = Column(String(32))

    buyer_id = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    fiat_amount = Column(Amount, nullable=False)
    asset_amount = Column(Amount, nullable=False)
    status = Column(String(16), nullable=False, default=TradeStatus.PENDING.value, index=True)
    payment_proof_ref = Column(String(255))
    dispute_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def trade_status(self) -> TradeStatus:
        return TradeStatus(self.status)

class Swap(Base):
    __tablename__ = "swaps"
    id = Column(String(36), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    from_asset = Column(String(8), nullable=False)
    to_asset = Column(String(8), nullable=False)
    from_amount = Column(Amount, nullable=False)
    to_amount = Column(Amount, nullable=False)
    rate = Column(Rate, nullable=False)
    status = Column(String(16), nullable=False, default=SwapStatus.COMPLETED.value)
    created_at = Column(DateTime(timezone=True), default=utcnow)

class WalletAddress(Base):
    __tablename__ = "wallet_addresses"
    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    asset = Column(String(8), nullable=False)
    address = Column(String(128), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "asset", name="uq_wallet_addresses_user_asset"),)

class Outbox(Base):
    __tablename__ = "outbox"
    id = Column(BigId, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False)
    payload = Column(String(4000), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    status = Column(String(16), default="new")  # new|sent|failed

Index("ix_outbox_status_id", Outbox.status, Outbox.id)
