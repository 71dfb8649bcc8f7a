from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Literal, Optional

class OpenTrade(BaseModel):
    advertisement_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0, description="Fiat amount")

class DisputeTrade(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)

class ExecuteSwap(BaseModel):
    from_asset: Literal["BTC", "USDT"]
    to_asset: Literal["BTC", "USDT"]
    from_amount: Decimal = Field(gt=0)

class TradeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    advertisement_id: str
    asset: str
    trade_type: str
    rate: Decimal
    currency: Optional[str] = None
    payment_method: Optional[str] = None
    buyer_id: str
    seller_id: str
    fiat_amount: Decimal
    asset_amount: Decimal
    status: str
    payment_proof_ref: Optional[str] = None
    dispute_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

class TradesPage(BaseModel):
    trades: List[TradeOut]
    page: int
    limit: int
    total: int

class BalanceOut(BaseModel):
    asset: str
    amount: Decimal

class WalletsOut(BaseModel):
    user_id: str
    balances: List[BalanceOut]

class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    delta: Decimal
    resulting_balance: Decimal
    kind: str
    reference_id: Optional[str] = None
    created_at: Optional[datetime] = None

class TransactionsPage(BaseModel):
    asset: str
    transactions: List[LedgerEntryOut]
    page: int
    limit: int
    total: int

class AddressesOut(BaseModel):
    addresses: Dict[str, str]
    generated: bool

class SwapOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    rate: Decimal
    status: str
    created_at: Optional[datetime] = None

class SwapsPage(BaseModel):
    swaps: List[SwapOut]
    page: int
    limit: int
    total: int

class SwapQuote(BaseModel):
    from_asset: str
    to_asset: str
    rate: Decimal

class TradeEvent(BaseModel):
    type: Literal["TradeOpened", "TradePaid", "TradeCompleted", "TradeDisputed", "TradeCancelled"]
    trade_id: str
    advertisement_id: str
    buyer_id: str
    seller_id: str
    asset: str
    asset_amount: Decimal
    fiat_amount: Decimal
    status: str
    at: datetime

class SwapEvent(BaseModel):
    type: Literal["SwapCompleted"]
    swap_id: str
    user_id: str
    from_asset: str
    to_asset: str
    from_amount: Decimal
    to_amount: Decimal
    rate: Decimal
    at: datetime
