"""
Value types shared by the wallet ledger, the trade engine and the swap engine.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from enum import Enum
from typing import Optional, Tuple

from common.error_handling import UnknownAsset, ValidationError

ASSET_SCALE = Decimal("0.00000001")  # 8 fractional digits for both assets
ZERO = Decimal("0")

class Asset(str, Enum):
    BTC = "BTC"
    USDT = "USDT"

class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

class TradeStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"

class SwapStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

class EntryKind(str, Enum):
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    ESCROW_HOLD = "ESCROW_HOLD"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    SWAP_DEBIT = "SWAP_DEBIT"
    SWAP_CREDIT = "SWAP_CREDIT"

def parse_asset(value) -> Asset:
    """Accept an Asset or a case-insensitive symbol; raise UnknownAsset otherwise."""
    if isinstance(value, Asset):
        return value
    try:
        return Asset(str(value).upper())
    except ValueError:
        raise UnknownAsset(f"Unknown asset symbol: {value}", field="asset",
                           context={"supported": [a.value for a in Asset]})

def to_decimal(value, field: str = "amount") -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a decimal number", field=field)
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    return result

def quantize_asset(value: Decimal) -> Decimal:
    return value.quantize(ASSET_SCALE, rounding=ROUND_HALF_EVEN)

def require_positive(value, field: str = "amount") -> Decimal:
    result = to_decimal(value, field)
    if result <= ZERO:
        raise ValidationError(f"{field} must be positive", field=field, context={field: str(result)})
    return result

@dataclass(frozen=True)
class AdvertisementSnapshot:
    """Advertisement terms frozen at trade-open time.

    The live advertisement may be edited or deleted afterwards; a trade only
    ever reads these values.
    """
    advertisement_id: str
    asset: Asset
    trade_type: TradeType
    rate: Decimal
    min_limit: Decimal
    max_limit: Decimal
    owner_id: str
    currency: Optional[str] = None
    payment_method: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "asset", parse_asset(self.asset))
        trade_type = self.trade_type
        if not isinstance(trade_type, TradeType):
            try:
                trade_type = TradeType(str(trade_type).upper())
            except ValueError:
                raise ValidationError(f"Unknown trade type: {self.trade_type}", field="trade_type")
        object.__setattr__(self, "trade_type", trade_type)
        object.__setattr__(self, "rate", require_positive(self.rate, "rate"))
        min_limit = require_positive(self.min_limit, "min_limit")
        max_limit = require_positive(self.max_limit, "max_limit")
        if min_limit >= max_limit:
            raise ValidationError("Minimum limit must be less than maximum limit", field="min_limit",
                                  context={"min_limit": str(min_limit), "max_limit": str(max_limit)})
        object.__setattr__(self, "min_limit", min_limit)
        object.__setattr__(self, "max_limit", max_limit)
        if not self.owner_id:
            raise ValidationError("Advertisement owner is required", field="owner_id")

    def asset_amount_for(self, fiat_amount: Decimal) -> Decimal:
        """Convert a fiat amount to asset units at the frozen rate."""
        return quantize_asset(fiat_amount / self.rate)

MAX_PAGE_SIZE = 100

def page_window(page: int, limit: int) -> Tuple[int, int]:
    """Translate 1-based page/limit into (offset, limit)."""
    if page < 1:
        raise ValidationError("page must be >= 1", field="page")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
    return (page - 1) * limit, limit
