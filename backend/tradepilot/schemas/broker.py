from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class OrderSide(str, Enum):
    """Order sides."""
    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Order types."""
    MARKET = "market"
    LIMIT = "limit"


class TimeInForce(str, Enum):
    DAY = "day"
    GTC = "gtc"


class TradingMode(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class OrderRequest(BaseModel):
    symbol: str
    quantity: int = Field(gt=0)
    side: OrderSide
    order_type: OrderType = OrderType.MARKET
    time_in_force: TimeInForce = TimeInForce.DAY
    limit_price: Optional[float] = None  # Only for LIMIT orders
    client_order_id: Optional[str] = None


class OrderResult(BaseModel):
    id: str
    status: str
    symbol: Optional[str] = None
    side: Optional[OrderSide] = None
    qty: Optional[float] = None
    filled_qty: Optional[float] = None
    avg_fill_price: Optional[float] = None
    submitted_at: Optional[datetime] = None


class AccountSnapshot(BaseModel):
    equity: float = 0.0
    buying_power: float = 0.0
    cash: float = 0.0
    status: str = "UNKNOWN"
    trading_blocked: bool = False


class BrokerPosition(BaseModel):
    symbol: str
    qty: float = 0.0
    avg_entry_price: float = 0.0
    current_price: float = 0.0
    market_value: float = 0.0
    unrealized_pl: float = 0.0


class Quote(BaseModel):
    symbol: str
    bid: float = 0.0
    ask: float = 0.0
    timestamp: Optional[datetime] = None

    @property
    def mid(self) -> float:
        """Mid price, falling back to whichever side is quoted."""
        if self.bid > 0 and self.ask > 0:
            return (self.ask + self.bid) / 2
        return self.ask or self.bid
