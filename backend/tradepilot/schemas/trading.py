"""
Pydantic Schemas - Trading
TradePilot Strategy Execution Engine

Schemas for:
- External signals
- Decision oracle requests and responses
- Decisions
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DecisionAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class StrategyCategory(str, Enum):
    HIGH_VOLATILITY = "high-volatility"
    MEDIUM_VOLATILITY = "medium-volatility"
    PROFIT_TAKING = "profit-taking"


# =============================================================================
# Signals
# =============================================================================

class Signal(BaseModel):
    """A directional hint from an external data source."""
    symbol: str
    signal: str  # bullish, bearish, neutral or free text
    strength: float = Field(default=0.0, ge=0, le=100)
    source: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# Oracle Contract
# =============================================================================

class PositionSummary(BaseModel):
    """Position context handed to the oracle."""
    strategy_id: str
    strategy_name: str
    symbol: str
    qty: float
    entry_price: float
    open_reason: str
    unrealized_pl: float = 0.0


class DecisionRequest(BaseModel):
    strategy_id: str
    strategy_name: str
    strategy_type: StrategyCategory
    symbol: str
    current_price: float
    account_balance: float  # the strategy's share of locked capital
    allocation: float  # dollars available to this strategy
    allocation_pct: float = 0.0
    has_position: bool = False
    owned_positions: List[PositionSummary] = Field(default_factory=list)
    all_symbol_positions: List[PositionSummary] = Field(default_factory=list)
    available_signals: List[Signal] = Field(default_factory=list)


class DecisionPayload(BaseModel):
    """Strict shape of the oracle's JSON answer."""

    model_config = ConfigDict(extra="ignore")

    action: DecisionAction
    quantity: int = Field(default=0, ge=0)
    reasoning: str = "No reasoning provided"
    confidence: float = Field(default=0.0, ge=0, le=100)
    signals_used: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def hold_has_no_quantity(self) -> "DecisionPayload":
        if self.action == DecisionAction.HOLD:
            self.quantity = 0
        return self


class Decision(BaseModel):
    action: DecisionAction
    symbol: str
    quantity: int = Field(default=0, ge=0)
    reasoning: str = ""
    confidence: float = Field(default=0.0, ge=0, le=100)
    signals_used: List[str] = Field(default_factory=list)
    strategy_id: Optional[str] = None
    price: Optional[float] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_actionable(self) -> bool:
        return self.action != DecisionAction.HOLD and self.quantity > 0

    @classmethod
    def hold(cls, symbol: str, reasoning: str, strategy_id: Optional[str] = None) -> "Decision":
        """Fail-safe decision: hold, zero quantity, zero confidence."""
        return cls(
            action=DecisionAction.HOLD,
            symbol=symbol,
            quantity=0,
            reasoning=reasoning,
            confidence=0.0,
            strategy_id=strategy_id,
        )
