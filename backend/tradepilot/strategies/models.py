from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from tradepilot.schemas.trading import StrategyCategory


class AllocationMode(str, Enum):
    """Preset allocation splits applied positionally to the strategy list."""
    THREE_WAY = "three-way"
    TWO_WAY = "two-way"
    SINGLE = "single"


# Leading allocations per mode; strategies past the preset get 0
ALLOCATION_PRESETS: Dict[AllocationMode, List[float]] = {
    AllocationMode.THREE_WAY: [25.0, 25.0, 50.0],
    AllocationMode.TWO_WAY: [60.0, 40.0, 0.0],
    AllocationMode.SINGLE: [100.0],
}


@dataclass
class Strategy:
    """A trading strategy with its allocation, risk parameters and P/L."""
    id: str
    name: str
    category: StrategyCategory
    allocation: float = 0.0
    stop_loss: float = 0.0        # percent
    take_profit: float = 0.0      # percent
    max_position_size: float = 0.0
    account_id: Optional[str] = None
    min_profit: Optional[float] = None
    ai_optimization: bool = True

    running: bool = False
    last_run: Optional[datetime] = None

    # Realized statistics
    pl_today: float = 0.0
    pl_total: float = 0.0
    wins: int = 0
    losses: int = 0
    pl_day: date = field(default_factory=lambda: datetime.now(timezone.utc).date())

    @property
    def is_profit_taking(self) -> bool:
        return self.category == StrategyCategory.PROFIT_TAKING

    @property
    def is_high_volatility(self) -> bool:
        return self.category == StrategyCategory.HIGH_VOLATILITY

    @property
    def win_rate(self) -> float:
        trades = self.wins + self.losses
        return (self.wins / trades * 100) if trades else 0.0

    def exit_levels(self, entry_price: float) -> Tuple[Optional[float], Optional[float]]:
        """Stop-loss and take-profit prices for an entry at ``entry_price``."""
        stop_loss = entry_price * (1 - self.stop_loss / 100) if self.stop_loss else None
        take_profit = entry_price * (1 + self.take_profit / 100) if self.take_profit else None
        return stop_loss, take_profit

    def record_realized(self, realized_pl: float) -> None:
        """Fold a realized close into the P/L statistics."""
        today = datetime.now(timezone.utc).date()
        if today != self.pl_day:
            self.pl_today = 0.0
            self.pl_day = today

        self.pl_today += realized_pl
        self.pl_total += realized_pl
        if realized_pl > 0:
            self.wins += 1
        else:
            self.losses += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category.value,
            "allocation": self.allocation,
            "running": self.running,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "max_position_size": self.max_position_size,
            "account_id": self.account_id,
            "min_profit": self.min_profit,
            "ai_optimization": self.ai_optimization,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "pl_today": self.pl_today,
            "pl_total": self.pl_total,
            "win_rate": self.win_rate,
        }


def default_strategies(account_id: Optional[str] = None, min_profit: float = 5.0) -> List[Strategy]:
    """The fixed strategy set created at registry init."""
    return [
        Strategy(
            id="high-vol-1",
            name="High Volatility Strategy 1",
            category=StrategyCategory.HIGH_VOLATILITY,
            allocation=25.0,
            stop_loss=2.0,
            take_profit=5.0,
            max_position_size=1000,
            account_id=account_id,
        ),
        Strategy(
            id="high-vol-2",
            name="High Volatility Strategy 2",
            category=StrategyCategory.HIGH_VOLATILITY,
            allocation=25.0,
            stop_loss=2.5,
            take_profit=6.0,
            max_position_size=800,
            account_id=account_id,
        ),
        Strategy(
            id="medium-vol-1",
            name="Medium Volatility Strategy",
            category=StrategyCategory.MEDIUM_VOLATILITY,
            allocation=50.0,
            stop_loss=1.0,
            take_profit=3.0,
            max_position_size=1500,
            account_id=account_id,
        ),
        Strategy(
            id="profit-taking-5",
            name=f"${min_profit:g} Profit Taking Strategy",
            category=StrategyCategory.PROFIT_TAKING,
            allocation=0.0,
            stop_loss=0.5,
            take_profit=5.0,
            max_position_size=500,
            account_id=account_id,
            min_profit=min_profit,
            ai_optimization=False,
        ),
    ]
