"""
Saved-state persistence.

One JSON file holds two kinds of state with different lifetimes:
- Control state (allocation mode, per-strategy allocations, locked capital
  per account), rewritten after every control-surface change and reapplied
  on start
- Positions saved by a graceful shutdown, consumed by the next restore

Credentials are never written.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError


STATE_VERSION = 2


class SavedPosition(BaseModel):
    """A position preserved across a shutdown."""
    position_id: str
    symbol: str
    qty: float
    entry_price: float
    current_price: float
    strategy_id: str
    strategy_name: str
    account_id: Optional[str] = None
    open_reason: str = ""
    signals: List[str] = Field(default_factory=list)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None


class SavedAccount(BaseModel):
    account_id: str
    locked_trading_capital: float


class SavedStrategy(BaseModel):
    strategy_id: str
    allocation: float


class SavedState(BaseModel):
    version: int = STATE_VERSION
    saved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    allocation_mode: Optional[str] = None
    accounts: List[SavedAccount] = Field(default_factory=list)
    strategies: List[SavedStrategy] = Field(default_factory=list)
    positions: List[SavedPosition] = Field(default_factory=list)

    @property
    def has_controls(self) -> bool:
        return bool(self.allocation_mode or self.accounts or self.strategies)


class StateStore:
    """
    JSON file store for SavedState.

    A missing or unreadable file loads as an empty state. Writes go to a
    temporary file that replaces the target.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def save(self, state: SavedState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
        logger.debug(
            f"Saved state to {self.path}: {len(state.positions)} positions, "
            f"{len(state.accounts)} accounts, {len(state.strategies)} strategies"
        )

    def load(self) -> SavedState:
        if not self.path.exists():
            return SavedState()
        try:
            return SavedState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error(f"Failed to load saved state from {self.path}: {e}")
            return SavedState()

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info(f"Cleared saved state at {self.path}")

    # Partial updates

    def save_positions(self, positions: List[SavedPosition]) -> None:
        """Replace the saved positions, keeping the control state."""
        state = self.load()
        state.positions = list(positions)
        state.saved_at = datetime.now(timezone.utc)
        self.save(state)
        logger.info(f"Saved {len(positions)} positions to {self.path}")

    def clear_positions(self) -> None:
        """Drop the saved positions. The file goes away when nothing else is left."""
        state = self.load()
        if not state.has_controls:
            self.clear()
            return
        if state.positions:
            state.positions = []
            state.saved_at = datetime.now(timezone.utc)
            self.save(state)

    def save_controls(
        self,
        allocation_mode: str,
        accounts: List[SavedAccount],
        strategies: List[SavedStrategy],
    ) -> None:
        """Replace the control state, keeping any saved positions."""
        state = self.load()
        state.allocation_mode = allocation_mode
        state.accounts = list(accounts)
        state.strategies = list(strategies)
        state.saved_at = datetime.now(timezone.utc)
        self.save(state)
