"""
Position Ledger

Strategy-owned position lifecycle:
- Record positions opened by a strategy, one record per (strategy, buy)
- Refresh prices and unrealized P&L each tick
- Close positions into an immutable history
- Enforce ownership: only the owning strategy may modify or close

Several strategies may hold the same symbol; each holding is a separate
record with its own owner. Mutations are serialized per position id and
reads return copies.
"""

import asyncio
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from loguru import logger

from tradepilot.core.exceptions import OwnershipViolation, PositionNotFound


PROFIT_TAKING_MARKERS = ("scalp", "profit-taking")


@dataclass
class Position:
    """An open position owned by exactly one strategy."""
    position_id: str
    symbol: str
    qty: float
    entry_price: float
    current_price: float
    strategy_id: str
    strategy_name: str
    open_reason: str
    account_id: Optional[str] = None
    open_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    signals: List[str] = field(default_factory=list)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    unrealized_pl: float = 0.0

    def refresh(self, price: float) -> None:
        self.current_price = price
        self.unrealized_pl = (price - self.entry_price) * self.qty

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "qty": self.qty,
            "entry_price": self.entry_price,
            "current_price": self.current_price,
            "strategy_id": self.strategy_id,
            "strategy_name": self.strategy_name,
            "open_reason": self.open_reason,
            "account_id": self.account_id,
            "open_timestamp": self.open_timestamp.isoformat(),
            "signals": list(self.signals),
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "unrealized_pl": self.unrealized_pl,
        }


@dataclass(frozen=True)
class ClosedPosition:
    """Immutable record of a closed position."""
    position_id: str
    symbol: str
    qty: float
    entry_price: float
    current_price: float
    strategy_id: str
    strategy_name: str
    open_reason: str
    account_id: Optional[str]
    open_timestamp: datetime
    signals: tuple
    stop_loss: Optional[float]
    take_profit: Optional[float]
    unrealized_pl: float
    close_timestamp: datetime
    close_reason: str
    realized_pl: float

    @property
    def is_profit_taking(self) -> bool:
        reason = self.close_reason.lower()
        return any(marker in reason for marker in PROFIT_TAKING_MARKERS)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "symbol": self.symbol,
            "qty": self.qty,
            "entry_price": self.entry_price,
            "exit_price": self.current_price,
            "strategy_id": self.strategy_id,
            "strategy_name": self.strategy_name,
            "open_reason": self.open_reason,
            "account_id": self.account_id,
            "open_timestamp": self.open_timestamp.isoformat(),
            "close_timestamp": self.close_timestamp.isoformat(),
            "close_reason": self.close_reason,
            "realized_pl": self.realized_pl,
            "signals": list(self.signals),
        }


class PositionLedger:
    """
    Open positions keyed by position id, plus closed-position history.
    """

    def __init__(self, max_history: int = 10_000):
        self._positions: Dict[str, Position] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._history: List[ClosedPosition] = []
        self._max_history = max_history

        # Profit-taking tally
        self._profit_taking_profit = 0.0
        self._profit_taking_trades = 0

    def _lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._locks.get(position_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[position_id] = lock
        return lock

    def _owned(self, position_id: str, actor_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFound(f"Position not found: {position_id}")
        if position.strategy_id != actor_id:
            raise OwnershipViolation(position_id, position.strategy_id, actor_id)
        return position

    async def record_position(
        self,
        symbol: str,
        qty: float,
        entry_price: float,
        strategy_id: str,
        strategy_name: str,
        open_reason: str,
        account_id: Optional[str] = None,
        signals: Optional[List[str]] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> Position:
        """Record a newly opened position and return a copy of it."""
        position = Position(
            position_id=f"POS-{uuid.uuid4().hex[:12]}",
            symbol=symbol,
            qty=qty,
            entry_price=entry_price,
            current_price=entry_price,
            strategy_id=strategy_id,
            strategy_name=strategy_name,
            open_reason=open_reason,
            account_id=account_id,
            signals=list(signals or []),
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        async with self._lock_for(position.position_id):
            self._positions[position.position_id] = position

        logger.info(
            f"Recorded position {position.position_id}: {qty} {symbol} @ ${entry_price:.2f} "
            f"for {strategy_name}"
        )
        return replace(position)

    async def update_position(
        self,
        position_id: str,
        actor_id: str,
        current_price: Optional[float] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> Position:
        """
        Update a position on behalf of ``actor_id``.

        Raises:
            PositionNotFound: position is not open
            OwnershipViolation: actor does not own the position
        """
        async with self._lock_for(position_id):
            position = self._owned(position_id, actor_id)
            if current_price is not None:
                position.refresh(current_price)
            if stop_loss is not None:
                position.stop_loss = stop_loss
            if take_profit is not None:
                position.take_profit = take_profit
            return replace(position)

    async def close_position(
        self,
        position_id: str,
        actor_id: str,
        close_reason: str,
        realized_pl: Optional[float] = None,
    ) -> ClosedPosition:
        """
        Close a position on behalf of ``actor_id`` and append it to history.

        ``realized_pl`` defaults to the position's current unrealized P&L.

        Raises:
            PositionNotFound: position is not open
            OwnershipViolation: actor does not own the position
        """
        async with self._lock_for(position_id):
            position = self._owned(position_id, actor_id)
            closed = ClosedPosition(
                position_id=position.position_id,
                symbol=position.symbol,
                qty=position.qty,
                entry_price=position.entry_price,
                current_price=position.current_price,
                strategy_id=position.strategy_id,
                strategy_name=position.strategy_name,
                open_reason=position.open_reason,
                account_id=position.account_id,
                open_timestamp=position.open_timestamp,
                signals=tuple(position.signals),
                stop_loss=position.stop_loss,
                take_profit=position.take_profit,
                unrealized_pl=position.unrealized_pl,
                close_timestamp=datetime.now(timezone.utc),
                close_reason=close_reason,
                realized_pl=position.unrealized_pl if realized_pl is None else realized_pl,
            )
            del self._positions[position_id]

        self._locks.pop(position_id, None)
        self._history.append(closed)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        logger.info(
            f"Closed position {position_id} ({closed.symbol}, {closed.strategy_name}): "
            f"{close_reason}, P&L ${closed.realized_pl:+.2f}"
        )

        if closed.is_profit_taking:
            self._profit_taking_profit += closed.realized_pl
            self._profit_taking_trades += 1
            logger.info(
                f"Profit-taking profit updated: ${closed.realized_pl:+.2f}, "
                f"total ${self._profit_taking_profit:.2f}"
            )

        return closed

    # Queries

    def get_position(self, position_id: str) -> Optional[Position]:
        position = self._positions.get(position_id)
        return replace(position) if position else None

    def get_all_positions(self) -> List[Position]:
        return [replace(p) for p in self._positions.values()]

    def get_positions_by_strategy(self, strategy_id: str) -> List[Position]:
        return [replace(p) for p in self._positions.values() if p.strategy_id == strategy_id]

    def get_position_context(self, symbol: str) -> List[Position]:
        """All open positions on ``symbol`` across strategies."""
        return [replace(p) for p in self._positions.values() if p.symbol == symbol]

    def has_position(self, symbol: str, strategy_id: str) -> bool:
        return any(
            p.symbol == symbol and p.strategy_id == strategy_id
            for p in self._positions.values()
        )

    def get_history(
        self,
        strategy_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[ClosedPosition]:
        history = self._history
        if strategy_id:
            history = [p for p in history if p.strategy_id == strategy_id]
        return history[-limit:]

    @property
    def profit_taking_profit(self) -> float:
        return self._profit_taking_profit

    @property
    def profit_taking_trade_count(self) -> int:
        return self._profit_taking_trades

    def get_summary(self) -> Dict[str, Any]:
        positions = list(self._positions.values())
        return {
            "open_positions": len(positions),
            "unrealized_pl": sum(p.unrealized_pl for p in positions),
            "closed_positions": len(self._history),
            "realized_pl": sum(p.realized_pl for p in self._history),
            "profit_taking_profit": self._profit_taking_profit,
            "profit_taking_trades": self._profit_taking_trades,
        }
