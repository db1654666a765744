import math
from typing import Dict, List, Optional, Union

from loguru import logger

from tradepilot.core.exceptions import InvalidAllocation, StrategyNotFound
from tradepilot.strategies.models import (
    ALLOCATION_PRESETS,
    AllocationMode,
    Strategy,
    default_strategies,
)


class StrategyRegistry:
    """
    Owns the fixed strategy set, their allocations and P/L statistics.

    Strategies without an explicit account trade on ``default_account_id``.
    """

    def __init__(self, strategies: Optional[List[Strategy]] = None):
        # Insertion order is the positional order used by allocation modes
        self._strategies: Dict[str, Strategy] = {
            s.id: s for s in (strategies if strategies is not None else default_strategies())
        }
        self.allocation_mode = AllocationMode.THREE_WAY
        self.default_account_id: Optional[str] = None

        logger.info(f"Initialized {len(self._strategies)} strategies (mode: {self.allocation_mode.value})")

    def get(self, strategy_id: str) -> Strategy:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise StrategyNotFound(f"Strategy {strategy_id} not found")
        return strategy

    def list_strategies(self) -> List[Strategy]:
        return list(self._strategies.values())

    def running_strategies(self) -> List[Strategy]:
        return [s for s in self._strategies.values() if s.running]

    def account_for(self, strategy: Strategy) -> Optional[str]:
        return strategy.account_id or self.default_account_id

    def has_running_strategies(self, account_id: str) -> bool:
        return any(
            s.running and self.account_for(s) == account_id
            for s in self._strategies.values()
        )

    # Allocation

    def set_allocation_mode(self, mode: Union[AllocationMode, str]) -> List[Strategy]:
        """Rewrite the leading strategies' allocations from a preset."""
        try:
            mode = AllocationMode(mode)
        except ValueError:
            raise InvalidAllocation(f"Unknown allocation mode: {mode}")

        logger.info(f"Changing allocation mode to {mode.value}")
        self.allocation_mode = mode

        preset = ALLOCATION_PRESETS[mode]
        strategies = self.list_strategies()
        for index, strategy in enumerate(strategies):
            if index < len(preset):
                strategy.allocation = preset[index]
            elif mode == AllocationMode.SINGLE:
                strategy.allocation = 0.0

        return strategies

    def set_allocation(self, strategy_id: str, allocation: float) -> Strategy:
        if isinstance(allocation, bool) or not isinstance(allocation, (int, float)) or not math.isfinite(allocation):
            raise InvalidAllocation(f"Invalid allocation: {allocation!r}")
        if not 0 <= allocation <= 100:
            raise InvalidAllocation(f"Allocation must be between 0 and 100: {allocation}")

        strategy = self.get(strategy_id)
        strategy.allocation = float(allocation)
        logger.info(f"Updated allocation for {strategy.name}: {allocation}%")
        return strategy

    # Statistics

    def record_realized(self, strategy_id: str, realized_pl: float) -> None:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            logger.warning(f"Realized P/L for unknown strategy {strategy_id} ignored")
            return
        strategy.record_realized(realized_pl)

    def snapshot(self) -> List[dict]:
        return [s.to_dict() for s in self._strategies.values()]
