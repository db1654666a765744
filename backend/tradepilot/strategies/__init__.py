from tradepilot.strategies.models import ALLOCATION_PRESETS, AllocationMode, Strategy, default_strategies
from tradepilot.strategies.registry import StrategyRegistry


__all__ = [
    "ALLOCATION_PRESETS",
    "AllocationMode",
    "Strategy",
    "default_strategies",
    "StrategyRegistry",
]
