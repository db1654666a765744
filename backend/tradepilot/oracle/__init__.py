"""
Decision Oracle
TradePilot Strategy Execution Engine

The engine only depends on DecisionOracle.complete() returning text that
decodes into a decision. AnthropicOracle is the reference implementation.
"""

from tradepilot.oracle.base import DecisionOracle, HoldOracle
from tradepilot.oracle.parser import DecodeResult, decode_decision, fail_safe_hold


__all__ = [
    "DecisionOracle",
    "HoldOracle",
    "DecodeResult",
    "decode_decision",
    "fail_safe_hold",
]
