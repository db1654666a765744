"""
Execution Layer
TradePilot Strategy Execution Engine

    - AuthCircuitBreaker: per-account authentication failure breaker
    - OrderGateway: pre-trade checks, order routing, account sync, emergency ops
    - DecisionPipeline: per-tick oracle decisions and profit-taking rules
"""

from tradepilot.execution.circuit_breaker import AuthCircuitBreaker
from tradepilot.execution.order_gateway import OrderGateway
from tradepilot.execution.pipeline import DecisionPipeline, SkipReason, TickResult


__all__ = [
    "AuthCircuitBreaker",
    "OrderGateway",
    "DecisionPipeline",
    "SkipReason",
    "TickResult",
]
