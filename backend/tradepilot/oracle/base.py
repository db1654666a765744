from abc import ABC, abstractmethod
import json

from tradepilot.schemas.trading import DecisionRequest


class DecisionOracle(ABC):
    """
    External decision maker.

    Implementations receive the full decision context and return raw text
    that is expected to contain one JSON object with the keys ``action``,
    ``quantity``, ``reasoning``, ``confidence`` and ``signals_used``.
    """

    @abstractmethod
    async def complete(self, request: DecisionRequest) -> str:
        pass


class HoldOracle(DecisionOracle):
    """Always answers hold. Used when no oracle is configured."""

    def __init__(self, reasoning: str = "Decision oracle not configured"):
        self.reasoning = reasoning

    async def complete(self, request: DecisionRequest) -> str:
        return json.dumps({
            "action": "hold",
            "quantity": 0,
            "reasoning": self.reasoning,
            "confidence": 0,
            "signals_used": [],
        })
