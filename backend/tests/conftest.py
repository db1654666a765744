"""
Test configuration and shared fixtures for TradePilot tests.
"""

import json
from typing import Dict, List, Optional, Union
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from tradepilot.brokers.base import BrokerConfig
from tradepilot.brokers.paper import PaperBroker
from tradepilot.core.config import EngineSettings
from tradepilot.engine import TradingEngine
from tradepilot.oracle.base import DecisionOracle
from tradepilot.schemas.trading import DecisionRequest
from tradepilot.services.state_store import StateStore


HOLD = json.dumps({"action": "hold", "quantity": 0, "reasoning": "No edge", "confidence": 50})


def oracle_answer(action: str, quantity: int = 0, confidence: float = 80, reasoning: str = "test") -> str:
    """Oracle text in the expected JSON shape, wrapped in some prose."""
    body = json.dumps({
        "action": action,
        "quantity": quantity,
        "reasoning": reasoning,
        "confidence": confidence,
        "signals_used": ["momentum"],
    })
    return f"Here is my analysis.\n{body}\nGood luck."


class ScriptedOracle(DecisionOracle):
    """Decision oracle answering from a per-symbol script."""

    def __init__(self, responses: Optional[Dict[str, Union[str, Exception]]] = None, default: str = HOLD):
        self.responses = dict(responses or {})
        self.default = default
        self.requests: List[DecisionRequest] = []

    async def complete(self, request: DecisionRequest) -> str:
        self.requests.append(request)
        response = self.responses.get(request.symbol, self.default)
        if isinstance(response, Exception):
            raise response
        return response


def paper_config(account_id: str = "paper-1", api_key: str = "test-key", api_secret: str = "test-secret") -> BrokerConfig:
    return BrokerConfig(
        id=account_id,
        name="Paper Account",
        venue="paper",
        api_key=api_key,
        api_secret=api_secret,
    )


# =============================================================================
# Settings
# =============================================================================

@pytest.fixture
def engine_settings(tmp_path):
    """Fast engine settings with a small universe."""
    return EngineSettings(
        tick_interval_seconds=0.01,
        sync_interval_seconds=0.05,
        io_timeout_seconds=1.0,
        watchlist=["AAPL", "MSFT"],
        profit_taking_watchlist=["AAPL", "MSFT", "SPY"],
        saved_state_path=str(tmp_path / "saved_state.json"),
    )


# =============================================================================
# Event Bus Mock
# =============================================================================

@pytest.fixture
def mock_event_bus():
    """Create a mock event bus for testing."""
    bus = AsyncMock()
    bus.publish = AsyncMock()
    bus.subscribe = AsyncMock()
    bus.unsubscribe = AsyncMock()
    return bus


# =============================================================================
# Broker and Oracle
# =============================================================================

@pytest.fixture
def paper_broker():
    """Paper gateway with $100k cash and a few quoted symbols."""
    broker = PaperBroker(paper_config(), starting_cash=100_000.0)
    broker.set_price("AAPL", 100.0)
    broker.set_price("MSFT", 200.0)
    broker.set_price("SPY", 400.0)
    return broker


@pytest.fixture
def oracle():
    return ScriptedOracle()


# =============================================================================
# Engine
# =============================================================================

@pytest_asyncio.fixture
async def engine(engine_settings, oracle, paper_broker):
    """Engine with one synced paper account and no locked capital."""
    engine = TradingEngine(
        engine_settings=engine_settings,
        oracle=oracle,
        state_store=StateStore(engine_settings.saved_state_path),
    )
    await engine.register_account(paper_broker.config, broker=paper_broker)
    yield engine
    await engine.close()


@pytest_asyncio.fixture
async def funded_engine(engine):
    """Engine whose paper account has $45,000 locked."""
    await engine.set_locked_capital("paper-1", 45_000)
    return engine
