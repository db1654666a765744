"""
Brokerage Gateways
TradePilot Strategy Execution Engine

Venue implementations behind a single BaseBroker interface:
    - AlpacaBroker: REST gateway for Alpaca trading and market data
    - PaperBroker: In-memory simulation for paper trading and tests

Gateways are selected by venue type through BrokerFactory.
"""

from tradepilot.brokers.base import BaseBroker, BrokerConfig, GatewayError
from tradepilot.brokers.alpaca import AlpacaBroker
from tradepilot.brokers.paper import PaperBroker
from tradepilot.brokers.factory import BrokerFactory, create_broker


__all__ = [
    "BaseBroker",
    "BrokerConfig",
    "GatewayError",
    "AlpacaBroker",
    "PaperBroker",
    "BrokerFactory",
    "create_broker",
]
