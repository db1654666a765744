"""
TradePilot Strategy Execution Engine

Runs a fixed set of trading strategies against brokerage accounts, asking a
decision oracle for buy/sell/hold decisions and keeping per-strategy
position ownership and per-account capital bookkeeping.
"""

__version__ = "1.0.0"
