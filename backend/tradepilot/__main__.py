"""
Process entry point: ``python -m tradepilot``.

Registers the Alpaca account from the environment, resumes saved
positions, optionally starts every strategy and shuts down gracefully on
SIGINT/SIGTERM.
"""

import argparse
import asyncio
import signal

from loguru import logger

from tradepilot.brokers.base import BrokerConfig
from tradepilot.core.config import get_settings
from tradepilot.core.logging import setup_logging
from tradepilot.engine import TradingEngine
from tradepilot.oracle.base import DecisionOracle, HoldOracle
from tradepilot.schemas.broker import TradingMode


def build_oracle() -> DecisionOracle:
    settings = get_settings()
    if settings.oracle.is_configured:
        from tradepilot.oracle.anthropic_oracle import AnthropicOracle
        return AnthropicOracle(settings.oracle)
    logger.warning("ORACLE_API_KEY not set - every decision will be HOLD")
    return HoldOracle()


async def run(start_all: bool) -> None:
    settings = get_settings()
    engine = TradingEngine(settings=settings, oracle=build_oracle())

    alpaca = settings.alpaca
    if alpaca.is_configured:
        await engine.register_account(BrokerConfig(
            id="alpaca-1",
            name="Alpaca",
            venue="alpaca",
            api_key=alpaca.api_key,
            api_secret=alpaca.api_secret,
            mode=TradingMode(alpaca.mode),
        ))
    else:
        logger.warning("ALPACA_API_KEY / ALPACA_API_SECRET not set - no account registered")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    logger.info("=" * 60)
    logger.info(f"Starting {settings.PROJECT_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")
    logger.info("=" * 60)

    result = await engine.start()
    logger.info(result.message)
    if start_all:
        result = await engine.start_all()
        logger.info(result.message)

    await stop_event.wait()

    logger.info("Shutdown signal received")
    report = await engine.graceful_shutdown()
    logger.info(f"Shutdown report: {report.to_dict()}")
    await engine.close()


def main() -> None:
    parser = argparse.ArgumentParser(prog="tradepilot", description="TradePilot strategy execution engine")
    parser.add_argument("--start-all", action="store_true", help="start every strategy after startup")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(run(args.start_all))


if __name__ == "__main__":
    main()
