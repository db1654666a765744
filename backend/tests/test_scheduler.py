"""
Tests for the strategy scheduler.
"""

import asyncio

import pytest

from tradepilot.brokers.base import GatewayError
from tradepilot.brokers.paper import PaperBroker
from tradepilot.core.exceptions import StrategyNotFound, ZeroCapitalNotAllowed
from tradepilot.engine import TradingEngine
from tradepilot.services.audit_trail import AuditEventType
from tradepilot.services.state_store import StateStore

from conftest import ScriptedOracle, paper_config


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class GatedOracle(ScriptedOracle):
    """Holds every answer until released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def complete(self, request):
        self.requests.append(request)
        await self.release.wait()
        return self.default


class TestStartStop:
    """Tests for the per-strategy tick loop."""

    @pytest.mark.asyncio
    async def test_start_auto_locks_unfunded_account(self, engine):
        assert await engine.scheduler.start("high-vol-1") is True

        account = engine.capital_ledger.get_account("paper-1")
        # max(equity 100k, buying power 100k * 0.5) * 0.45
        assert account.locked_trading_capital == pytest.approx(45_000)
        assert account.reserve_capital == pytest.approx(55_000)
        assert engine.registry.get("high-vol-1").running is True
        assert engine.scheduler.is_running("high-vol-1")

        locked = engine.audit.get_recent_events(event_type=AuditEventType.CAPITAL_LOCKED)
        assert locked[-1].action == "auto_lock"
        assert len(engine.audit.get_recent_events(event_type=AuditEventType.STRATEGY_STARTED)) == 1

        await engine.scheduler.stop("high-vol-1", wait=True)

    @pytest.mark.asyncio
    async def test_start_refused_when_sync_fails(self, engine_settings, oracle):
        broker = PaperBroker(paper_config(), starting_cash=100_000.0)
        broker.fail_with = GatewayError("service unavailable", status_code=503)
        engine = TradingEngine(
            engine_settings=engine_settings,
            oracle=oracle,
            state_store=StateStore(engine_settings.saved_state_path),
        )
        await engine.register_account(broker.config, broker=broker)

        with pytest.raises(ZeroCapitalNotAllowed):
            await engine.scheduler.start("high-vol-1")

        assert engine.capital_ledger.get_account("paper-1").locked_trading_capital == 0
        assert engine.registry.get("high-vol-1").running is False
        assert not engine.scheduler.is_running("high-vol-1")
        assert engine.audit.get_recent_events(event_type=AuditEventType.STRATEGY_STARTED) == []

        assert await engine.scheduler.start_all() == []
        assert engine.registry.running_strategies() == []
        await engine.close()

    @pytest.mark.asyncio
    async def test_start_keeps_existing_lock(self, funded_engine):
        await funded_engine.set_locked_capital("paper-1", 20_000)
        await funded_engine.scheduler.start("high-vol-1")

        assert funded_engine.capital_ledger.get_account("paper-1").locked_trading_capital == 20_000
        await funded_engine.scheduler.stop("high-vol-1", wait=True)

    @pytest.mark.asyncio
    async def test_start_twice(self, funded_engine):
        assert await funded_engine.scheduler.start("high-vol-1") is True
        assert await funded_engine.scheduler.start("high-vol-1") is False
        await funded_engine.scheduler.stop("high-vol-1", wait=True)

    @pytest.mark.asyncio
    async def test_unknown_strategy(self, engine):
        with pytest.raises(StrategyNotFound):
            await engine.scheduler.start("nope")

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, engine):
        assert await engine.scheduler.stop("high-vol-1") is False

    @pytest.mark.asyncio
    async def test_ticks_repeat_until_stopped(self, funded_engine, oracle):
        await funded_engine.scheduler.start("high-vol-1")
        await wait_for(lambda: funded_engine.scheduler.get_stats()["ticks"]["high-vol-1"] >= 3)

        assert await funded_engine.scheduler.stop("high-vol-1", wait=True) is True
        count = len(oracle.requests)
        await asyncio.sleep(0.05)

        assert len(oracle.requests) == count
        assert funded_engine.registry.get("high-vol-1").running is False
        assert not funded_engine.scheduler.is_running("high-vol-1")

    @pytest.mark.asyncio
    async def test_in_flight_tick_completes_on_stop(self, funded_engine):
        oracle = GatedOracle()
        funded_engine.pipeline.oracle = oracle

        await funded_engine.scheduler.start("high-vol-1")
        await wait_for(lambda: len(oracle.requests) == 1)

        stop = asyncio.create_task(funded_engine.scheduler.stop("high-vol-1", wait=True))
        await asyncio.sleep(0.02)
        assert not stop.done()

        oracle.release.set()
        assert await stop is True

        # The tick that was running finished evaluating its whole watchlist
        assert [r.symbol for r in oracle.requests] == ["AAPL", "MSFT"]
        assert len(funded_engine.pipeline.recent_decisions()) == 2

    @pytest.mark.asyncio
    async def test_zero_capital_rejected_while_running(self, funded_engine):
        await funded_engine.scheduler.start("medium-vol-1")

        with pytest.raises(ZeroCapitalNotAllowed):
            await funded_engine.set_locked_capital("paper-1", 0)

        await funded_engine.scheduler.stop("medium-vol-1", wait=True)
        result = await funded_engine.set_locked_capital("paper-1", 0)
        assert result.success is True

    @pytest.mark.asyncio
    async def test_start_all_and_stop_all(self, funded_engine):
        started = await funded_engine.scheduler.start_all()
        assert started == ["high-vol-1", "high-vol-2", "medium-vol-1", "profit-taking-5"]

        stopped = await funded_engine.scheduler.stop_all(wait=True)
        assert stopped == started
        assert funded_engine.registry.running_strategies() == []


class TestAccountSync:
    """Tests for the account sync loop."""

    @pytest.mark.asyncio
    async def test_sync_loop_refreshes_equity(self, engine, paper_broker):
        engine.scheduler.start_sync()
        paper_broker.cash = 150_000.0

        await wait_for(lambda: engine.capital_ledger.get_account("paper-1").equity == 150_000.0)
        assert engine.scheduler.get_stats()["sync_active"] is True

        await engine.scheduler.stop_sync()
        assert engine.scheduler.get_stats()["sync_active"] is False

    @pytest.mark.asyncio
    async def test_sync_all(self, engine, paper_broker):
        assert await engine.scheduler.sync_all() == {"paper-1": True}
