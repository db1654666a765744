"""
Tests for the TradingEngine control surface.
"""

from pathlib import Path

import pytest

from tradepilot.brokers.base import BrokerConfig, GatewayError
from tradepilot.brokers.paper import PaperBroker
from tradepilot.core.exceptions import (
    AccountAlreadyRegistered,
    InvalidAllocation,
    InvalidAmount,
    UnsupportedVenue,
)
from tradepilot.engine import TradingEngine
from tradepilot.schemas.trading import Decision, DecisionAction
from tradepilot.services.audit_trail import AuditEventType
from tradepilot.services.state_store import SavedAccount, SavedState, SavedStrategy, StateStore
from tradepilot.strategies.models import AllocationMode

from conftest import ScriptedOracle, oracle_answer, paper_config


async def open_position(engine, strategy_id, symbol, quantity, price, account_id="paper-1"):
    decision = Decision(action=DecisionAction.BUY, symbol=symbol, quantity=quantity, confidence=90, reasoning="Entry")
    strategy = engine.registry.get(strategy_id)
    return await engine.gateway.execute_buy(strategy, decision, price, account_id)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start(self, engine):
        result = await engine.start()
        assert result.success is True
        assert result.data["synced"] == {"paper-1": True}
        assert result.data["restored"] == {"resumed": [], "dropped": {}}

        again = await engine.start()
        assert again.success is False

    @pytest.mark.asyncio
    async def test_snapshot(self, funded_engine):
        snapshot = funded_engine.snapshot()
        assert snapshot["allocation_mode"] == "three-way"
        assert len(snapshot["strategies"]) == 4
        assert snapshot["accounts"][0]["locked_trading_capital"] == 45_000
        assert snapshot["positions"] == []


class TestStrategyControl:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, funded_engine):
        result = await funded_engine.start_strategy("high-vol-1")
        assert result.success is True
        assert result.data["running"] is True

        assert (await funded_engine.start_strategy("high-vol-1")).success is False

        result = await funded_engine.stop_strategy("high-vol-1")
        assert result.success is True
        assert (await funded_engine.stop_strategy("high-vol-1")).success is False

    @pytest.mark.asyncio
    async def test_allocation_mode(self, engine):
        result = await engine.set_allocation_mode("two-way")
        assert result.data == {
            "high-vol-1": 60.0,
            "high-vol-2": 40.0,
            "medium-vol-1": 0.0,
            "profit-taking-5": 0.0,
        }
        assert len(engine.audit.get_recent_events(event_type=AuditEventType.ALLOCATION_CHANGED)) == 1

    @pytest.mark.asyncio
    async def test_invalid_allocation_propagates(self, engine):
        with pytest.raises(InvalidAllocation):
            await engine.set_strategy_allocation("high-vol-1", 150)
        with pytest.raises(InvalidAllocation):
            await engine.set_allocation_mode("sideways")


class TestCapitalControl:

    @pytest.mark.asyncio
    async def test_warning_is_reported_not_raised(self, engine):
        result = await engine.set_locked_capital("paper-1", 50_000)

        assert result.success is True
        assert "50.0%" in result.message
        assert result.data["reserve"] == 50_000
        warnings = engine.audit.get_recent_events(event_type=AuditEventType.CAPITAL_WARNING)
        assert len(warnings) == 1

    @pytest.mark.asyncio
    async def test_invalid_amount_propagates(self, engine):
        with pytest.raises(InvalidAmount):
            await engine.set_locked_capital("paper-1", -5)

    @pytest.mark.asyncio
    async def test_auto_lock(self, engine):
        result = await engine.auto_lock_capital("paper-1")
        assert result.data["locked"] == pytest.approx(45_000)


class TestAccounts:

    @pytest.mark.asyncio
    async def test_unsupported_venue(self, engine):
        config = BrokerConfig(id="ib-1", name="IB", venue="interactive-brokers", api_key="k", api_secret="s")
        with pytest.raises(UnsupportedVenue):
            await engine.register_account(config)
        assert not engine.capital_ledger.has_account("ib-1")

    @pytest.mark.asyncio
    async def test_first_account_is_default(self, engine):
        assert engine.registry.default_account_id == "paper-1"

        second = PaperBroker(paper_config("paper-2"))
        await engine.register_account(second.config, broker=second)
        assert engine.registry.default_account_id == "paper-1"

    @pytest.mark.asyncio
    async def test_duplicate_account_rejected(self, funded_engine, paper_broker):
        replacement = PaperBroker(paper_config(), starting_cash=5_000.0)

        with pytest.raises(AccountAlreadyRegistered):
            await funded_engine.register_account(replacement.config, broker=replacement)

        account = funded_engine.capital_ledger.get_account("paper-1")
        assert account.locked_trading_capital == 45_000
        assert funded_engine.gateway.get_broker("paper-1") is paper_broker

    @pytest.mark.asyncio
    async def test_deregister_stops_strategies(self, funded_engine):
        await funded_engine.start_strategy("high-vol-1")

        result = await funded_engine.deregister_account("paper-1")

        assert result.data["stopped"] == ["high-vol-1"]
        assert funded_engine.registry.default_account_id is None
        assert funded_engine.registry.get("high-vol-1").running is False

    @pytest.mark.asyncio
    async def test_failed_credential_update_reports_failure(self, engine):
        result = await engine.update_credentials("paper-1", "your-api-key", "your-api-secret")
        assert result.success is False
        assert "not configured" in result.message


class TestEmergency:

    @pytest.mark.asyncio
    async def test_emergency_stop(self, funded_engine, paper_broker):
        await open_position(funded_engine, "high-vol-1", "AAPL", 10, 100.0)
        await open_position(funded_engine, "medium-vol-1", "MSFT", 5, 200.0)
        await funded_engine.start_all()

        result = await funded_engine.emergency_stop()

        assert result.success is True
        assert [s.name for s in result.steps] == [
            "cancel_all_orders",
            "close_all_positions",
            "stop_all_strategies",
        ]
        assert funded_engine.registry.running_strategies() == []
        assert funded_engine.position_ledger.get_all_positions() == []
        assert paper_broker.positions == {}
        emergency = funded_engine.audit.get_recent_events(event_type=AuditEventType.EMERGENCY_ACTION)
        assert emergency[-1].action == "emergency_stop"

    @pytest.mark.asyncio
    async def test_emergency_stop_reports_failed_steps(self, funded_engine, paper_broker):
        await funded_engine.start_all()
        paper_broker.fail_with = GatewayError("service unavailable", status_code=503)

        result = await funded_engine.emergency_stop()

        assert result.success is False
        failed = [s for s in result.steps if not s.success]
        assert [s.name for s in failed] == ["cancel_all_orders", "close_all_positions"]
        assert all("service unavailable" in s.error for s in failed)
        # Strategies are stopped even when the venue is unreachable
        assert result.steps[-1].success is True
        assert funded_engine.registry.running_strategies() == []

    @pytest.mark.asyncio
    async def test_close_position_per_account(self, funded_engine, paper_broker):
        second = PaperBroker(paper_config("paper-2"))
        second.set_price("AAPL", 100.0)
        await funded_engine.register_account(second.config, broker=second)

        await open_position(funded_engine, "high-vol-1", "AAPL", 10, 100.0)
        await open_position(funded_engine, "high-vol-2", "AAPL", 4, 100.0, account_id="paper-2")

        result = await funded_engine.close_position("AAPL", account_id="paper-1")

        assert result.success is True
        assert [s.account_id for s in result.steps] == ["paper-1"]
        assert result.steps[0].detail == "1"
        remaining = funded_engine.position_ledger.get_all_positions()
        assert [p.account_id for p in remaining] == ["paper-2"]

    @pytest.mark.asyncio
    async def test_close_missing_symbol_fails_step(self, funded_engine):
        result = await funded_engine.close_position("TSLA")
        assert result.success is False
        assert result.to_dict()["steps"][0]["error"]

    @pytest.mark.asyncio
    async def test_cancel_all_orders(self, engine):
        result = await engine.cancel_all_orders()
        assert result.success is True
        assert result.to_dict()["action"] == "cancel_all_orders"


def restarted_engine(engine_settings):
    broker = PaperBroker(paper_config(), starting_cash=100_000.0)
    broker.set_price("MSFT", 200.0)
    engine = TradingEngine(
        engine_settings=engine_settings,
        oracle=ScriptedOracle({"MSFT": oracle_answer("buy", 5, 80, "Still strong")}),
        state_store=StateStore(engine_settings.saved_state_path),
    )
    return engine, broker


class TestControlState:
    """Allocation mode, allocations and locked capital survive a restart."""

    @pytest.mark.asyncio
    async def test_controls_restored_after_restart(self, engine, engine_settings):
        await engine.start()
        await engine.set_allocation_mode("two-way")
        await engine.set_strategy_allocation("medium-vol-1", 10)
        await engine.set_locked_capital("paper-1", 30_000)

        text = Path(engine_settings.saved_state_path).read_text(encoding="utf-8")
        assert "test-secret" not in text
        assert "test-key" not in text

        restarted, broker = restarted_engine(engine_settings)
        try:
            await restarted.register_account(broker.config, broker=broker)
            result = await restarted.start()
        finally:
            await restarted.close()

        assert result.data["controls"] == {
            "allocation_mode": "two-way",
            "strategies": ["high-vol-1", "high-vol-2", "medium-vol-1", "profit-taking-5"],
            "accounts": ["paper-1"],
        }
        assert restarted.registry.allocation_mode == AllocationMode.TWO_WAY
        assert [s.allocation for s in restarted.registry.list_strategies()] == [60, 40, 10, 0]
        account = restarted.capital_ledger.get_account("paper-1")
        assert account.locked_trading_capital == 30_000
        assert account.reserve_capital == pytest.approx(70_000)

    @pytest.mark.asyncio
    async def test_strategy_start_persists_auto_lock(self, engine, engine_settings):
        await engine.start()
        await engine.start_strategy("high-vol-1")
        await engine.stop_strategy("high-vol-1")

        state = StateStore(engine_settings.saved_state_path).load()
        assert state.accounts[0].account_id == "paper-1"
        assert state.accounts[0].locked_trading_capital == pytest.approx(45_000)

    @pytest.mark.asyncio
    async def test_changes_before_start_not_persisted(self, funded_engine, engine_settings):
        await funded_engine.set_allocation_mode("single")
        assert not Path(engine_settings.saved_state_path).exists()

    @pytest.mark.asyncio
    async def test_shutdown_keeps_controls_with_positions(self, engine, engine_settings):
        await engine.start()
        await engine.set_locked_capital("paper-1", 40_000)
        await open_position(engine, "medium-vol-1", "MSFT", 5, 200.0)
        await engine.graceful_shutdown()

        state = StateStore(engine_settings.saved_state_path).load()
        assert [p.symbol for p in state.positions] == ["MSFT"]
        assert state.accounts[0].locked_trading_capital == 40_000

        restarted, broker = restarted_engine(engine_settings)
        try:
            await restarted.register_account(broker.config, broker=broker)
            result = await restarted.start()
        finally:
            await restarted.close()

        assert len(result.data["restored"]["resumed"]) == 1
        assert restarted.capital_ledger.get_account("paper-1").locked_trading_capital == 40_000
        state = StateStore(engine_settings.saved_state_path).load()
        assert state.positions == []
        assert state.accounts[0].locked_trading_capital == 40_000

    @pytest.mark.asyncio
    async def test_stale_entries_ignored(self, engine, engine_settings):
        StateStore(engine_settings.saved_state_path).save(SavedState(
            allocation_mode="five-way",
            strategies=[SavedStrategy(strategy_id="retired", allocation=30)],
            accounts=[SavedAccount(account_id="gone-1", locked_trading_capital=10_000)],
        ))

        result = await engine.start()

        assert result.data["controls"] == {"allocation_mode": None, "strategies": [], "accounts": []}
        assert engine.registry.allocation_mode == AllocationMode.THREE_WAY
        assert engine.capital_ledger.get_account("paper-1").locked_trading_capital == 0
