"""
Tests for the Order Gateway: pre-trade checks, orders, sync and the
authentication circuit breaker.
"""

import pytest

from tradepilot.brokers.base import GatewayError
from tradepilot.execution.order_gateway import CIRCUIT_OPEN_REASON, PLACEHOLDER_REASON
from tradepilot.schemas.trading import Decision, DecisionAction
from tradepilot.services.audit_trail import AuditEventType

from conftest import paper_config


def buy_decision(symbol="AAPL", quantity=10, confidence=80.0, reasoning="Breakout above resistance"):
    return Decision(
        action=DecisionAction.BUY,
        symbol=symbol,
        quantity=quantity,
        confidence=confidence,
        reasoning=reasoning,
        signals_used=["momentum"],
    )


def audited(engine, event_type):
    return engine.audit.get_recent_events(event_type=event_type)


async def buy(engine, strategy_id="high-vol-1", symbol="AAPL", quantity=10, price=100.0):
    strategy = engine.registry.get(strategy_id)
    return await engine.gateway.execute_buy(strategy, buy_decision(symbol, quantity), price, "paper-1")


class TestExecuteBuy:
    """Tests for buy submission."""

    @pytest.mark.asyncio
    async def test_buy_records_position(self, funded_engine, paper_broker):
        position = await buy(funded_engine)

        assert position is not None
        assert position.qty == 10
        assert position.entry_price == 100.0
        assert position.stop_loss == pytest.approx(98.0)
        assert position.take_profit == pytest.approx(105.0)
        assert position.open_reason == "Breakout above resistance"
        assert position.strategy_id == "high-vol-1"
        assert paper_broker.positions["AAPL"].qty == 10

        assert len(audited(funded_engine, AuditEventType.ORDER_PLACED)) == 1
        assert len(audited(funded_engine, AuditEventType.ORDER_FILLED)) == 1
        opened = audited(funded_engine, AuditEventType.POSITION_OPENED)
        assert opened[0].position_id == position.position_id

    @pytest.mark.asyncio
    async def test_market_closed_rejects(self, funded_engine, paper_broker):
        paper_broker.market_open = False

        assert await buy(funded_engine) is None

        rejected = audited(funded_engine, AuditEventType.ORDER_REJECTED)
        assert rejected[0].metadata["reason"] == "market_closed"
        assert funded_engine.position_ledger.get_all_positions() == []
        assert paper_broker.positions == {}

    @pytest.mark.asyncio
    async def test_restricted_account_rejects(self, funded_engine, paper_broker):
        paper_broker.trading_blocked = True
        await funded_engine.gateway.sync_account("paper-1")

        assert await buy(funded_engine) is None
        assert audited(funded_engine, AuditEventType.ORDER_REJECTED)[0].metadata["reason"] == "account_restricted"

    @pytest.mark.asyncio
    async def test_no_buying_power_rejects(self, funded_engine, paper_broker):
        paper_broker.cash = 0.0
        await funded_engine.gateway.sync_account("paper-1")

        assert await buy(funded_engine) is None
        assert (
            audited(funded_engine, AuditEventType.ORDER_REJECTED)[0].metadata["reason"]
            == "insufficient_buying_power"
        )

    @pytest.mark.asyncio
    async def test_placeholder_credentials_reject(self, engine, paper_broker):
        await engine.register_account(
            paper_config("paper-2", api_key="your-api-key", api_secret="your-api-secret"),
            broker=paper_broker,
        )
        strategy = engine.registry.get("high-vol-1")

        position = await engine.gateway.execute_buy(strategy, buy_decision(), 100.0, "paper-2")

        assert position is None
        assert (
            audited(engine, AuditEventType.ORDER_REJECTED)[0].metadata["reason"]
            == "credentials_not_configured"
        )

    @pytest.mark.asyncio
    async def test_venue_failure_audited(self, funded_engine):
        # No quote for this symbol, so the paper venue refuses the order
        assert await buy(funded_engine, symbol="ZZZZ") is None

        failed = audited(funded_engine, AuditEventType.ORDER_FAILED)
        assert len(failed) == 1
        assert failed[0].symbol == "ZZZZ"
        assert funded_engine.gateway.get_stats()["orders_failed"] == 1


class TestExecuteSell:
    """Tests for sell submission."""

    @pytest.mark.asyncio
    async def test_sell_closes_and_records_realized(self, funded_engine, paper_broker):
        position = await buy(funded_engine)
        paper_broker.set_price("AAPL", 110.0)
        position = await funded_engine.position_ledger.update_position(
            position.position_id, "high-vol-1", current_price=110.0
        )
        strategy = funded_engine.registry.get("high-vol-1")

        closed = await funded_engine.gateway.execute_sell(strategy, position, "Take profit", "paper-1")

        assert closed.realized_pl == pytest.approx(100.0)
        assert closed.close_reason == "Take profit"
        assert strategy.pl_total == pytest.approx(100.0)
        assert strategy.wins == 1
        assert "AAPL" not in paper_broker.positions
        assert audited(funded_engine, AuditEventType.POSITION_CLOSED)[0].pnl == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_failed_sell_leaves_position_open(self, funded_engine, paper_broker):
        position = await buy(funded_engine)
        paper_broker.fail_with = GatewayError("service unavailable", status_code=503)
        strategy = funded_engine.registry.get("high-vol-1")

        closed = await funded_engine.gateway.execute_sell(strategy, position, "Exit", "paper-1")

        assert closed is None
        assert funded_engine.position_ledger.get_position(position.position_id) is not None
        assert strategy.pl_total == 0.0


class TestMarketPrice:
    """Tests for quote lookups."""

    @pytest.mark.asyncio
    async def test_mid_price(self, engine):
        assert await engine.gateway.get_market_price("paper-1", "AAPL") == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_missing_quote_is_none(self, engine):
        assert await engine.gateway.get_market_price("paper-1", "NOPE") is None


class TestAccountSync:
    """Tests for account sync."""

    @pytest.mark.asyncio
    async def test_sync_refreshes_balances(self, engine, paper_broker):
        paper_broker.cash = 120_000.0
        assert await engine.gateway.sync_account("paper-1") is True

        account = engine.capital_ledger.get_account("paper-1")
        assert account.connected is True
        assert account.equity == pytest.approx(120_000.0)

    @pytest.mark.asyncio
    async def test_placeholder_credentials_never_connect(self, engine, paper_broker):
        result = await engine.register_account(
            paper_config("paper-2", api_key="your-api-key", api_secret="your-api-secret"),
            broker=paper_broker,
        )

        account = engine.capital_ledger.get_account("paper-2")
        assert account.connected is False
        assert account.disconnect_reason == PLACEHOLDER_REASON
        assert "not connected" in result.message

    @pytest.mark.asyncio
    async def test_non_auth_error_disconnects_without_tripping(self, engine, paper_broker):
        paper_broker.fail_with = GatewayError("internal error", status_code=500)

        assert await engine.gateway.sync_account("paper-1") is False

        account = engine.capital_ledger.get_account("paper-1")
        assert account.connected is False
        assert "internal error" in account.disconnect_reason
        assert engine.breaker.failures("paper-1") == 0


class TestAuthCircuitBreaker:
    """Repeated authentication failures suspend an account."""

    @pytest.mark.asyncio
    async def test_three_auth_failures_trip_breaker(self, engine, paper_broker):
        paper_broker.fail_with = GatewayError("unauthorized", status_code=401)

        for _ in range(3):
            assert await engine.gateway.sync_account("paper-1") is False

        assert engine.breaker.is_open("paper-1")
        account = engine.capital_ledger.get_account("paper-1")
        assert account.connected is False
        assert account.disconnect_reason == CIRCUIT_OPEN_REASON
        assert len(audited(engine, AuditEventType.CIRCUIT_BREAKER_TRIGGERED)) == 1

    @pytest.mark.asyncio
    async def test_open_breaker_suppresses_sync_and_orders(self, funded_engine, paper_broker):
        paper_broker.fail_with = GatewayError("unauthorized", status_code=401)
        for _ in range(3):
            await funded_engine.gateway.sync_account("paper-1")

        # Further syncs never reach the venue
        assert await funded_engine.gateway.sync_account("paper-1") is False
        assert funded_engine.breaker.failures("paper-1") == 3

        paper_broker.fail_with = None
        assert await buy(funded_engine) is None
        assert audited(funded_engine, AuditEventType.ORDER_REJECTED)[-1].metadata["reason"] == "circuit_open"

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, engine, paper_broker):
        paper_broker.fail_with = GatewayError("unauthorized", status_code=401)
        await engine.gateway.sync_account("paper-1")
        await engine.gateway.sync_account("paper-1")
        paper_broker.fail_with = None

        assert await engine.gateway.sync_account("paper-1") is True
        assert engine.breaker.failures("paper-1") == 0

    @pytest.mark.asyncio
    async def test_credential_update_resets_breaker(self, engine, paper_broker):
        paper_broker.fail_with = GatewayError("unauthorized", status_code=401)
        for _ in range(3):
            await engine.gateway.sync_account("paper-1")
        assert engine.breaker.is_open("paper-1")

        result = await engine.update_credentials("paper-1", "new-key", "new-secret")

        assert result.success is True
        assert not engine.breaker.is_open("paper-1")
        assert engine.capital_ledger.get_account("paper-1").connected is True
        assert engine.gateway.get_broker("paper-1") is not paper_broker


class TestEmergencyOperations:
    """Tests for venue-level emergency operations."""

    @pytest.mark.asyncio
    async def test_close_position_closes_every_owner(self, funded_engine, paper_broker):
        await buy(funded_engine, "high-vol-1")
        await buy(funded_engine, "medium-vol-1")
        await buy(funded_engine, "high-vol-2", symbol="MSFT", quantity=5, price=200.0)

        closed = await funded_engine.gateway.close_position("paper-1", "AAPL")

        assert closed == 2
        assert "AAPL" not in paper_broker.positions
        remaining = funded_engine.position_ledger.get_all_positions()
        assert [p.symbol for p in remaining] == ["MSFT"]
        assert {p.close_reason for p in funded_engine.position_ledger.get_history()} == {"emergency close"}
        assert audited(funded_engine, AuditEventType.EMERGENCY_ACTION)[0].symbol == "AAPL"

    @pytest.mark.asyncio
    async def test_close_all_positions(self, funded_engine, paper_broker):
        await buy(funded_engine, "high-vol-1")
        await buy(funded_engine, "high-vol-2", symbol="MSFT", quantity=5, price=200.0)

        assert await funded_engine.gateway.close_all_positions("paper-1") == 2
        assert paper_broker.positions == {}
        assert funded_engine.position_ledger.get_all_positions() == []

    @pytest.mark.asyncio
    async def test_cancel_all_orders_audited(self, engine):
        await engine.gateway.cancel_all_orders("paper-1")
        assert len(audited(engine, AuditEventType.ORDERS_CANCELLED)) == 1

    @pytest.mark.asyncio
    async def test_venue_errors_propagate(self, engine, paper_broker):
        paper_broker.fail_with = GatewayError("service unavailable", status_code=503)
        with pytest.raises(GatewayError):
            await engine.gateway.close_all_positions("paper-1")


class TestShutdownClose:
    """Tests for shutdown closes."""

    @pytest.mark.asyncio
    async def test_ledger_close_survives_venue_failure(self, funded_engine, paper_broker):
        position = await buy(funded_engine)
        paper_broker.fail_with = GatewayError("service unavailable", status_code=503)
        strategy = funded_engine.registry.get("high-vol-1")

        closed = await funded_engine.gateway.close_for_shutdown(strategy, position, "graceful shutdown")

        assert closed.close_reason == "graceful shutdown"
        assert funded_engine.position_ledger.get_all_positions() == []
        assert strategy.losses + strategy.wins == 1
