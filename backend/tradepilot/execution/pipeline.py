"""
Decision Pipeline
TradePilot Strategy Execution Engine

One tick of one strategy:
- Skip with a logged reason when the account cannot trade
- Evaluate watch-listed symbols the strategy does not own (entries)
- Refresh and evaluate the strategy's own open positions (exits)
- Ask the decision oracle, decode strictly, fall back to hold
- Hand actionable decisions to the order gateway

Profit-taking strategies exit on a dollar target without consulting the
oracle and only enter on high-confidence buys.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

from tradepilot.brokers.base import GatewayError
from tradepilot.core.exceptions import PositionNotFound
from tradepilot.core.config import EngineSettings, get_settings
from tradepilot.core.events import EventBus, EventType
from tradepilot.execution.circuit_breaker import AuthCircuitBreaker
from tradepilot.execution.order_gateway import OrderGateway
from tradepilot.oracle.base import DecisionOracle
from tradepilot.oracle.parser import decode_decision, fail_safe_hold
from tradepilot.schemas.trading import (
    Decision,
    DecisionAction,
    DecisionRequest,
    PositionSummary,
    Signal,
)
from tradepilot.services.capital_ledger import BrokerageAccount, CapitalLedger
from tradepilot.services.error_handler import ErrorCategory, ErrorHandler
from tradepilot.services.position_ledger import Position, PositionLedger
from tradepilot.services.signals import SignalSourceManager
from tradepilot.strategies.models import Strategy
from tradepilot.strategies.registry import StrategyRegistry


class SkipReason(str, Enum):
    """Why a tick did not evaluate anything. None of these are errors."""
    NO_ACCOUNT = "no_account"
    DISCONNECTED = "disconnected"
    CREDENTIALS = "credentials_not_configured"
    NO_LOCKED_CAPITAL = "no_locked_capital"
    CIRCUIT_OPEN = "circuit_open"
    MARKET_CLOSED = "market_closed"
    MARKET_CLOCK_UNAVAILABLE = "market_clock_unavailable"


@dataclass
class TickResult:
    """Outcome of one strategy tick."""
    strategy_id: str
    skipped: Optional[SkipReason] = None
    decisions: List[Decision] = field(default_factory=list)
    opened: int = 0
    closed: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "skipped": self.skipped.value if self.skipped else None,
            "decisions": len(self.decisions),
            "opened": self.opened,
            "closed": self.closed,
            "errors": self.errors,
        }


def _summary(position: Position) -> PositionSummary:
    return PositionSummary(
        strategy_id=position.strategy_id,
        strategy_name=position.strategy_name,
        symbol=position.symbol,
        qty=position.qty,
        entry_price=position.entry_price,
        open_reason=position.open_reason,
        unrealized_pl=position.unrealized_pl,
    )


class DecisionPipeline:
    """Runs strategy ticks against the oracle, ledgers and order gateway."""

    def __init__(
        self,
        capital_ledger: CapitalLedger,
        position_ledger: PositionLedger,
        registry: StrategyRegistry,
        gateway: OrderGateway,
        oracle: DecisionOracle,
        signals: Optional[SignalSourceManager] = None,
        breaker: Optional[AuthCircuitBreaker] = None,
        settings: Optional[EngineSettings] = None,
        error_handler: Optional[ErrorHandler] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.capital_ledger = capital_ledger
        self.position_ledger = position_ledger
        self.registry = registry
        self.gateway = gateway
        self.oracle = oracle
        self.signals = signals or SignalSourceManager()
        self.breaker = breaker or gateway.breaker
        self.settings = settings or get_settings().engine
        self.error_handler = error_handler
        self.event_bus = event_bus

        self._history: Deque[Decision] = deque(maxlen=self.settings.decision_history_size)

    # =========================================================================
    # Tick
    # =========================================================================

    def skip_reason(self, strategy: Strategy) -> Optional[SkipReason]:
        """Account-level preconditions, checked before any venue call."""
        account_id = self.registry.account_for(strategy)
        if account_id is None or not self.capital_ledger.has_account(account_id):
            return SkipReason.NO_ACCOUNT

        account = self.capital_ledger.get_account(account_id)
        if not self.gateway.is_configured(account):
            return SkipReason.CREDENTIALS
        if self.breaker.is_open(account_id):
            return SkipReason.CIRCUIT_OPEN
        if not account.connected:
            return SkipReason.DISCONNECTED
        if account.locked_trading_capital <= 0:
            return SkipReason.NO_LOCKED_CAPITAL
        return None

    async def run_tick(self, strategy: Strategy) -> TickResult:
        result = TickResult(strategy_id=strategy.id)

        reason = self.skip_reason(strategy)
        if reason is not None:
            logger.info(f"Skipping tick for {strategy.name}: {reason.value}")
            result.skipped = reason
            return result

        account = self.capital_ledger.get_account(self.registry.account_for(strategy))

        try:
            market_open = await self.gateway.is_market_open(account.id)
        except (GatewayError, asyncio.TimeoutError) as e:
            logger.warning(f"Skipping tick for {strategy.name}: market clock unavailable ({e!r})")
            result.skipped = SkipReason.MARKET_CLOCK_UNAVAILABLE
            return result
        if not market_open:
            logger.info(f"Skipping tick for {strategy.name}: market closed")
            result.skipped = SkipReason.MARKET_CLOSED
            return result

        strategy.last_run = datetime.now(timezone.utc)
        logger.debug(f"Running tick for {strategy.name} on {account.id}")

        owned = self.position_ledger.get_positions_by_strategy(strategy.id)
        owned_symbols = {p.symbol for p in owned}
        for symbol in self.watchlist_for(strategy):
            if symbol in owned_symbols:
                continue
            try:
                await self._evaluate_entry(strategy, symbol, account, result)
            except Exception as e:
                result.errors += 1
                logger.error(f"Error evaluating {symbol} for {strategy.name}: {e}")
                await self._report(e, None, strategy, symbol)

        for position in owned:
            try:
                await self._evaluate_position(strategy, position, account, result)
            except PositionNotFound:
                logger.debug(f"Position {position.position_id} closed during tick")
            except Exception as e:
                result.errors += 1
                logger.error(f"Error managing position {position.position_id} for {strategy.name}: {e}")
                await self._report(e, None, strategy, position.symbol)

        return result

    def watchlist_for(self, strategy: Strategy) -> List[str]:
        if strategy.is_profit_taking:
            return list(self.settings.profit_taking_watchlist)
        return list(self.settings.watchlist)

    # =========================================================================
    # Entries and exits
    # =========================================================================

    async def _evaluate_entry(
        self,
        strategy: Strategy,
        symbol: str,
        account: BrokerageAccount,
        result: TickResult,
    ) -> None:
        price = await self.gateway.get_market_price(account.id, symbol)
        if price is None:
            return

        decision = await self.decide(strategy, symbol, price, account)
        result.decisions.append(decision)

        if decision.action != DecisionAction.BUY or decision.quantity <= 0:
            return

        open_reason = None
        if strategy.is_profit_taking:
            threshold = self.settings.profit_taking_entry_confidence
            if decision.confidence <= threshold:
                logger.debug(
                    f"Profit-taking entry on {symbol} declined: confidence "
                    f"{decision.confidence:.0f} <= {threshold:.0f}"
                )
                return
            open_reason = f"Profit-taking entry: {decision.reasoning}"

        position = await self.gateway.execute_buy(strategy, decision, price, account.id, open_reason)
        if position is not None:
            result.opened += 1

    async def _evaluate_position(
        self,
        strategy: Strategy,
        position: Position,
        account: BrokerageAccount,
        result: TickResult,
    ) -> None:
        price = await self.gateway.get_market_price(account.id, position.symbol)
        position = await self.position_ledger.update_position(
            position.position_id,
            strategy.id,
            current_price=price if price is not None else position.current_price,
        )

        if strategy.is_profit_taking:
            decision = self.profit_target_decision(strategy, position)
            if decision is None:
                return
            await self._record(decision)
            result.decisions.append(decision)
        else:
            decision = await self.decide(strategy, position.symbol, position.current_price, account)
            result.decisions.append(decision)
            if decision.action != DecisionAction.SELL:
                return

        closed = await self.gateway.execute_sell(strategy, position, decision.reasoning, account.id)
        if closed is not None:
            result.closed += 1

    def profit_target_decision(self, strategy: Strategy, position: Position) -> Optional[Decision]:
        """Sell once unrealized P&L reaches the strategy's dollar target."""
        min_profit = strategy.min_profit if strategy.min_profit is not None else self.settings.default_min_profit
        if position.unrealized_pl < min_profit:
            return None

        return Decision(
            action=DecisionAction.SELL,
            symbol=position.symbol,
            quantity=int(position.qty),
            reasoning=(
                f"Profit-taking exit: Profit target reached: "
                f"${position.unrealized_pl:.2f} >= ${min_profit:g}"
            ),
            confidence=100.0,
            strategy_id=strategy.id,
            price=position.current_price,
        )

    # =========================================================================
    # Decisions
    # =========================================================================

    def build_request(
        self,
        strategy: Strategy,
        symbol: str,
        price: float,
        account: BrokerageAccount,
        signals: List[Signal],
    ) -> DecisionRequest:
        owned = self.position_ledger.get_positions_by_strategy(strategy.id)
        allocation = self.capital_ledger.strategy_allocation(account.id, strategy.allocation)
        return DecisionRequest(
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            strategy_type=strategy.category,
            symbol=symbol,
            current_price=price,
            account_balance=allocation,
            allocation=allocation,
            allocation_pct=strategy.allocation,
            has_position=any(p.symbol == symbol for p in owned),
            owned_positions=[_summary(p) for p in owned],
            all_symbol_positions=[_summary(p) for p in self.position_ledger.get_position_context(symbol)],
            available_signals=signals,
        )

    async def _fetch_signals(self, symbol: str) -> List[Signal]:
        try:
            return await asyncio.wait_for(
                self.signals.fetch_signals(symbol),
                timeout=self.settings.io_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Signal fetch for {symbol} timed out, using cached signals")
            return self.signals.get_cached_signals(symbol)

    async def decide(
        self,
        strategy: Strategy,
        symbol: str,
        price: float,
        account: BrokerageAccount,
    ) -> Decision:
        """
        Ask the oracle for a decision on ``symbol``.

        Never raises for oracle problems: timeouts, transport errors and
        undecodable answers all become a fail-safe hold.
        """
        signals = await self._fetch_signals(symbol)
        request = self.build_request(strategy, symbol, price, account, signals)

        try:
            text = await asyncio.wait_for(
                self.oracle.complete(request),
                timeout=self.settings.io_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Oracle timed out for {symbol} ({strategy.name})")
            decision = fail_safe_hold(symbol, "oracle timed out", strategy.id)
        except Exception as e:
            logger.error(f"Oracle call failed for {symbol} ({strategy.name}): {e}")
            await self._report(e, ErrorCategory.ORACLE, strategy, symbol)
            decision = fail_safe_hold(symbol, f"oracle unavailable: {e}", strategy.id)
        else:
            decoded = decode_decision(text, symbol, strategy.id, price)
            if not decoded.ok:
                logger.warning(f"Undecodable oracle answer for {symbol} ({strategy.name}): {decoded.error}")
            decision = decoded.unwrap_or_hold(symbol, strategy.id)

        if decision.price is None:
            decision = decision.model_copy(update={"price": price})

        await self._record(decision)
        logger.info(
            f"{strategy.name} decision on {symbol}: {decision.action.value.upper()} "
            f"{decision.quantity} (confidence {decision.confidence:.0f}%) - {decision.reasoning[:120]}"
        )
        return decision

    async def _record(self, decision: Decision) -> None:
        self._history.append(decision)
        if self.event_bus is not None:
            await self.event_bus.publish(EventType.DECISION_MADE, {
                "strategy_id": decision.strategy_id,
                "symbol": decision.symbol,
                "action": decision.action.value,
                "quantity": decision.quantity,
                "confidence": decision.confidence,
            })

    async def _report(
        self,
        error: Exception,
        category: Optional[ErrorCategory],
        strategy: Strategy,
        symbol: str,
    ) -> None:
        if self.error_handler is not None:
            await self.error_handler.handle_error(
                error,
                "decision_pipeline",
                category=category,
                context={"strategy_id": strategy.id, "symbol": symbol},
            )

    def recent_decisions(self, limit: int = 100) -> List[Decision]:
        return list(self._history)[-limit:]
