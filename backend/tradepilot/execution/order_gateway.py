"""
Order Execution Gateway
TradePilot Strategy Execution Engine

Routes strategy decisions to the account's brokerage gateway:
- Pre-trade checks (credentials, circuit breaker, market hours, restrictions)
- Buy/sell submission and position ledger bookkeeping
- Account sync into the capital ledger
- Authentication circuit breaker feed
- Emergency operations (cancel all, close one, close all)

Every order attempt and outcome is written to the audit trail.
"""

import asyncio
from typing import Any, Callable, Dict, Optional

from loguru import logger

from tradepilot.brokers.base import BaseBroker, GatewayError
from tradepilot.brokers.factory import create_broker
from tradepilot.core.config import EngineSettings, get_settings
from tradepilot.core.exceptions import (
    AccountRestricted,
    CircuitOpen,
    CredentialsNotConfigured,
    InsufficientBuyingPower,
    MarketClosed,
    OrderRejected,
    PositionNotFound,
)
from tradepilot.execution.circuit_breaker import AuthCircuitBreaker
from tradepilot.schemas.broker import OrderRequest, OrderResult, OrderSide
from tradepilot.schemas.trading import Decision
from tradepilot.services.audit_trail import AuditEventType, AuditTrail
from tradepilot.services.capital_ledger import BrokerageAccount, CapitalLedger
from tradepilot.services.error_handler import ErrorHandler
from tradepilot.services.position_ledger import ClosedPosition, Position, PositionLedger
from tradepilot.strategies.models import Strategy
from tradepilot.strategies.registry import StrategyRegistry


FAILED_ORDER_STATUSES = {"rejected", "canceled", "cancelled", "expired", "failed"}

CIRCUIT_OPEN_REASON = "authentication circuit breaker open"
PLACEHOLDER_REASON = "credentials not configured"


class OrderGateway:
    """
    Order routing and account sync for every registered account.

    Gateways are created lazily from the account's credentials through
    ``broker_factory`` unless attached explicitly.
    """

    def __init__(
        self,
        capital_ledger: CapitalLedger,
        position_ledger: PositionLedger,
        registry: StrategyRegistry,
        breaker: AuthCircuitBreaker,
        audit: AuditTrail,
        error_handler: Optional[ErrorHandler] = None,
        settings: Optional[EngineSettings] = None,
        broker_factory: Callable[..., BaseBroker] = create_broker,
    ):
        self.capital_ledger = capital_ledger
        self.position_ledger = position_ledger
        self.registry = registry
        self.breaker = breaker
        self.audit = audit
        self.error_handler = error_handler
        self.settings = settings or get_settings().engine
        self._broker_factory = broker_factory
        self._brokers: Dict[str, BaseBroker] = {}

        # Stats
        self._orders_submitted = 0
        self._orders_failed = 0
        self._orders_rejected = 0

    # =========================================================================
    # Gateway lifecycle
    # =========================================================================

    def attach_broker(self, account_id: str, broker: Optional[BaseBroker] = None) -> BaseBroker:
        """Bind a gateway to an account, building one from its credentials if none is given."""
        account = self.capital_ledger.get_account(account_id)
        if broker is None:
            broker = self._broker_factory(account.broker_config())
        self._brokers[account_id] = broker
        logger.info(f"Attached {broker.__class__.__name__} to account {account_id}")
        return broker

    async def detach_broker(self, account_id: str) -> None:
        broker = self._brokers.pop(account_id, None)
        if broker is not None:
            await broker.close()
            logger.info(f"Detached gateway from account {account_id}")

    def get_broker(self, account_id: str) -> BaseBroker:
        broker = self._brokers.get(account_id)
        if broker is None:
            broker = self.attach_broker(account_id)
        return broker

    async def rebuild_broker(self, account_id: str) -> BaseBroker:
        """Replace the account's gateway after a credential change."""
        old = self._brokers.pop(account_id, None)
        if old is not None:
            await old.close()
        self.breaker.reset(account_id)
        return self.attach_broker(account_id)

    async def close(self) -> None:
        for account_id in list(self._brokers):
            await self.detach_broker(account_id)

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.settings.io_timeout_seconds)

    # =========================================================================
    # Checks
    # =========================================================================

    def is_configured(self, account: BrokerageAccount) -> bool:
        return account.has_credentials(self.settings.placeholder_credentials)

    async def is_market_open(self, account_id: str) -> bool:
        broker = self.get_broker(account_id)
        try:
            return await self._call(broker.is_market_open())
        except GatewayError as e:
            await self._on_gateway_error(account_id, e, "market clock")
            raise

    async def get_market_price(self, account_id: str, symbol: str) -> Optional[float]:
        """Current mid price, or None when the venue has no usable quote."""
        broker = self.get_broker(account_id)
        try:
            price = await self._call(broker.get_market_price(symbol))
        except GatewayError as e:
            await self._on_gateway_error(account_id, e, f"quote {symbol}")
            logger.debug(f"No quote for {symbol} on {account_id}: {e}")
            return None
        except asyncio.TimeoutError:
            logger.warning(f"Quote for {symbol} on {account_id} timed out")
            return None
        return price if price and price > 0 else None

    async def pre_trade_check(self, account_id: str) -> BrokerageAccount:
        """
        Verify the account may trade right now.

        Raises:
            CredentialsNotConfigured: missing or placeholder credentials
            CircuitOpen: authentication circuit breaker is open
            MarketClosed: venue reports the market closed
            AccountRestricted: account is trading-blocked
            InsufficientBuyingPower: buying power is not positive
        """
        account = self.capital_ledger.get_account(account_id)

        if not self.is_configured(account):
            raise CredentialsNotConfigured(
                f"Account {account_id} has no usable credentials", account_id
            )
        if self.breaker.is_open(account_id):
            raise CircuitOpen(f"Circuit breaker open for {account_id}", account_id)
        if not await self.is_market_open(account_id):
            raise MarketClosed("Market is closed", account_id)
        if account.trading_blocked:
            raise AccountRestricted(f"Account {account_id} is restricted from trading", account_id)
        if account.buying_power <= 0:
            raise InsufficientBuyingPower(
                f"Account {account_id} has no buying power (${account.buying_power:,.2f})",
                account_id,
            )
        return account

    async def _on_gateway_error(self, account_id: str, error: GatewayError, operation: str) -> None:
        """Feed authentication failures to the circuit breaker."""
        if not error.is_auth_error:
            return

        tripped = self.breaker.record_failure(account_id, str(error))
        if tripped:
            if self.capital_ledger.has_account(account_id):
                self.capital_ledger.mark_disconnected(account_id, CIRCUIT_OPEN_REASON)
            await self.audit.log_event(
                AuditEventType.CIRCUIT_BREAKER_TRIGGERED,
                action="disconnect",
                description=(
                    f"{self.breaker.failures(account_id)} authentication failures "
                    f"during {operation}; account suspended until credentials are updated"
                ),
                account_id=account_id,
                metadata={"last_error": str(error)},
            )

    async def _report(self, error: Exception, component: str, context: Dict[str, Any]) -> None:
        if self.error_handler is not None:
            await self.error_handler.handle_error(error, component, context=context)

    # =========================================================================
    # Orders
    # =========================================================================

    async def _submit(
        self,
        account_id: str,
        order: OrderRequest,
        strategy: Strategy,
    ) -> Optional[OrderResult]:
        """Pre-trade check and submit. Returns None when rejected or failed."""
        try:
            await self.pre_trade_check(account_id)
        except OrderRejected as e:
            self._orders_rejected += 1
            logger.info(f"Order for {order.symbol} ({strategy.name}) not submitted: {e}")
            await self.audit.log_event(
                AuditEventType.ORDER_REJECTED,
                action=order.side.value,
                description=str(e),
                strategy_id=strategy.id,
                account_id=account_id,
                symbol=order.symbol,
                quantity=order.quantity,
                metadata={"reason": e.reason},
            )
            return None
        except (GatewayError, asyncio.TimeoutError) as e:
            self._orders_failed += 1
            logger.warning(f"Pre-trade check failed for {order.symbol} ({strategy.name}): {e!r}")
            await self._report(e, "order_gateway", {"account_id": account_id, "symbol": order.symbol})
            return None

        await self.audit.log_event(
            AuditEventType.ORDER_PLACED,
            action=order.side.value,
            description=f"{order.side.value.upper()} {order.quantity} {order.symbol} for {strategy.name}",
            strategy_id=strategy.id,
            account_id=account_id,
            symbol=order.symbol,
            quantity=order.quantity,
        )

        broker = self.get_broker(account_id)
        try:
            result = await self._call(broker.place_order(order))
        except (GatewayError, asyncio.TimeoutError) as e:
            if isinstance(e, GatewayError):
                await self._on_gateway_error(account_id, e, "order submission")
            await self._order_failed(account_id, order, strategy, str(e) or repr(e))
            await self._report(e, "order_gateway", {"account_id": account_id, "symbol": order.symbol})
            return None

        if result.status.lower() in FAILED_ORDER_STATUSES:
            await self._order_failed(account_id, order, strategy, f"order {result.id} {result.status}")
            return None

        self._orders_submitted += 1
        self.breaker.record_success(account_id)
        await self.audit.log_event(
            AuditEventType.ORDER_FILLED,
            action=order.side.value,
            description=f"Order {result.id} {result.status}",
            strategy_id=strategy.id,
            account_id=account_id,
            symbol=order.symbol,
            order_id=result.id,
            quantity=result.filled_qty or order.quantity,
            price=result.avg_fill_price,
        )
        return result

    async def _order_failed(
        self,
        account_id: str,
        order: OrderRequest,
        strategy: Strategy,
        error: str,
    ) -> None:
        self._orders_failed += 1
        logger.error(f"Order failed: {order.side.value} {order.quantity} {order.symbol} ({strategy.name}): {error}")
        await self.audit.log_event(
            AuditEventType.ORDER_FAILED,
            action=order.side.value,
            description=error,
            strategy_id=strategy.id,
            account_id=account_id,
            symbol=order.symbol,
            quantity=order.quantity,
        )

    async def execute_buy(
        self,
        strategy: Strategy,
        decision: Decision,
        price: float,
        account_id: str,
        open_reason: Optional[str] = None,
    ) -> Optional[Position]:
        """
        Submit a market buy and record the resulting position.

        The position's entry price is the decision-time mid quote ``price``.

        Returns:
            The recorded Position, or None if the order was not placed
        """
        order = OrderRequest(symbol=decision.symbol, quantity=decision.quantity, side=OrderSide.BUY)
        result = await self._submit(account_id, order, strategy)
        if result is None:
            return None

        stop_loss, take_profit = strategy.exit_levels(price)
        position = await self.position_ledger.record_position(
            symbol=decision.symbol,
            qty=decision.quantity,
            entry_price=price,
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            open_reason=open_reason or decision.reasoning,
            account_id=account_id,
            signals=decision.signals_used,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

        await self.audit.log_event(
            AuditEventType.POSITION_OPENED,
            action="open",
            description=position.open_reason,
            strategy_id=strategy.id,
            account_id=account_id,
            symbol=position.symbol,
            order_id=result.id,
            position_id=position.position_id,
            quantity=position.qty,
            price=position.entry_price,
            metadata={"confidence": decision.confidence},
        )
        return position

    async def execute_sell(
        self,
        strategy: Strategy,
        position: Position,
        reason: str,
        account_id: str,
    ) -> Optional[ClosedPosition]:
        """
        Submit a market sell for the full position and close it in the ledger.

        Realized P&L is the position's unrealized P&L at decision time. On
        failure the position stays open.
        """
        order = OrderRequest(symbol=position.symbol, quantity=int(position.qty), side=OrderSide.SELL)
        result = await self._submit(account_id, order, strategy)
        if result is None:
            return None

        try:
            closed = await self.position_ledger.close_position(
                position.position_id,
                strategy.id,
                reason,
                realized_pl=position.unrealized_pl,
            )
        except PositionNotFound:
            logger.warning(f"Position {position.position_id} was closed while its sell was in flight")
            return None

        self.registry.record_realized(strategy.id, closed.realized_pl)
        await self._audit_close(closed, order_id=result.id)
        return closed

    async def close_for_shutdown(
        self,
        strategy: Strategy,
        position: Position,
        reason: str,
    ) -> ClosedPosition:
        """
        Close a position during shutdown.

        The venue sell is best effort and skips pre-trade checks; the ledger
        close always happens so no high-volatility position survives.
        """
        account_id = position.account_id or self.registry.account_for(strategy)
        registered = account_id is not None and self.capital_ledger.has_account(account_id)
        order_id = None

        price = await self.get_market_price(account_id, position.symbol) if registered else None
        if price is not None:
            position = await self.position_ledger.update_position(
                position.position_id, strategy.id, current_price=price
            )

        if registered:
            account = self.capital_ledger.get_account(account_id)
            if self.is_configured(account) and not self.breaker.is_open(account_id):
                order = OrderRequest(symbol=position.symbol, quantity=int(position.qty), side=OrderSide.SELL)
                try:
                    result = await self._call(self.get_broker(account_id).place_order(order))
                    order_id = result.id
                except (GatewayError, asyncio.TimeoutError) as e:
                    if isinstance(e, GatewayError):
                        await self._on_gateway_error(account_id, e, "shutdown close")
                    logger.warning(
                        f"Venue sell for {position.symbol} failed during shutdown, "
                        f"closing in ledger only: {e!r}"
                    )

        closed = await self.position_ledger.close_position(
            position.position_id,
            strategy.id,
            reason,
            realized_pl=position.unrealized_pl,
        )
        self.registry.record_realized(strategy.id, closed.realized_pl)
        await self._audit_close(closed, order_id=order_id)
        return closed

    async def _audit_close(self, closed: ClosedPosition, order_id: Optional[str] = None) -> None:
        await self.audit.log_event(
            AuditEventType.POSITION_CLOSED,
            action="close",
            description=closed.close_reason,
            strategy_id=closed.strategy_id,
            account_id=closed.account_id,
            symbol=closed.symbol,
            order_id=order_id,
            position_id=closed.position_id,
            quantity=closed.qty,
            price=closed.current_price,
            pnl=closed.realized_pl,
        )

    # =========================================================================
    # Account sync
    # =========================================================================

    async def sync_account(self, account_id: str) -> bool:
        """
        Verify the connection and refresh the capital ledger.

        Accounts with placeholder credentials are marked disconnected and an
        open circuit breaker suppresses the sync entirely.

        Returns:
            True if the account was refreshed
        """
        account = self.capital_ledger.get_account(account_id)

        if not self.is_configured(account):
            self.capital_ledger.mark_disconnected(account_id, PLACEHOLDER_REASON)
            return False
        if self.breaker.is_open(account_id):
            logger.debug(f"Sync for {account_id} suppressed: circuit breaker open")
            return False

        broker = self.get_broker(account_id)
        try:
            snapshot = await self._call(broker.verify_connection())
            positions = await self._call(broker.get_positions())
        except GatewayError as e:
            await self._on_gateway_error(account_id, e, "account sync")
            if not self.breaker.is_open(account_id):
                self.capital_ledger.mark_disconnected(account_id, str(e))
            await self._report(e, "account_sync", {"account_id": account_id})
            return False
        except asyncio.TimeoutError as e:
            logger.warning(f"Account sync timed out for {account_id}")
            await self._report(e, "account_sync", {"account_id": account_id})
            return False

        self.breaker.record_success(account_id)
        self.capital_ledger.apply_sync(account_id, snapshot, positions)
        logger.debug(
            f"Synced {account_id}: equity ${snapshot.equity:,.2f}, "
            f"buying power ${snapshot.buying_power:,.2f}, {len(positions)} venue positions"
        )
        return True

    # =========================================================================
    # Emergency operations
    # =========================================================================

    async def _emergency(self, account_id: str, action: str, description: str, symbol: Optional[str] = None) -> None:
        logger.critical(f"Emergency action on {account_id}: {description}")
        await self.audit.log_event(
            AuditEventType.EMERGENCY_ACTION,
            action=action,
            description=description,
            account_id=account_id,
            symbol=symbol,
        )

    async def cancel_all_orders(self, account_id: str) -> None:
        """Cancel every open order on the account. Gateway errors propagate."""
        broker = self.get_broker(account_id)
        try:
            await self._call(broker.cancel_all_orders())
        except GatewayError as e:
            await self._on_gateway_error(account_id, e, "cancel all orders")
            raise
        await self._emergency(account_id, "cancel_all_orders", "Cancelled all orders")
        await self.audit.log_event(
            AuditEventType.ORDERS_CANCELLED,
            action="cancel_all",
            description="All open orders cancelled",
            account_id=account_id,
        )

    async def close_position(self, account_id: str, symbol: str) -> int:
        """
        Liquidate ``symbol`` at the venue and close every ledger position on it.

        Returns:
            Number of ledger positions closed
        """
        broker = self.get_broker(account_id)
        try:
            await self._call(broker.close_position(symbol))
        except GatewayError as e:
            await self._on_gateway_error(account_id, e, f"close position {symbol}")
            raise
        await self._emergency(account_id, "close_position", f"Closed position: {symbol}", symbol)
        return await self._close_ledger_positions(
            account_id, "emergency close", lambda p: p.symbol == symbol
        )

    async def close_all_positions(self, account_id: str) -> int:
        """Liquidate everything at the venue and close every ledger position on the account."""
        broker = self.get_broker(account_id)
        try:
            await self._call(broker.close_all_positions())
        except GatewayError as e:
            await self._on_gateway_error(account_id, e, "close all positions")
            raise
        await self._emergency(account_id, "close_all_positions", "Closed all positions")
        return await self._close_ledger_positions(account_id, "emergency close", lambda p: True)

    async def _close_ledger_positions(self, account_id: str, reason: str, match) -> int:
        closed_count = 0
        for position in self.position_ledger.get_all_positions():
            if position.account_id != account_id or not match(position):
                continue
            try:
                closed = await self.position_ledger.close_position(
                    position.position_id, position.strategy_id, reason
                )
            except PositionNotFound:
                continue
            self.registry.record_realized(closed.strategy_id, closed.realized_pl)
            await self._audit_close(closed)
            closed_count += 1
        return closed_count

    def get_stats(self) -> Dict[str, Any]:
        return {
            "accounts": list(self._brokers),
            "orders_submitted": self._orders_submitted,
            "orders_failed": self._orders_failed,
            "orders_rejected": self._orders_rejected,
            "breakers": self.breaker.snapshot(),
        }
