import asyncio
import random
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from tradepilot.brokers.base import BaseBroker, BrokerConfig, GatewayError
from tradepilot.schemas.broker import (
    AccountSnapshot,
    BrokerPosition,
    OrderRequest,
    OrderResult,
    OrderSide,
    Quote,
)


class PaperBroker(BaseBroker):
    """
    In-memory Brokerage Gateway for paper trading and testing.
    Fills market orders immediately at the quoted price, with optional
    slippage and latency.
    """

    def __init__(
        self,
        config: BrokerConfig,
        starting_cash: float = 100_000.0,
        spread: float = 0.02,
        slippage_std_dev: float = 0.0,
        latency_ms: int = 0,
    ):
        super().__init__(config)
        self.cash = starting_cash
        self.spread = spread
        self.slippage_std_dev = slippage_std_dev
        self.latency_ms = latency_ms

        self.market_open = True
        self.trading_blocked = False
        self.status = "ACTIVE"
        self.prices: Dict[str, float] = {}
        self.positions: Dict[str, BrokerPosition] = {}
        self.orders: Dict[str, OrderResult] = {}
        self.open_orders: Dict[str, OrderResult] = {}

        # Set to a GatewayError to make every call fail with it
        self.fail_with: Optional[GatewayError] = None

    def set_price(self, symbol: str, price: float) -> None:
        self.prices[symbol] = price
        position = self.positions.get(symbol)
        if position:
            position.current_price = price
            position.market_value = price * position.qty
            position.unrealized_pl = (price - position.avg_entry_price) * position.qty

    async def _simulate(self) -> None:
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000.0)
        if self.fail_with is not None:
            raise self.fail_with

    async def get_account(self) -> AccountSnapshot:
        await self._simulate()
        equity = self.cash + sum(p.market_value for p in self.positions.values())
        return AccountSnapshot(
            equity=equity,
            buying_power=max(self.cash, 0.0),
            cash=self.cash,
            status=self.status,
            trading_blocked=self.trading_blocked,
        )

    async def get_positions(self) -> List[BrokerPosition]:
        await self._simulate()
        return [p.model_copy() for p in self.positions.values()]

    async def get_quote(self, symbol: str) -> Quote:
        await self._simulate()
        if symbol not in self.prices:
            raise GatewayError(f"no quote for {symbol}", status_code=404)
        price = self.prices[symbol]
        half = self.spread / 2
        return Quote(
            symbol=symbol,
            bid=price - half,
            ask=price + half,
            timestamp=datetime.now(timezone.utc),
        )

    async def place_order(self, order: OrderRequest) -> OrderResult:
        await self._simulate()
        if not self.market_open:
            raise GatewayError("market is closed", status_code=422)
        if order.symbol not in self.prices:
            raise GatewayError(f"unknown symbol {order.symbol}", status_code=422)

        fill_price = self.prices[order.symbol]
        if self.slippage_std_dev:
            fill_price += random.gauss(0, self.slippage_std_dev)

        if order.side == OrderSide.BUY:
            cost = fill_price * order.quantity
            if cost > self.cash:
                raise GatewayError("insufficient buying power", status_code=422)
            self.cash -= cost
            self._add_to_position(order.symbol, order.quantity, fill_price)
        else:
            held = self.positions.get(order.symbol)
            if held is None or held.qty < order.quantity:
                raise GatewayError(f"insufficient qty for {order.symbol}", status_code=422)
            self.cash += fill_price * order.quantity
            self._reduce_position(order.symbol, order.quantity)

        result = OrderResult(
            id=str(uuid.uuid4()),
            status="filled",
            symbol=order.symbol,
            side=order.side,
            qty=float(order.quantity),
            filled_qty=float(order.quantity),
            avg_fill_price=fill_price,
            submitted_at=datetime.now(timezone.utc),
        )
        self.orders[result.id] = result
        return result

    def _add_to_position(self, symbol: str, qty: int, price: float) -> None:
        existing = self.positions.get(symbol)
        if existing is None:
            self.positions[symbol] = BrokerPosition(
                symbol=symbol,
                qty=qty,
                avg_entry_price=price,
                current_price=self.prices[symbol],
                market_value=self.prices[symbol] * qty,
            )
            return
        total = existing.qty + qty
        existing.avg_entry_price = (existing.avg_entry_price * existing.qty + price * qty) / total
        existing.qty = total
        self.set_price(symbol, self.prices[symbol])

    def _reduce_position(self, symbol: str, qty: int) -> None:
        existing = self.positions[symbol]
        existing.qty -= qty
        if existing.qty <= 0:
            del self.positions[symbol]
        else:
            self.set_price(symbol, self.prices[symbol])

    async def cancel_order(self, order_id: str) -> None:
        await self._simulate()
        if order_id not in self.open_orders and order_id not in self.orders:
            raise GatewayError(f"order {order_id} not found", status_code=404)
        self.open_orders.pop(order_id, None)

    async def cancel_all_orders(self) -> None:
        await self._simulate()
        self.open_orders.clear()

    async def close_position(self, symbol: str) -> None:
        await self._simulate()
        position = self.positions.pop(symbol, None)
        if position is None:
            raise GatewayError(f"position {symbol} not found", status_code=404)
        self.cash += self.prices.get(symbol, position.current_price) * position.qty

    async def close_all_positions(self) -> None:
        await self._simulate()
        for symbol in list(self.positions):
            position = self.positions.pop(symbol)
            self.cash += self.prices.get(symbol, position.current_price) * position.qty

    async def is_market_open(self) -> bool:
        await self._simulate()
        return self.market_open
