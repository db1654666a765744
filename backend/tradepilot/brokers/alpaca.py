"""
Alpaca Brokerage Gateway
TradePilot Strategy Execution Engine

REST gateway for Alpaca trading and market data APIs:
- Account, positions and clock from the trading API
- Latest quotes from the market data API (IEX feed)
- Order submission and cancellation
- Position liquidation
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from tradepilot.brokers.base import BaseBroker, BrokerConfig, GatewayError
from tradepilot.core.config import AlpacaSettings, get_settings
from tradepilot.schemas.broker import (
    AccountSnapshot,
    BrokerPosition,
    OrderRequest,
    OrderResult,
    Quote,
    TradingMode,
)


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


class AlpacaBroker(BaseBroker):
    """
    Alpaca REST gateway.

    Every non-2xx response raises GatewayError carrying the HTTP status, so
    callers can tell authentication failures apart from transient ones.
    """

    def __init__(
        self,
        config: BrokerConfig,
        settings: Optional[AlpacaSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config)
        self._settings = settings or get_settings().alpaca
        self.base_url = (
            self._settings.live_url if config.mode == TradingMode.LIVE
            else self._settings.paper_url
        )
        self.data_url = self._settings.data_url
        self._client = client
        self._owns_client = client is None

        # Stats
        self._request_count = 0
        self._error_count = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._settings.request_timeout,
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    def _headers(self) -> Dict[str, str]:
        return {
            "APCA-API-KEY-ID": self.config.api_key,
            "APCA-API-SECRET-KEY": self.config.api_secret,
            "Accept": "application/json",
        }

    async def close(self) -> None:
        """Close the HTTP client if this gateway created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Make an authenticated API request.

        Returns:
            Decoded JSON body, or None for empty responses.

        Raises:
            GatewayError: On transport failure or non-2xx status
        """
        self._request_count += 1
        try:
            response = await self._get_client().request(
                method=method,
                url=url,
                headers=self._headers(),
                params=params,
                json=json_data,
            )
        except httpx.HTTPError as e:
            self._error_count += 1
            raise GatewayError(f"Alpaca request failed: {e}") from e

        if response.status_code in (401, 403):
            self._error_count += 1
            logger.error(f"Alpaca rejected credentials for {self.config.name} ({response.status_code})")
            raise GatewayError(response.text or "unauthorized", status_code=response.status_code)

        if response.status_code == 429:
            self._error_count += 1
            logger.warning("Alpaca rate limit hit")
            raise GatewayError("rate limited", status_code=429)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._error_count += 1
            logger.error(f"HTTP error: {e.response.status_code} - {e.response.text}")
            raise GatewayError(e.response.text, status_code=e.response.status_code) from e

        if not response.content:
            return None
        return response.json()

    # =========================================================================
    # Account
    # =========================================================================

    async def get_account(self) -> AccountSnapshot:
        data = await self._request("GET", f"{self.base_url}/v2/account")
        return AccountSnapshot(
            equity=float(data.get("equity") or 0),
            buying_power=float(data.get("buying_power") or 0),
            cash=float(data.get("cash") or 0),
            status=data.get("status", "UNKNOWN"),
            trading_blocked=bool(data.get("trading_blocked", False)),
        )

    async def get_positions(self) -> List[BrokerPosition]:
        data = await self._request("GET", f"{self.base_url}/v2/positions") or []
        return [
            BrokerPosition(
                symbol=p["symbol"],
                qty=float(p.get("qty") or 0),
                avg_entry_price=float(p.get("avg_entry_price") or 0),
                current_price=float(p.get("current_price") or 0),
                market_value=float(p.get("market_value") or 0),
                unrealized_pl=float(p.get("unrealized_pl") or 0),
            )
            for p in data
        ]

    async def is_market_open(self) -> bool:
        clock = await self._request("GET", f"{self.base_url}/v2/clock")
        return bool(clock.get("is_open", False))

    # =========================================================================
    # Market Data
    # =========================================================================

    async def get_quote(self, symbol: str) -> Quote:
        data = await self._request(
            "GET",
            f"{self.data_url}/v2/stocks/{symbol}/quotes/latest",
            params={"feed": self._settings.data_feed},
        )
        quote = (data or {}).get("quote") or {}
        return Quote(
            symbol=symbol,
            bid=float(quote.get("bp") or 0),
            ask=float(quote.get("ap") or 0),
            timestamp=datetime.now(timezone.utc),
        )

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_order(self, order: OrderRequest) -> OrderResult:
        payload = {
            "symbol": order.symbol,
            "qty": str(order.quantity),
            "side": order.side.value,
            "type": order.order_type.value,
            "time_in_force": order.time_in_force.value,
        }
        if order.limit_price is not None:
            payload["limit_price"] = str(order.limit_price)
        if order.client_order_id:
            payload["client_order_id"] = order.client_order_id

        result = await self._request("POST", f"{self.base_url}/v2/orders", json_data=payload)
        logger.info(f"Alpaca order {result.get('id')}: {order.side.value} {order.quantity} {order.symbol} -> {result.get('status')}")

        return OrderResult(
            id=result["id"],
            status=result.get("status", "unknown"),
            symbol=result.get("symbol", order.symbol),
            side=order.side,
            qty=_to_float(result.get("qty")),
            filled_qty=_to_float(result.get("filled_qty")),
            avg_fill_price=_to_float(result.get("filled_avg_price")),
        )

    async def cancel_order(self, order_id: str) -> None:
        await self._request("DELETE", f"{self.base_url}/v2/orders/{order_id}")

    async def cancel_all_orders(self) -> None:
        await self._request("DELETE", f"{self.base_url}/v2/orders")

    async def close_position(self, symbol: str) -> None:
        await self._request("DELETE", f"{self.base_url}/v2/positions/{symbol}")

    async def close_all_positions(self) -> None:
        await self._request("DELETE", f"{self.base_url}/v2/positions")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": self._request_count,
            "errors": self._error_count,
            "base_url": self.base_url,
        }
