"""
Tests for the Alpaca REST gateway against a mocked transport.
"""

import json

import httpx
import pytest

from tradepilot.brokers.alpaca import AlpacaBroker
from tradepilot.brokers.base import BrokerConfig, GatewayError
from tradepilot.core.config import AlpacaSettings
from tradepilot.schemas.broker import OrderRequest, OrderSide, TradingMode


PAPER_URL = "https://paper-api.example.test"
LIVE_URL = "https://api.example.test"
DATA_URL = "https://data.example.test"


class FakeAlpaca:
    """Routes requests to canned responses and records them."""

    def __init__(self):
        self.requests = []
        self.routes = {}

    def add(self, method, url, status=200, body=None):
        self.routes[(method, url)] = (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = request.url
        key = (request.method, f"{url.scheme}://{url.host}{url.path}")
        if key not in self.routes:
            return httpx.Response(404, text="not found")
        status, body = self.routes[key]
        if isinstance(body, Exception):
            raise body
        if body is None:
            return httpx.Response(status)
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)


@pytest.fixture
def fake():
    return FakeAlpaca()


@pytest.fixture
def settings():
    return AlpacaSettings(paper_url=PAPER_URL, live_url=LIVE_URL, data_url=DATA_URL, data_feed="iex")


def make_broker(fake, settings, mode=TradingMode.PAPER):
    config = BrokerConfig(
        id="alpaca-1",
        name="Alpaca",
        venue="alpaca",
        api_key="key-id",
        api_secret="secret",
        mode=mode,
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake))
    return AlpacaBroker(config, settings=settings, client=client)


@pytest.fixture
def broker(fake, settings):
    return make_broker(fake, settings)


class TestAccount:

    @pytest.mark.asyncio
    async def test_get_account(self, fake, broker):
        fake.add("GET", f"{PAPER_URL}/v2/account", body={
            "equity": "100000.50",
            "buying_power": "200001",
            "cash": "50000",
            "status": "ACTIVE",
            "trading_blocked": False,
        })

        snapshot = await broker.get_account()

        assert snapshot.equity == pytest.approx(100_000.50)
        assert snapshot.buying_power == pytest.approx(200_001)
        assert snapshot.status == "ACTIVE"
        request = fake.requests[0]
        assert request.headers["APCA-API-KEY-ID"] == "key-id"
        assert request.headers["APCA-API-SECRET-KEY"] == "secret"

    @pytest.mark.asyncio
    async def test_live_mode_uses_live_url(self, fake, settings):
        broker = make_broker(fake, settings, mode=TradingMode.LIVE)
        fake.add("GET", f"{LIVE_URL}/v2/clock", body={"is_open": True})
        assert await broker.is_market_open() is True

    @pytest.mark.asyncio
    async def test_positions(self, fake, broker):
        fake.add("GET", f"{PAPER_URL}/v2/positions", body=[
            {"symbol": "AAPL", "qty": "10", "avg_entry_price": "180", "current_price": "185",
             "market_value": "1850", "unrealized_pl": "50"},
        ])

        positions = await broker.get_positions()

        assert len(positions) == 1
        assert positions[0].qty == 10
        assert positions[0].unrealized_pl == 50


class TestErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_auth_errors(self, fake, broker, status):
        fake.add("GET", f"{PAPER_URL}/v2/account", status=status, body='{"message": "forbidden"}')

        with pytest.raises(GatewayError) as exc:
            await broker.get_account()

        assert exc.value.status_code == status
        assert exc.value.is_auth_error

    @pytest.mark.asyncio
    async def test_server_error_is_not_auth(self, fake, broker):
        fake.add("GET", f"{PAPER_URL}/v2/clock", status=503, body="unavailable")

        with pytest.raises(GatewayError) as exc:
            await broker.is_market_open()

        assert exc.value.status_code == 503
        assert not exc.value.is_auth_error

    @pytest.mark.asyncio
    async def test_rate_limit(self, fake, broker):
        fake.add("GET", f"{PAPER_URL}/v2/clock", status=429, body="slow down")
        with pytest.raises(GatewayError) as exc:
            await broker.is_market_open()
        assert exc.value.status_code == 429

    @pytest.mark.asyncio
    async def test_transport_error(self, fake, broker):
        fake.add("GET", f"{PAPER_URL}/v2/account", body=httpx.ConnectError("refused"))

        with pytest.raises(GatewayError) as exc:
            await broker.get_account()

        assert exc.value.status_code is None
        assert broker.get_stats()["errors"] == 1


class TestMarketData:

    @pytest.mark.asyncio
    async def test_mid_price(self, fake, broker):
        fake.add("GET", f"{DATA_URL}/v2/stocks/AAPL/quotes/latest", body={
            "symbol": "AAPL",
            "quote": {"bp": 99.5, "ap": 100.5},
        })

        assert await broker.get_market_price("AAPL") == pytest.approx(100.0)
        assert fake.requests[0].url.params["feed"] == "iex"

    @pytest.mark.asyncio
    async def test_one_sided_quote(self, fake, broker):
        fake.add("GET", f"{DATA_URL}/v2/stocks/MSFT/quotes/latest", body={"quote": {"bp": 0, "ap": 201.0}})
        assert await broker.get_market_price("MSFT") == pytest.approx(201.0)


class TestOrders:

    @pytest.mark.asyncio
    async def test_place_market_order(self, fake, broker):
        fake.add("POST", f"{PAPER_URL}/v2/orders", body={
            "id": "order-1",
            "status": "accepted",
            "symbol": "AAPL",
            "qty": "10",
            "filled_qty": "0",
            "filled_avg_price": None,
        })

        result = await broker.place_order(OrderRequest(symbol="AAPL", quantity=10, side=OrderSide.BUY))

        assert result.id == "order-1"
        assert result.status == "accepted"
        assert result.avg_fill_price is None
        payload = json.loads(fake.requests[0].content)
        assert payload == {
            "symbol": "AAPL",
            "qty": "10",
            "side": "buy",
            "type": "market",
            "time_in_force": "day",
        }

    @pytest.mark.asyncio
    async def test_liquidation_endpoints(self, fake, broker):
        fake.add("DELETE", f"{PAPER_URL}/v2/orders", status=207, body=[])
        fake.add("DELETE", f"{PAPER_URL}/v2/positions/AAPL", status=200, body={"id": "order-2"})
        fake.add("DELETE", f"{PAPER_URL}/v2/positions", status=204)

        await broker.cancel_all_orders()
        await broker.close_position("AAPL")
        await broker.close_all_positions()

        assert [r.method for r in fake.requests] == ["DELETE", "DELETE", "DELETE"]

    @pytest.mark.asyncio
    async def test_close_keeps_injected_client(self, fake, broker):
        client = broker._client
        await broker.close()
        assert not client.is_closed
        await client.aclose()
