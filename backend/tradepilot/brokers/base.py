from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from tradepilot.schemas.broker import (
    AccountSnapshot,
    BrokerPosition,
    OrderRequest,
    OrderResult,
    Quote,
    TradingMode,
)


class GatewayError(Exception):
    """Raised when a brokerage call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        self.message = message
        super().__init__(f"Gateway error ({status_code}): {message}" if status_code else message)

    @property
    def is_auth_error(self) -> bool:
        if self.status_code in (401, 403):
            return True
        text = self.message.lower()
        return "401" in text or "unauthorized" in text


@dataclass
class BrokerConfig:
    """Connection settings for one brokerage account."""
    id: str
    name: str
    venue: str
    api_key: str = ""
    api_secret: str = ""
    mode: TradingMode = TradingMode.PAPER
    extra: Dict[str, Any] = field(default_factory=dict)


class BaseBroker(ABC):
    """
    Abstract Base Class for all Brokerage Gateway implementations.
    Ensures a unified interface for the execution engine.
    """

    def __init__(self, config: BrokerConfig):
        self.config = config

    @property
    def is_ready(self) -> bool:
        """True when at least one credential is present."""
        return bool(self.config.api_key or self.config.api_secret)

    @abstractmethod
    async def get_account(self) -> AccountSnapshot:
        """Fetch account equity, buying power and status."""
        pass

    @abstractmethod
    async def get_positions(self) -> List[BrokerPosition]:
        """Fetch current open positions."""
        pass

    @abstractmethod
    async def get_quote(self, symbol: str) -> Quote:
        """Get latest bid/ask quote."""
        pass

    async def get_market_price(self, symbol: str) -> float:
        """Mid price of the latest quote."""
        quote = await self.get_quote(symbol)
        return quote.mid

    @abstractmethod
    async def place_order(self, order: OrderRequest) -> OrderResult:
        """Submit a new order."""
        pass

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        """Cancel a pending order."""
        pass

    @abstractmethod
    async def cancel_all_orders(self) -> None:
        pass

    @abstractmethod
    async def close_position(self, symbol: str) -> None:
        pass

    @abstractmethod
    async def close_all_positions(self) -> None:
        pass

    @abstractmethod
    async def is_market_open(self) -> bool:
        pass

    async def verify_connection(self) -> AccountSnapshot:
        """
        Verify credentials by fetching the account.

        Raises:
            GatewayError: If the venue rejects the request
        """
        return await self.get_account()

    async def close(self) -> None:
        """Release any network resources."""
        return None
