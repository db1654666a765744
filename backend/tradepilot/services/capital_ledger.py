"""
Capital Ledger
TradePilot Strategy Execution Engine

Per-account bookkeeping of equity, locked trading capital and reserve
capital. Every mutation recomputes ``reserve = equity - locked``.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from tradepilot.brokers.base import BrokerConfig
from tradepilot.core.config import EngineSettings, get_settings
from tradepilot.core.exceptions import (
    AccountAlreadyRegistered,
    AccountNotFound,
    CapitalRiskWarning,
    InvalidAllocation,
    InvalidAmount,
    ZeroCapitalNotAllowed,
)
from tradepilot.schemas.broker import AccountSnapshot, BrokerPosition, TradingMode


@dataclass
class BrokerageAccount:
    """A registered brokerage account and its capital split."""
    id: str
    name: str
    venue: str
    mode: TradingMode = TradingMode.PAPER
    api_key: str = ""
    api_secret: str = ""

    connected: bool = False
    equity: float = 0.0
    buying_power: float = 0.0
    cash: float = 0.0
    status: str = "UNKNOWN"
    trading_blocked: bool = False

    locked_trading_capital: float = 0.0
    reserve_capital: float = 0.0

    open_positions: int = 0
    unrealized_pl: float = 0.0
    last_sync: Optional[datetime] = None
    disconnect_reason: Optional[str] = None

    def recompute_reserve(self) -> None:
        self.reserve_capital = self.equity - self.locked_trading_capital

    def has_credentials(self, placeholders: List[str]) -> bool:
        """True when both credentials are set and neither is a placeholder."""
        if not self.api_key or not self.api_secret:
            return False
        return self.api_key not in placeholders and self.api_secret not in placeholders

    def broker_config(self) -> BrokerConfig:
        return BrokerConfig(
            id=self.id,
            name=self.name,
            venue=self.venue,
            api_key=self.api_key,
            api_secret=self.api_secret,
            mode=self.mode,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "venue": self.venue,
            "mode": self.mode.value,
            "connected": self.connected,
            "equity": self.equity,
            "buying_power": self.buying_power,
            "cash": self.cash,
            "status": self.status,
            "trading_blocked": self.trading_blocked,
            "locked_trading_capital": self.locked_trading_capital,
            "reserve_capital": self.reserve_capital,
            "open_positions": self.open_positions,
            "unrealized_pl": self.unrealized_pl,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "has_api_key": bool(self.api_key),
            "has_api_secret": bool(self.api_secret),
        }


@dataclass
class CapitalUpdate:
    """Result of a locked-capital change."""
    account_id: str
    previous_locked: float
    locked: float
    reserve: float
    equity: float
    warning: Optional[CapitalRiskWarning] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "previous_locked": self.previous_locked,
            "locked": self.locked,
            "reserve": self.reserve,
            "equity": self.equity,
            "warning": self.warning.message if self.warning else None,
        }


class CapitalLedger:
    """
    Capital bookkeeping for every registered account.

    ``running_check`` reports whether any strategy on an account is
    running; it is wired by the engine once the registry exists.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        running_check: Optional[Callable[[str], bool]] = None,
    ):
        self.settings = settings or get_settings().engine
        self._accounts: Dict[str, BrokerageAccount] = {}
        self._running_check = running_check or (lambda account_id: False)

    def set_running_check(self, running_check: Callable[[str], bool]) -> None:
        self._running_check = running_check

    # =========================================================================
    # Registration
    # =========================================================================

    def register_account(self, config: BrokerConfig) -> BrokerageAccount:
        """
        Register an account. It stays disconnected until the first sync.

        Raises:
            AccountAlreadyRegistered: the id is already registered
        """
        if config.id in self._accounts:
            raise AccountAlreadyRegistered(f"Account already registered: {config.id}")

        account = BrokerageAccount(
            id=config.id,
            name=config.name,
            venue=config.venue.lower(),
            mode=config.mode,
            api_key=config.api_key,
            api_secret=config.api_secret,
        )
        self._accounts[account.id] = account
        logger.info(f"Registered account {account.id} ({account.venue}, {account.mode.value})")
        return account

    def deregister_account(self, account_id: str) -> BrokerageAccount:
        account = self.get_account(account_id)
        del self._accounts[account_id]
        logger.info(f"Removed account {account_id}")
        return account

    def update_credentials(self, account_id: str, api_key: str, api_secret: str) -> BrokerageAccount:
        account = self.get_account(account_id)
        account.api_key = api_key
        account.api_secret = api_secret
        account.disconnect_reason = None
        logger.info(
            f"Credentials updated for {account_id} "
            f"(key: {bool(api_key)}, secret: {bool(api_secret)})"
        )
        return account

    def get_account(self, account_id: str) -> BrokerageAccount:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFound(f"Account not found: {account_id}")
        return account

    def has_account(self, account_id: str) -> bool:
        return account_id in self._accounts

    def accounts(self) -> List[BrokerageAccount]:
        return list(self._accounts.values())

    def is_configured(self, account_id: str) -> bool:
        return self.get_account(account_id).has_credentials(self.settings.placeholder_credentials)

    # =========================================================================
    # Locked capital
    # =========================================================================

    def set_locked_capital(self, account_id: str, amount: float) -> CapitalUpdate:
        """
        Set the locked trading capital for an account.

        Raises:
            InvalidAmount: amount is negative or not a finite number
            ZeroCapitalNotAllowed: amount is 0 while a strategy on the account runs
            AccountNotFound: unknown account id

        Returns:
            CapitalUpdate, carrying a CapitalRiskWarning when the amount exceeds
            the recommended share of equity
        """
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not math.isfinite(amount):
            raise InvalidAmount(f"Invalid capital amount: {amount!r}")
        if amount < 0:
            raise InvalidAmount(f"Capital amount cannot be negative: {amount}")

        account = self.get_account(account_id)

        if amount == 0 and self._running_check(account_id):
            raise ZeroCapitalNotAllowed(
                f"Cannot set locked capital to 0 on {account_id} while strategies are running"
            )

        previous = account.locked_trading_capital
        account.locked_trading_capital = float(amount)
        account.recompute_reserve()

        warning = None
        ceiling = account.equity * self.settings.max_equity_usage
        if amount > ceiling:
            warning = CapitalRiskWarning(account_id, float(amount), account.equity, ceiling)
            logger.warning(f"Capital risk on {account_id}: {warning.message}")

        logger.info(
            f"Locked capital for {account_id}: ${previous:,.2f} -> ${account.locked_trading_capital:,.2f} "
            f"(reserve ${account.reserve_capital:,.2f})"
        )

        return CapitalUpdate(
            account_id=account_id,
            previous_locked=previous,
            locked=account.locked_trading_capital,
            reserve=account.reserve_capital,
            equity=account.equity,
            warning=warning,
        )

    def auto_lock(self, account_id: str) -> CapitalUpdate:
        """Lock ``max(equity, buying_power * 0.5) * 0.45`` of the account."""
        account = self.get_account(account_id)
        base_capital = max(
            account.equity,
            account.buying_power * self.settings.auto_lock_buying_power_factor,
        )
        previous = account.locked_trading_capital
        account.locked_trading_capital = base_capital * self.settings.max_equity_usage
        account.recompute_reserve()

        logger.info(
            f"Auto-locked trading capital for {account_id}: base ${base_capital:,.2f}, "
            f"locked ${account.locked_trading_capital:,.2f}, reserve ${account.reserve_capital:,.2f}"
        )

        return CapitalUpdate(
            account_id=account_id,
            previous_locked=previous,
            locked=account.locked_trading_capital,
            reserve=account.reserve_capital,
            equity=account.equity,
        )

    def strategy_allocation(self, account_id: str, allocation_pct: float) -> float:
        """Dollar allocation for a strategy: ``allocation% x locked``."""
        if not 0 <= allocation_pct <= 100:
            raise InvalidAllocation(f"Allocation must be between 0 and 100: {allocation_pct}")
        account = self.get_account(account_id)
        return account.locked_trading_capital * allocation_pct / 100

    # =========================================================================
    # Sync
    # =========================================================================

    def apply_sync(
        self,
        account_id: str,
        snapshot: AccountSnapshot,
        positions: Optional[List[BrokerPosition]] = None,
    ) -> BrokerageAccount:
        """Refresh balances from a gateway snapshot and mark the account connected."""
        account = self.get_account(account_id)
        old_equity = account.equity

        account.equity = snapshot.equity
        account.buying_power = snapshot.buying_power
        account.cash = snapshot.cash
        account.status = snapshot.status
        account.trading_blocked = snapshot.trading_blocked
        if positions is not None:
            account.open_positions = len(positions)
            account.unrealized_pl = sum(p.unrealized_pl for p in positions)

        account.recompute_reserve()
        account.connected = True
        account.disconnect_reason = None
        account.last_sync = datetime.now(timezone.utc)

        if old_equity != account.equity:
            logger.debug(
                f"Equity for {account_id} changed ${old_equity:,.2f} -> ${account.equity:,.2f}, "
                f"reserve now ${account.reserve_capital:,.2f}"
            )

        return account

    def mark_disconnected(self, account_id: str, reason: str) -> None:
        account = self.get_account(account_id)
        if account.connected or account.disconnect_reason != reason:
            logger.warning(f"Account {account_id} disconnected: {reason}")
        account.connected = False
        account.disconnect_reason = reason

    def snapshot(self) -> List[Dict[str, Any]]:
        return [account.to_dict() for account in self._accounts.values()]
