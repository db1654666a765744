"""
Strategy Scheduler
TradePilot Strategy Execution Engine

Runs each started strategy on its own asyncio task:
- Tick immediately, then every ``tick_interval_seconds``
- Stop sets a per-strategy stop event; an in-flight tick completes
- Auto-locks account capital when a strategy starts on an unfunded account
- Separate account-sync loop independent of strategy ticks
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from loguru import logger

from tradepilot.core.config import EngineSettings, get_settings
from tradepilot.core.exceptions import ZeroCapitalNotAllowed
from tradepilot.execution.order_gateway import OrderGateway
from tradepilot.execution.pipeline import DecisionPipeline
from tradepilot.services.audit_trail import AuditEventType, AuditTrail
from tradepilot.services.capital_ledger import CapitalLedger
from tradepilot.strategies.models import Strategy
from tradepilot.strategies.registry import StrategyRegistry


@dataclass
class StrategyHandle:
    """Task and stop token for one running strategy."""
    strategy_id: str
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ticks: int = 0


class StrategyScheduler:
    """Owns the per-strategy tick tasks and the account sync task."""

    def __init__(
        self,
        registry: StrategyRegistry,
        capital_ledger: CapitalLedger,
        pipeline: DecisionPipeline,
        gateway: OrderGateway,
        audit: AuditTrail,
        settings: Optional[EngineSettings] = None,
    ):
        self.registry = registry
        self.capital_ledger = capital_ledger
        self.pipeline = pipeline
        self.gateway = gateway
        self.audit = audit
        self.settings = settings or get_settings().engine

        self._handles: Dict[str, StrategyHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

        self._sync_stop = asyncio.Event()
        self._sync_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Strategy lifecycle
    # =========================================================================

    async def start(self, strategy_id: str) -> bool:
        """
        Start a strategy's tick loop.

        Raises:
            StrategyNotFound: unknown strategy id
            ZeroCapitalNotAllowed: the account has no capital to lock

        Returns:
            False if the strategy was already running
        """
        strategy = self.registry.get(strategy_id)
        if strategy.running:
            logger.warning(f"Strategy {strategy.name} is already running")
            return False

        await self._ensure_capital(strategy)

        strategy.running = True
        handle = StrategyHandle(strategy_id=strategy.id)
        handle.task = asyncio.create_task(self._run(strategy, handle), name=f"strategy-{strategy.id}")
        self._handles[strategy.id] = handle
        self._tasks.add(handle.task)
        handle.task.add_done_callback(self._tasks.discard)

        logger.info(f"Started strategy: {strategy.name} (every {self.settings.tick_interval_seconds:g}s)")
        await self.audit.log_event(
            AuditEventType.STRATEGY_STARTED,
            action="start",
            description=f"Started {strategy.name}",
            strategy_id=strategy.id,
            account_id=self.registry.account_for(strategy),
        )
        return True

    async def _ensure_capital(self, strategy: Strategy) -> None:
        account_id = self.registry.account_for(strategy)
        if account_id is None or not self.capital_ledger.has_account(account_id):
            logger.warning(f"Strategy {strategy.name} has no registered account; ticks will be skipped")
            return

        account = self.capital_ledger.get_account(account_id)
        if account.locked_trading_capital > 0:
            return

        if not account.connected:
            await self.gateway.sync_account(account_id)

        update = self.capital_ledger.auto_lock(account_id)
        if update.locked <= 0:
            reason = account.disconnect_reason or "no equity or buying power"
            logger.warning(f"Not starting {strategy.name}: nothing to lock on {account_id} ({reason})")
            raise ZeroCapitalNotAllowed(
                f"Cannot start {strategy.name}: locked capital on {account_id} would be 0 ({reason})"
            )

        await self.audit.log_event(
            AuditEventType.CAPITAL_LOCKED,
            action="auto_lock",
            description=f"Auto-locked ${update.locked:,.2f} for {strategy.name}",
            strategy_id=strategy.id,
            account_id=account_id,
            metadata=update.to_dict(),
        )

    async def stop(self, strategy_id: str, wait: bool = False) -> bool:
        """
        Stop a strategy. The current tick, if any, runs to completion.

        With ``wait`` the call returns only after the tick task has exited.

        Returns:
            False if the strategy was not running
        """
        strategy = self.registry.get(strategy_id)
        handle = self._handles.pop(strategy.id, None)
        was_running = strategy.running

        strategy.running = False
        if handle is not None:
            handle.stop_event.set()
            if wait and handle.task is not None:
                await asyncio.gather(handle.task, return_exceptions=True)

        if not was_running:
            return False

        logger.info(f"Stopped strategy: {strategy.name}")
        await self.audit.log_event(
            AuditEventType.STRATEGY_STOPPED,
            action="stop",
            description=f"Stopped {strategy.name}",
            strategy_id=strategy.id,
            account_id=self.registry.account_for(strategy),
        )
        return True

    async def start_all(self) -> List[str]:
        started = []
        for strategy in self.registry.list_strategies():
            try:
                if await self.start(strategy.id):
                    started.append(strategy.id)
            except ZeroCapitalNotAllowed as e:
                logger.warning(f"Skipped {strategy.name}: {e}")
        return started

    async def stop_all(self, wait: bool = False) -> List[str]:
        stopped = []
        for strategy in self.registry.list_strategies():
            if await self.stop(strategy.id, wait=wait):
                stopped.append(strategy.id)
        return stopped

    def is_running(self, strategy_id: str) -> bool:
        return strategy_id in self._handles

    async def _run(self, strategy: Strategy, handle: StrategyHandle) -> None:
        interval = self.settings.tick_interval_seconds
        while not handle.stop_event.is_set() and strategy.running:
            try:
                result = await self.pipeline.run_tick(strategy)
                handle.ticks += 1
                if not result.skipped:
                    logger.debug(f"Tick {handle.ticks} for {strategy.name}: {result.to_dict()}")
            except Exception as e:
                logger.error(f"Tick error for {strategy.name}: {e}")

            try:
                await asyncio.wait_for(handle.stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.debug(f"Tick loop for {strategy.name} exited after {handle.ticks} ticks")

    # =========================================================================
    # Account sync
    # =========================================================================

    def start_sync(self) -> None:
        if self._sync_task is not None and not self._sync_task.done():
            return
        self._sync_stop = asyncio.Event()
        self._sync_task = asyncio.create_task(self._sync_loop(), name="account-sync")
        logger.info(f"Account sync started (every {self.settings.sync_interval_seconds:g}s)")

    async def stop_sync(self) -> None:
        self._sync_stop.set()
        if self._sync_task is not None:
            await asyncio.gather(self._sync_task, return_exceptions=True)
            self._sync_task = None

    async def sync_all(self) -> Dict[str, bool]:
        results = {}
        for account in self.capital_ledger.accounts():
            try:
                results[account.id] = await self.gateway.sync_account(account.id)
            except Exception as e:
                logger.error(f"Account sync failed for {account.id}: {e}")
                results[account.id] = False
        return results

    async def _sync_loop(self) -> None:
        while not self._sync_stop.is_set():
            try:
                await asyncio.wait_for(self._sync_stop.wait(), timeout=self.settings.sync_interval_seconds)
            except asyncio.TimeoutError:
                await self.sync_all()

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> None:
        """Stop every strategy, wait for in-flight ticks, stop the sync loop."""
        await self.stop_all(wait=True)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.stop_sync()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "running": list(self._handles),
            "ticks": {sid: h.ticks for sid, h in self._handles.items()},
            "sync_active": self._sync_task is not None and not self._sync_task.done(),
        }
