"""
Trading Engine
TradePilot Strategy Execution Engine

Control surface over the strategy execution engine. Builds every component
once and injects it where needed:

    CapitalLedger, PositionLedger, StrategyRegistry
    OrderGateway (+ AuthCircuitBreaker), DecisionPipeline
    StrategyScheduler, ShutdownCoordinator
    EventBus, AuditTrail, ErrorHandler

Validation errors propagate to the caller. Everything else is reported
through ControlResult / EmergencyResult.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from tradepilot.brokers.base import BaseBroker, BrokerConfig
from tradepilot.brokers.factory import BrokerFactory, create_broker
from tradepilot.core.config import EngineSettings, Settings, get_settings
from tradepilot.core.events import EventBus
from tradepilot.core.exceptions import InvalidAllocation, InvalidAmount, StrategyNotFound
from tradepilot.execution.circuit_breaker import AuthCircuitBreaker
from tradepilot.execution.order_gateway import OrderGateway
from tradepilot.execution.pipeline import DecisionPipeline
from tradepilot.execution.shutdown import ShutdownCoordinator, ShutdownReport
from tradepilot.oracle.base import DecisionOracle, HoldOracle
from tradepilot.services.audit_trail import AuditEventType, AuditStorage, AuditTrail, FileAuditStorage
from tradepilot.services.capital_ledger import CapitalLedger
from tradepilot.services.error_handler import ErrorHandler
from tradepilot.services.position_ledger import PositionLedger
from tradepilot.services.signals import SignalSourceManager
from tradepilot.services.state_store import SavedAccount, SavedStrategy, StateStore
from tradepilot.strategies.models import Strategy, default_strategies
from tradepilot.strategies.registry import StrategyRegistry
from tradepilot.strategies.scheduler import StrategyScheduler


@dataclass
class ControlResult:
    success: bool
    message: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "message": self.message, "data": self.data}


@dataclass
class EmergencyStep:
    name: str
    success: bool
    account_id: Optional[str] = None
    detail: Optional[str] = None
    error: Optional[str] = None


@dataclass
class EmergencyResult:
    """Outcome of an emergency operation, one entry per sub-step."""
    action: str
    steps: List[EmergencyStep] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.steps) and all(step.success for step in self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "success": self.success,
            "steps": [step.__dict__.copy() for step in self.steps],
        }


class TradingEngine:
    """
    The strategy execution engine.

    Usage:
        engine = TradingEngine(oracle=AnthropicOracle())
        await engine.register_account(BrokerConfig(id="alpaca-1", name="Alpaca", venue="alpaca", ...))
        await engine.start()
        await engine.start_strategy("high-vol-1")
        ...
        await engine.graceful_shutdown()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        engine_settings: Optional[EngineSettings] = None,
        oracle: Optional[DecisionOracle] = None,
        strategies: Optional[List[Strategy]] = None,
        signals: Optional[SignalSourceManager] = None,
        broker_factory: Callable[[BrokerConfig], BaseBroker] = create_broker,
        state_store: Optional[StateStore] = None,
        audit_storage: Optional[AuditStorage] = None,
    ):
        self.settings = settings or get_settings()
        engine_settings = engine_settings or self.settings.engine
        self.engine_settings = engine_settings
        audit_settings = self.settings.audit

        if audit_storage is None and audit_settings.file_enabled:
            audit_storage = FileAuditStorage(audit_settings.base_dir)

        self.event_bus = EventBus()
        self.error_handler = ErrorHandler(event_bus=self.event_bus)
        self.audit = AuditTrail(
            storage=audit_storage,
            event_bus=self.event_bus,
            max_recent=audit_settings.max_recent,
        )

        self.registry = StrategyRegistry(
            strategies if strategies is not None
            else default_strategies(min_profit=engine_settings.default_min_profit)
        )
        self.capital_ledger = CapitalLedger(engine_settings, self.registry.has_running_strategies)
        self.position_ledger = PositionLedger()
        self.breaker = AuthCircuitBreaker(engine_settings.max_auth_failures)
        self.signals = signals or SignalSourceManager()
        self.oracle = oracle or HoldOracle()

        self.gateway = OrderGateway(
            self.capital_ledger,
            self.position_ledger,
            self.registry,
            self.breaker,
            self.audit,
            error_handler=self.error_handler,
            settings=engine_settings,
            broker_factory=broker_factory,
        )
        self.pipeline = DecisionPipeline(
            self.capital_ledger,
            self.position_ledger,
            self.registry,
            self.gateway,
            self.oracle,
            signals=self.signals,
            breaker=self.breaker,
            settings=engine_settings,
            error_handler=self.error_handler,
            event_bus=self.event_bus,
        )
        self.scheduler = StrategyScheduler(
            self.registry,
            self.capital_ledger,
            self.pipeline,
            self.gateway,
            self.audit,
            settings=engine_settings,
        )
        self.state_store = state_store or StateStore(engine_settings.saved_state_path)
        self.shutdown_coordinator = ShutdownCoordinator(
            self.registry,
            self.scheduler,
            self.position_ledger,
            self.capital_ledger,
            self.gateway,
            self.pipeline,
            self.state_store,
            self.audit,
            settings=engine_settings,
        )

        self._started = False
        logger.info(f"TradingEngine initialized with {len(self.registry.list_strategies())} strategies")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, restore: bool = True) -> ControlResult:
        """
        Sync accounts, start the sync loop and restore saved state.

        Restoring reapplies the saved control state (allocation mode,
        allocations, locked capital) and then re-evaluates saved positions.
        Control changes are persisted from here on.
        """
        if self._started:
            return ControlResult(False, "Engine already started")

        synced = await self.scheduler.sync_all()
        self.scheduler.start_sync()

        restored = None
        controls = None
        if restore:
            controls = self._restore_controls()
            restored = await self.shutdown_coordinator.restore_saved_state()

        self._started = True
        self._persist_controls()
        await self.audit.log_event(
            AuditEventType.ENGINE_STARTED,
            action="start",
            description=f"Engine started with {len(synced)} accounts",
            metadata={"synced": synced},
        )
        return ControlResult(
            True,
            "Engine started",
            {
                "synced": synced,
                "controls": controls,
                "restored": restored.to_dict() if restored else None,
            },
        )

    def _restore_controls(self) -> Dict[str, Any]:
        """Reapply saved control state. Entries that no longer apply are skipped."""
        state = self.state_store.load()
        applied: Dict[str, Any] = {"allocation_mode": None, "strategies": [], "accounts": []}

        if state.allocation_mode:
            try:
                self.registry.set_allocation_mode(state.allocation_mode)
                applied["allocation_mode"] = self.registry.allocation_mode.value
            except InvalidAllocation as e:
                logger.warning(f"Ignoring saved allocation mode: {e}")

        for saved in state.strategies:
            try:
                self.registry.set_allocation(saved.strategy_id, saved.allocation)
            except (StrategyNotFound, InvalidAllocation) as e:
                logger.warning(f"Ignoring saved allocation for {saved.strategy_id}: {e}")
                continue
            applied["strategies"].append(saved.strategy_id)

        for saved in state.accounts:
            if not self.capital_ledger.has_account(saved.account_id):
                logger.warning(f"Saved capital for unregistered account {saved.account_id} ignored")
                continue
            if saved.locked_trading_capital <= 0:
                continue
            try:
                self.capital_ledger.set_locked_capital(saved.account_id, saved.locked_trading_capital)
            except InvalidAmount as e:
                logger.warning(f"Ignoring saved capital for {saved.account_id}: {e}")
                continue
            applied["accounts"].append(saved.account_id)

        if state.has_controls:
            logger.info(
                f"Restored control state: mode {applied['allocation_mode']}, "
                f"{len(applied['strategies'])} allocations, {len(applied['accounts'])} accounts"
            )
        return applied

    def _persist_controls(self) -> None:
        if not self._started:
            return
        self.state_store.save_controls(
            allocation_mode=self.registry.allocation_mode.value,
            accounts=[
                SavedAccount(account_id=a.id, locked_trading_capital=a.locked_trading_capital)
                for a in self.capital_ledger.accounts()
            ],
            strategies=[
                SavedStrategy(strategy_id=s.id, allocation=s.allocation)
                for s in self.registry.list_strategies()
            ],
        )

    async def graceful_shutdown(self) -> ShutdownReport:
        report = await self.shutdown_coordinator.graceful_shutdown()
        await self.scheduler.shutdown()
        self._started = False
        return report

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.gateway.close()
        await self.audit.close()

    # =========================================================================
    # Strategy control
    # =========================================================================

    async def start_strategy(self, strategy_id: str) -> ControlResult:
        started = await self.scheduler.start(strategy_id)
        strategy = self.registry.get(strategy_id)
        if not started:
            return ControlResult(False, f"{strategy.name} is already running")
        self._persist_controls()
        return ControlResult(True, f"Started {strategy.name}", strategy.to_dict())

    async def stop_strategy(self, strategy_id: str) -> ControlResult:
        stopped = await self.scheduler.stop(strategy_id)
        strategy = self.registry.get(strategy_id)
        if not stopped:
            return ControlResult(False, f"{strategy.name} is not running")
        return ControlResult(True, f"Stopped {strategy.name}", strategy.to_dict())

    async def start_all(self) -> ControlResult:
        started = await self.scheduler.start_all()
        self._persist_controls()
        return ControlResult(True, f"Started {len(started)} strategies", {"started": started})

    async def stop_all(self) -> ControlResult:
        stopped = await self.scheduler.stop_all()
        return ControlResult(True, f"Stopped {len(stopped)} strategies", {"stopped": stopped})

    async def set_allocation_mode(self, mode: str) -> ControlResult:
        strategies = self.registry.set_allocation_mode(mode)
        self._persist_controls()
        allocations = {s.id: s.allocation for s in strategies}
        await self.audit.log_event(
            AuditEventType.ALLOCATION_CHANGED,
            action="mode",
            description=f"Allocation mode set to {self.registry.allocation_mode.value}",
            metadata={"allocations": allocations},
        )
        return ControlResult(True, f"Allocation mode: {self.registry.allocation_mode.value}", allocations)

    async def set_strategy_allocation(self, strategy_id: str, allocation: float) -> ControlResult:
        strategy = self.registry.set_allocation(strategy_id, allocation)
        self._persist_controls()
        await self.audit.log_event(
            AuditEventType.ALLOCATION_CHANGED,
            action="allocation",
            description=f"{strategy.name} allocation set to {strategy.allocation:g}%",
            strategy_id=strategy.id,
        )
        return ControlResult(True, f"{strategy.name} allocation: {strategy.allocation:g}%", strategy.to_dict())

    # =========================================================================
    # Capital
    # =========================================================================

    async def set_locked_capital(self, account_id: str, amount: float) -> ControlResult:
        update = self.capital_ledger.set_locked_capital(account_id, amount)
        self._persist_controls()
        await self.audit.log_event(
            AuditEventType.CAPITAL_LOCKED,
            action="set",
            description=f"Locked ${update.locked:,.2f} (reserve ${update.reserve:,.2f})",
            account_id=account_id,
            metadata=update.to_dict(),
        )
        if update.warning is not None:
            await self.audit.log_event(
                AuditEventType.CAPITAL_WARNING,
                action="warn",
                description=update.warning.message,
                account_id=account_id,
            )
            return ControlResult(True, update.warning.message, update.to_dict())
        return ControlResult(True, f"Locked capital set to ${update.locked:,.2f}", update.to_dict())

    async def auto_lock_capital(self, account_id: str) -> ControlResult:
        update = self.capital_ledger.auto_lock(account_id)
        self._persist_controls()
        await self.audit.log_event(
            AuditEventType.CAPITAL_LOCKED,
            action="auto_lock",
            description=f"Auto-locked ${update.locked:,.2f}",
            account_id=account_id,
            metadata=update.to_dict(),
        )
        return ControlResult(True, f"Auto-locked ${update.locked:,.2f}", update.to_dict())

    # =========================================================================
    # Accounts
    # =========================================================================

    async def register_account(
        self,
        config: BrokerConfig,
        broker: Optional[BaseBroker] = None,
        sync: bool = True,
    ) -> ControlResult:
        """
        Register a brokerage account and bind its gateway.

        The first registered account becomes the default for strategies
        without an explicit account.

        Raises:
            UnsupportedVenue: no gateway implementation for ``config.venue``
            AccountAlreadyRegistered: the id is already registered
        """
        if broker is None:
            BrokerFactory.get_broker_class(config.venue)

        account = self.capital_ledger.register_account(config)
        self.gateway.attach_broker(account.id, broker)
        if self.registry.default_account_id is None:
            self.registry.default_account_id = account.id

        await self.audit.log_event(
            AuditEventType.ACCOUNT_REGISTERED,
            action="register",
            description=f"Registered {account.name} ({account.venue}, {account.mode.value})",
            account_id=account.id,
        )

        synced = await self.gateway.sync_account(account.id) if sync else False
        account = self.capital_ledger.get_account(account.id)
        message = f"Registered {account.name}"
        if not synced and sync:
            message += f" (not connected: {account.disconnect_reason or 'sync failed'})"
        return ControlResult(True, message, account.to_dict())

    async def deregister_account(self, account_id: str) -> ControlResult:
        """Stop the account's strategies, drop its gateway and remove it."""
        self.capital_ledger.get_account(account_id)

        stopped = []
        for strategy in self.registry.running_strategies():
            if self.registry.account_for(strategy) == account_id:
                await self.scheduler.stop(strategy.id)
                stopped.append(strategy.id)

        await self.gateway.detach_broker(account_id)
        self.breaker.reset(account_id)
        account = self.capital_ledger.deregister_account(account_id)
        if self.registry.default_account_id == account_id:
            remaining = self.capital_ledger.accounts()
            self.registry.default_account_id = remaining[0].id if remaining else None
        self._persist_controls()

        await self.audit.log_event(
            AuditEventType.ACCOUNT_REMOVED,
            action="remove",
            description=f"Removed {account.name}",
            account_id=account_id,
            metadata={"stopped": stopped},
        )
        return ControlResult(True, f"Removed {account.name}", {"stopped": stopped})

    async def update_credentials(self, account_id: str, api_key: str, api_secret: str) -> ControlResult:
        """Replace credentials, reset the circuit breaker and reconnect."""
        self.capital_ledger.update_credentials(account_id, api_key, api_secret)
        await self.gateway.rebuild_broker(account_id)

        await self.audit.log_event(
            AuditEventType.CREDENTIALS_UPDATED,
            action="update",
            description="Credentials updated, circuit breaker reset",
            account_id=account_id,
        )

        synced = await self.gateway.sync_account(account_id)
        account = self.capital_ledger.get_account(account_id)
        if not synced:
            return ControlResult(
                False,
                f"Credentials saved but connection failed: {account.disconnect_reason or 'unknown'}",
                account.to_dict(),
            )
        return ControlResult(True, "Credentials updated and verified", account.to_dict())

    # =========================================================================
    # Emergency operations
    # =========================================================================

    def _target_accounts(self, account_id: Optional[str]) -> List[str]:
        if account_id is not None:
            return [self.capital_ledger.get_account(account_id).id]
        return [account.id for account in self.capital_ledger.accounts()]

    async def _step(
        self,
        result: EmergencyResult,
        name: str,
        account_id: Optional[str],
        operation: Callable[[], Awaitable[Any]],
    ) -> None:
        try:
            detail = await operation()
        except Exception as e:
            logger.error(f"Emergency step {name} failed for {account_id}: {e}")
            await self.error_handler.handle_error(e, "emergency", context={"step": name, "account_id": account_id})
            result.steps.append(EmergencyStep(name, False, account_id, error=str(e)))
            return
        result.steps.append(EmergencyStep(name, True, account_id, detail=None if detail is None else str(detail)))

    async def cancel_all_orders(self, account_id: Optional[str] = None) -> EmergencyResult:
        result = EmergencyResult("cancel_all_orders")
        for target in self._target_accounts(account_id):
            await self._step(result, "cancel_all_orders", target,
                             lambda target=target: self.gateway.cancel_all_orders(target))
        return result

    async def close_position(self, symbol: str, account_id: Optional[str] = None) -> EmergencyResult:
        result = EmergencyResult("close_position")
        for target in self._target_accounts(account_id):
            await self._step(result, f"close_position:{symbol}", target,
                             lambda target=target: self.gateway.close_position(target, symbol))
        return result

    async def close_all_positions(self, account_id: Optional[str] = None) -> EmergencyResult:
        result = EmergencyResult("close_all_positions")
        for target in self._target_accounts(account_id):
            await self._step(result, "close_all_positions", target,
                             lambda target=target: self.gateway.close_all_positions(target))
        return result

    async def emergency_stop(self, account_id: Optional[str] = None) -> EmergencyResult:
        """Cancel all orders, close all positions and stop every strategy."""
        logger.critical(f"EMERGENCY STOP requested ({account_id or 'all accounts'})")
        result = EmergencyResult("emergency_stop")

        for target in self._target_accounts(account_id):
            await self._step(result, "cancel_all_orders", target,
                             lambda target=target: self.gateway.cancel_all_orders(target))
            await self._step(result, "close_all_positions", target,
                             lambda target=target: self.gateway.close_all_positions(target))

        await self._step(result, "stop_all_strategies", None, self.scheduler.stop_all)

        await self.audit.log_event(
            AuditEventType.EMERGENCY_ACTION,
            action="emergency_stop",
            description="Emergency stop executed" if result.success else "Emergency stop completed with errors",
            account_id=account_id,
            metadata=result.to_dict(),
        )
        return result

    # =========================================================================
    # Snapshot
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "started": self._started,
            "allocation_mode": self.registry.allocation_mode.value,
            "strategies": self.registry.snapshot(),
            "accounts": self.capital_ledger.snapshot(),
            "positions": [p.to_dict() for p in self.position_ledger.get_all_positions()],
            "positions_summary": self.position_ledger.get_summary(),
            "decisions": [d.model_dump(mode="json") for d in self.pipeline.recent_decisions()],
            "circuit_breakers": self.breaker.snapshot(),
            "orders": self.gateway.get_stats(),
            "scheduler": self.scheduler.get_stats(),
            "errors": self.error_handler.get_error_stats(),
            "signal_sources": self.signals.get_sources(),
        }
