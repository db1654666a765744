"""
Graceful shutdown and resume.

Shutdown stops every strategy, closes high-volatility positions and saves
everything else so it can be re-evaluated on the next start.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger

from tradepilot.core.config import EngineSettings, get_settings
from tradepilot.core.exceptions import PositionNotFound, StrategyNotFound
from tradepilot.execution.order_gateway import OrderGateway
from tradepilot.execution.pipeline import DecisionPipeline
from tradepilot.schemas.trading import DecisionAction
from tradepilot.services.audit_trail import AuditEventType, AuditTrail
from tradepilot.services.capital_ledger import CapitalLedger
from tradepilot.services.position_ledger import PositionLedger
from tradepilot.services.state_store import SavedPosition, StateStore
from tradepilot.strategies.registry import StrategyRegistry
from tradepilot.strategies.scheduler import StrategyScheduler


SHUTDOWN_CLOSE_REASON = "graceful shutdown"


@dataclass
class ShutdownReport:
    stopped: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    saved: List[str] = field(default_factory=list)
    realized_pl: float = 0.0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stopped": self.stopped,
            "closed": self.closed,
            "saved": self.saved,
            "realized_pl": self.realized_pl,
            "errors": self.errors,
        }


@dataclass
class RestoreReport:
    resumed: List[str] = field(default_factory=list)
    dropped: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"resumed": self.resumed, "dropped": self.dropped}


class ShutdownCoordinator:
    def __init__(
        self,
        registry: StrategyRegistry,
        scheduler: StrategyScheduler,
        position_ledger: PositionLedger,
        capital_ledger: CapitalLedger,
        gateway: OrderGateway,
        pipeline: DecisionPipeline,
        store: StateStore,
        audit: AuditTrail,
        settings: Optional[EngineSettings] = None,
    ):
        self.registry = registry
        self.scheduler = scheduler
        self.position_ledger = position_ledger
        self.capital_ledger = capital_ledger
        self.gateway = gateway
        self.pipeline = pipeline
        self.store = store
        self.audit = audit
        self.settings = settings or get_settings().engine

    async def graceful_shutdown(self) -> ShutdownReport:
        """
        Stop all strategies and settle their positions.

        High-volatility positions are closed with reason "graceful shutdown".
        Positions of every other strategy stay open and are written to the
        saved state.
        """
        logger.info("Initiating graceful shutdown...")
        report = ShutdownReport()

        report.stopped = await self.scheduler.stop_all(wait=True)

        saved: List[SavedPosition] = []
        for strategy in self.registry.list_strategies():
            for position in self.position_ledger.get_positions_by_strategy(strategy.id):
                if not strategy.is_high_volatility:
                    saved.append(SavedPosition(
                        position_id=position.position_id,
                        symbol=position.symbol,
                        qty=position.qty,
                        entry_price=position.entry_price,
                        current_price=position.current_price,
                        strategy_id=position.strategy_id,
                        strategy_name=position.strategy_name,
                        account_id=position.account_id,
                        open_reason=position.open_reason,
                        signals=position.signals,
                        stop_loss=position.stop_loss,
                        take_profit=position.take_profit,
                    ))
                    report.saved.append(position.position_id)
                    logger.info(f"Saved position state for {position.symbol} ({strategy.name})")
                    continue

                try:
                    closed = await self.gateway.close_for_shutdown(strategy, position, SHUTDOWN_CLOSE_REASON)
                except PositionNotFound:
                    continue
                except Exception as e:
                    logger.error(f"Failed to close {position.position_id} during shutdown: {e}")
                    report.errors.append(f"{position.position_id}: {e}")
                    continue

                report.closed.append(closed.position_id)
                report.realized_pl += closed.realized_pl
                logger.info(
                    f"Closed {closed.symbol} for {strategy.name} on shutdown: "
                    f"P&L ${closed.realized_pl:+.2f}"
                )

        if saved:
            self.store.save_positions(saved)
            for position in saved:
                await self.audit.log_event(
                    AuditEventType.POSITION_SAVED,
                    action="save",
                    description="Saved for resume after shutdown",
                    strategy_id=position.strategy_id,
                    account_id=position.account_id,
                    symbol=position.symbol,
                    position_id=position.position_id,
                    quantity=position.qty,
                    price=position.current_price,
                )
        else:
            self.store.clear_positions()

        await self.audit.log_event(
            AuditEventType.SHUTDOWN,
            action="graceful_shutdown",
            description=(
                f"Stopped {len(report.stopped)} strategies, closed {len(report.closed)} positions, "
                f"saved {len(report.saved)}"
            ),
            pnl=report.realized_pl,
            metadata=report.to_dict(),
        )
        logger.info(
            f"Graceful shutdown complete: closed {len(report.closed)}, saved {len(report.saved)}, "
            f"realized ${report.realized_pl:+.2f}"
        )
        return report

    async def restore_saved_state(self) -> RestoreReport:
        """
        Re-evaluate saved positions and resume the ones the oracle still wants.

        A saved position is resumed only on a buy with confidence above the
        resume threshold. The saved positions are cleared afterwards.
        """
        report = RestoreReport()
        state = self.store.load()
        if not state.positions:
            logger.info("No saved state to restore")
            return report

        logger.info(f"Evaluating {len(state.positions)} saved positions for resume")
        threshold = self.settings.resume_confidence_threshold

        for saved in state.positions:
            try:
                reason = await self._restore_one(saved, threshold, report)
            except Exception as e:
                logger.error(f"Failed to evaluate saved position {saved.position_id}: {e}")
                reason = f"evaluation failed: {e}"

            if reason is not None:
                report.dropped[saved.position_id] = reason
                logger.info(f"Not resuming {saved.symbol}: {reason}")
                await self.audit.log_event(
                    AuditEventType.POSITION_DROPPED,
                    action="drop",
                    description=reason,
                    strategy_id=saved.strategy_id,
                    account_id=saved.account_id,
                    symbol=saved.symbol,
                    position_id=saved.position_id,
                    quantity=saved.qty,
                )

        self.store.clear_positions()
        return report

    async def _restore_one(self, saved: SavedPosition, threshold: float, report: RestoreReport) -> Optional[str]:
        """Resume one saved position. Returns the drop reason, or None if resumed."""
        try:
            strategy = self.registry.get(saved.strategy_id)
        except StrategyNotFound:
            return f"strategy {saved.strategy_id} no longer exists"

        account_id = saved.account_id or self.registry.account_for(strategy)
        if account_id is None or not self.capital_ledger.has_account(account_id):
            return "account not registered"
        account = self.capital_ledger.get_account(account_id)

        decision = await self.pipeline.decide(strategy, saved.symbol, saved.current_price, account)
        if decision.action != DecisionAction.BUY or decision.confidence <= threshold:
            return (
                f"{decision.action.value} at confidence {decision.confidence:.0f} "
                f"(needs buy > {threshold:g}): {decision.reasoning}"
            )

        stop_loss, take_profit = strategy.exit_levels(saved.entry_price)
        position = await self.position_ledger.record_position(
            symbol=saved.symbol,
            qty=saved.qty,
            entry_price=saved.entry_price,
            strategy_id=strategy.id,
            strategy_name=strategy.name,
            open_reason=f"Resumed after shutdown: {decision.reasoning}",
            account_id=account_id,
            signals=saved.signals,
            stop_loss=saved.stop_loss if saved.stop_loss is not None else stop_loss,
            take_profit=saved.take_profit if saved.take_profit is not None else take_profit,
        )
        position = await self.position_ledger.update_position(
            position.position_id, strategy.id, current_price=saved.current_price
        )
        report.resumed.append(position.position_id)

        logger.info(
            f"Resumed position {saved.symbol} for {strategy.name} as {position.position_id} "
            f"(confidence {decision.confidence:.0f})"
        )
        await self.audit.log_event(
            AuditEventType.POSITION_RESUMED,
            action="resume",
            description=position.open_reason,
            strategy_id=strategy.id,
            account_id=account_id,
            symbol=position.symbol,
            position_id=position.position_id,
            quantity=position.qty,
            price=position.entry_price,
            metadata={"previous_position_id": saved.position_id},
        )
        return None
