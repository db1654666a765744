"""
Audit Trail
TradePilot Strategy Execution Engine

Records every order attempt and result, position lifecycle change,
strategy start/stop, capital change, circuit-breaker trip, emergency
action and shutdown. Events are kept in memory, optionally appended to
daily JSON-lines files, and republished on the event bus.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger

from tradepilot.core.events import BaseEvent, EventBus, EventPriority, EventType


class AuditEventType(str, Enum):
    """Types of audit events."""
    # Order Events
    ORDER_PLACED = "order_placed"
    ORDER_FILLED = "order_filled"
    ORDER_REJECTED = "order_rejected"
    ORDER_FAILED = "order_failed"
    ORDERS_CANCELLED = "orders_cancelled"

    # Position Events
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    POSITION_SAVED = "position_saved"
    POSITION_RESUMED = "position_resumed"
    POSITION_DROPPED = "position_dropped"

    # Strategy Events
    STRATEGY_STARTED = "strategy_started"
    STRATEGY_STOPPED = "strategy_stopped"
    ALLOCATION_CHANGED = "allocation_changed"

    # Capital Events
    CAPITAL_LOCKED = "capital_locked"
    CAPITAL_WARNING = "capital_warning"
    ACCOUNT_REGISTERED = "account_registered"
    ACCOUNT_REMOVED = "account_removed"
    CREDENTIALS_UPDATED = "credentials_updated"

    # Risk Events
    CIRCUIT_BREAKER_TRIGGERED = "circuit_breaker_triggered"
    EMERGENCY_ACTION = "emergency_action"

    # System Events
    ENGINE_STARTED = "engine_started"
    SHUTDOWN = "shutdown"


# Bus counterpart of each audit type
BUS_EVENT_TYPES = {
    AuditEventType.ORDER_PLACED: EventType.ORDER_PLACED,
    AuditEventType.ORDER_FILLED: EventType.ORDER_FILLED,
    AuditEventType.ORDER_REJECTED: EventType.ORDER_REJECTED,
    AuditEventType.ORDER_FAILED: EventType.ORDER_FAILED,
    AuditEventType.ORDERS_CANCELLED: EventType.ORDER_CANCELLED,
    AuditEventType.POSITION_OPENED: EventType.POSITION_OPENED,
    AuditEventType.POSITION_CLOSED: EventType.POSITION_CLOSED,
    AuditEventType.POSITION_SAVED: EventType.POSITION_UPDATED,
    AuditEventType.POSITION_RESUMED: EventType.POSITION_OPENED,
    AuditEventType.POSITION_DROPPED: EventType.POSITION_UPDATED,
    AuditEventType.STRATEGY_STARTED: EventType.STRATEGY_STARTED,
    AuditEventType.STRATEGY_STOPPED: EventType.STRATEGY_STOPPED,
    AuditEventType.CAPITAL_LOCKED: EventType.CAPITAL_LOCKED,
    AuditEventType.CAPITAL_WARNING: EventType.CAPITAL_WARNING,
    AuditEventType.ACCOUNT_REGISTERED: EventType.BROKER_CONNECTED,
    AuditEventType.ACCOUNT_REMOVED: EventType.BROKER_DISCONNECTED,
    AuditEventType.CIRCUIT_BREAKER_TRIGGERED: EventType.CIRCUIT_BREAKER_TRIPPED,
    AuditEventType.EMERGENCY_ACTION: EventType.EMERGENCY_ACTION,
    AuditEventType.ENGINE_STARTED: EventType.SYSTEM_STARTUP,
    AuditEventType.SHUTDOWN: EventType.SYSTEM_SHUTDOWN,
}

CRITICAL_TYPES = {
    AuditEventType.CIRCUIT_BREAKER_TRIGGERED,
    AuditEventType.EMERGENCY_ACTION,
}


@dataclass
class AuditEvent:
    """
    Represents an auditable event in the engine.
    """
    event_id: str
    event_type: AuditEventType
    timestamp: datetime

    # Actor information
    strategy_id: Optional[str] = None
    account_id: Optional[str] = None

    # Event details
    symbol: Optional[str] = None
    order_id: Optional[str] = None
    position_id: Optional[str] = None
    action: str = ""
    description: str = ""

    # Financial impact
    quantity: Optional[float] = None
    price: Optional[float] = None
    pnl: Optional[float] = None

    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(),
            "strategy_id": self.strategy_id,
            "account_id": self.account_id,
            "symbol": self.symbol,
            "order_id": self.order_id,
            "position_id": self.position_id,
            "action": self.action,
            "description": self.description,
            "quantity": self.quantity,
            "price": self.price,
            "pnl": self.pnl,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(
            event_id=data.get("event_id", ""),
            event_type=AuditEventType(data["event_type"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            strategy_id=data.get("strategy_id"),
            account_id=data.get("account_id"),
            symbol=data.get("symbol"),
            order_id=data.get("order_id"),
            position_id=data.get("position_id"),
            action=data.get("action", ""),
            description=data.get("description", ""),
            quantity=data.get("quantity"),
            price=data.get("price"),
            pnl=data.get("pnl"),
            metadata=data.get("metadata", {}),
        )

    def to_log_line(self) -> str:
        """Convert to log line format."""
        parts = [f"[{self.event_type.value}]"]

        if self.strategy_id:
            parts.append(f"strategy={self.strategy_id}")
        if self.symbol:
            parts.append(f"symbol={self.symbol}")
        if self.order_id:
            parts.append(f"order={self.order_id[:8]}")
        if self.quantity:
            parts.append(f"qty={self.quantity}")
        if self.price:
            parts.append(f"price={self.price}")
        if self.pnl is not None:
            parts.append(f"pnl={self.pnl:+.2f}")
        if self.description:
            parts.append(f"| {self.description}")

        return " ".join(parts)


class AuditStorage:
    """Base class for audit event storage."""

    async def store(self, event: AuditEvent) -> None:
        raise NotImplementedError

    async def query(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        start_time: Optional[datetime] = None,
        symbol: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class FileAuditStorage(AuditStorage):
    """
    File-based audit storage.

    Appends events to one JSON-lines file per UTC day.
    """

    def __init__(self, base_dir: str = "logs/audit", buffer_size: int = 20):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

        self._buffer: List[AuditEvent] = []
        self._buffer_size = buffer_size

        logger.info(f"FileAuditStorage initialized at {self.base_dir}")

    def _get_file_path(self, event_date: date) -> Path:
        return self.base_dir / f"audit_{event_date.strftime('%Y%m%d')}.jsonl"

    async def store(self, event: AuditEvent) -> None:
        self._buffer.append(event)
        if len(self._buffer) >= self._buffer_size:
            await self.flush()

    async def flush(self) -> None:
        """Write buffered events to their day files."""
        if not self._buffer:
            return

        pending, self._buffer = self._buffer, []
        try:
            for event in pending:
                with open(self._get_file_path(event.timestamp.date()), "a", encoding="utf-8") as f:
                    f.write(json.dumps(event.to_dict()) + "\n")
        except OSError as e:
            logger.error(f"Failed to flush audit buffer: {e}")

    async def query(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        start_time: Optional[datetime] = None,
        symbol: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events from files."""
        await self.flush()

        end_date = datetime.now(timezone.utc).date()
        current = start_time.date() if start_time else end_date - timedelta(days=7)
        results: List[AuditEvent] = []

        while current <= end_date:
            file_path = self._get_file_path(current)
            if file_path.exists():
                with open(file_path, "r", encoding="utf-8") as f:
                    for line in f:
                        try:
                            event = AuditEvent.from_dict(json.loads(line))
                        except (json.JSONDecodeError, KeyError, ValueError):
                            continue
                        if event_types and event.event_type not in event_types:
                            continue
                        if start_time and event.timestamp < start_time:
                            continue
                        if symbol and event.symbol != symbol:
                            continue
                        results.append(event)
            current += timedelta(days=1)

        return results[-limit:]

    async def close(self) -> None:
        await self.flush()


class AuditTrail:
    """
    Central audit trail manager.
    """

    def __init__(
        self,
        storage: Optional[AuditStorage] = None,
        event_bus: Optional[EventBus] = None,
        max_recent: int = 500,
    ):
        self.storage = storage
        self.event_bus = event_bus

        # In-memory recent events for quick access
        self._recent_events: List[AuditEvent] = []
        self._max_recent = max_recent

    async def log_event(
        self,
        event_type: AuditEventType,
        action: str = "",
        description: str = "",
        strategy_id: Optional[str] = None,
        account_id: Optional[str] = None,
        symbol: Optional[str] = None,
        order_id: Optional[str] = None,
        position_id: Optional[str] = None,
        quantity: Optional[float] = None,
        price: Optional[float] = None,
        pnl: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """
        Log an audit event.

        Storage and bus failures are logged and never propagate.
        """
        event = AuditEvent(
            event_id=str(uuid.uuid4()),
            event_type=event_type,
            timestamp=datetime.now(timezone.utc),
            strategy_id=strategy_id,
            account_id=account_id,
            symbol=symbol,
            order_id=order_id,
            position_id=position_id,
            action=action,
            description=description,
            quantity=quantity,
            price=price,
            pnl=pnl,
            metadata=metadata or {},
        )

        self._recent_events.append(event)
        if len(self._recent_events) > self._max_recent:
            self._recent_events = self._recent_events[-self._max_recent:]

        if event_type in CRITICAL_TYPES:
            logger.critical(event.to_log_line())
        else:
            logger.info(event.to_log_line())

        if self.storage is not None:
            try:
                await self.storage.store(event)
            except Exception as e:
                logger.error(f"Failed to store audit event {event.event_id}: {e}")

        await self._publish(event)
        return event

    async def _publish(self, event: AuditEvent) -> None:
        if self.event_bus is None:
            return
        bus_event = BaseEvent(
            event_type=BUS_EVENT_TYPES.get(event.event_type, EventType.STRATEGY_ERROR),
            priority=EventPriority.CRITICAL if event.event_type in CRITICAL_TYPES else EventPriority.HIGH,
            source="audit",
            metadata=event.to_dict(),
        )
        try:
            await self.event_bus.publish(bus_event)
        except Exception as e:
            logger.warning(f"Failed to publish audit event: {e}")

    async def close(self) -> None:
        if self.storage is not None:
            await self.storage.close()

    # Query methods
    def get_recent_events(
        self,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
    ) -> List[AuditEvent]:
        """Get recent events from memory."""
        events = self._recent_events
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]

    async def query_events(
        self,
        event_types: Optional[List[AuditEventType]] = None,
        start_time: Optional[datetime] = None,
        symbol: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query persisted events, falling back to memory without storage."""
        if self.storage is None:
            events = [
                e for e in self._recent_events
                if (not event_types or e.event_type in event_types)
                and (not start_time or e.timestamp >= start_time)
                and (not symbol or e.symbol == symbol)
            ]
            return events[-limit:]
        return await self.storage.query(
            event_types=event_types,
            start_time=start_time,
            symbol=symbol,
            limit=limit,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get audit trail statistics."""
        type_counts: Dict[str, int] = {}
        for event in self._recent_events:
            type_counts[event.event_type.value] = type_counts.get(event.event_type.value, 0) + 1

        return {
            "recent_count": len(self._recent_events),
            "by_type": type_counts,
        }
