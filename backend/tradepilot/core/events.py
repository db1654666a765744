"""
Event Bus - In-Process Implementation
TradePilot Strategy Execution Engine

Provides:
- Async pub/sub between engine components
- Type-safe event definitions
- Handler isolation (a failing handler never breaks the publisher)
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union
import uuid

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Event Types & Definitions
# =============================================================================

class EventType(str, Enum):
    """All event types in the system."""

    # Order Events
    ORDER_PLACED = "order.placed"
    ORDER_FILLED = "order.filled"
    ORDER_REJECTED = "order.rejected"
    ORDER_FAILED = "order.failed"
    ORDER_CANCELLED = "order.cancelled"

    # Position Events
    POSITION_OPENED = "position.opened"
    POSITION_UPDATED = "position.updated"
    POSITION_CLOSED = "position.closed"

    # Decision Events
    DECISION_MADE = "decision.made"

    # Capital Events
    CAPITAL_LOCKED = "capital.locked"
    CAPITAL_WARNING = "capital.warning"
    ACCOUNT_SYNCED = "account.synced"

    # Risk Events
    CIRCUIT_BREAKER_TRIPPED = "risk.circuit_breaker"
    EMERGENCY_ACTION = "risk.emergency"

    # Strategy Events
    STRATEGY_STARTED = "strategy.started"
    STRATEGY_STOPPED = "strategy.stopped"
    STRATEGY_ERROR = "strategy.error"

    # System Events
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"
    BROKER_CONNECTED = "broker.connected"
    BROKER_DISCONNECTED = "broker.disconnected"


class EventPriority(int, Enum):
    """Event priority levels for processing order."""
    CRITICAL = 0   # Breaker trips, emergency actions
    HIGH = 1       # Orders, positions
    NORMAL = 2
    LOW = 3


class BaseEvent(BaseModel):
    """Base event model with common fields."""

    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    priority: EventPriority = EventPriority.NORMAL
    source: str = "engine"
    metadata: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Event Bus Implementation
# =============================================================================

EventHandler = Callable[[BaseEvent], Coroutine[Any, Any, None]]


@dataclass
class Subscription:
    """Event subscription details."""
    event_type: EventType
    handler: EventHandler
    priority_filter: Optional[EventPriority] = None


class EventBus:
    """
    In-process event bus.

    Handlers are awaited in subscription order during publish. Errors raised
    by a handler are logged and do not propagate to the publisher.
    """

    # Mapping of short aliases to EventType values
    EVENT_TYPE_ALIASES = {
        "order_placed": EventType.ORDER_PLACED,
        "order_filled": EventType.ORDER_FILLED,
        "order_rejected": EventType.ORDER_REJECTED,
        "order_failed": EventType.ORDER_FAILED,
        "position_opened": EventType.POSITION_OPENED,
        "position_closed": EventType.POSITION_CLOSED,
        "decision": EventType.DECISION_MADE,
        "circuit_breaker": EventType.CIRCUIT_BREAKER_TRIPPED,
        "emergency": EventType.EMERGENCY_ACTION,
    }

    def __init__(self):
        self._subscriptions: Dict[EventType, List[Subscription]] = {}
        self._published = 0

    @staticmethod
    def _get_enum_value(val: Union[EventType, EventPriority, str, int]) -> str:
        if hasattr(val, "value"):
            return str(val.value)
        return str(val)

    def _resolve(self, event_type: Union[EventType, str]) -> Optional[EventType]:
        if isinstance(event_type, EventType):
            return event_type
        if event_type in self.EVENT_TYPE_ALIASES:
            return self.EVENT_TYPE_ALIASES[event_type]
        for et in EventType:
            if et.value == event_type or et.name.lower() == event_type.lower():
                return et
        return None

    async def publish(
        self,
        event: Union[BaseEvent, str],
        data: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Publish an event.

        Args:
            event: Either a BaseEvent object, or a string event type
            data: Optional data dict when event is a string type

        Returns:
            The event id, or None for an unknown event type
        """
        if isinstance(event, str):
            event_type = self._resolve(event)
            if event_type is None:
                logger.warning(f"Unknown event type for publish: {event}")
                return None
            event = BaseEvent(event_type=event_type, metadata=data or {})

        event_type = self._resolve(event.event_type)
        self._published += 1

        for sub in list(self._subscriptions.get(event_type, [])):
            if sub.priority_filter is not None and event.priority > sub.priority_filter:
                continue
            try:
                await sub.handler(event)
            except Exception as e:
                logger.error(f"Handler error for {self._get_enum_value(event_type)}: {e}")

        logger.debug(f"Published event {self._get_enum_value(event_type)}: {event.event_id}")
        return event.event_id

    async def subscribe(
        self,
        event_type: Union[EventType, str],
        handler: EventHandler,
        priority_filter: Optional[EventPriority] = None,
    ) -> None:
        """Subscribe an async handler to an event type."""
        resolved = self._resolve(event_type)
        if resolved is None:
            logger.warning(f"Unknown event type: {event_type}, skipping subscription")
            return

        self._subscriptions.setdefault(resolved, []).append(
            Subscription(event_type=resolved, handler=handler, priority_filter=priority_filter)
        )
        logger.debug(f"Subscribed to {resolved.value}: {getattr(handler, '__name__', handler)}")

    async def unsubscribe(
        self,
        event_type: Union[EventType, str],
        handler: Optional[EventHandler] = None,
    ) -> None:
        """Remove one handler, or every handler when none is given."""
        resolved = self._resolve(event_type)
        if resolved is None or resolved not in self._subscriptions:
            return

        if handler is not None:
            self._subscriptions[resolved] = [
                sub for sub in self._subscriptions[resolved] if sub.handler is not handler
            ]
        else:
            del self._subscriptions[resolved]

    async def subscribe_all(
        self,
        handler: EventHandler,
        event_types: Optional[List[EventType]] = None,
    ) -> None:
        """Subscribe to multiple event types with the same handler."""
        for event_type in event_types or list(EventType):
            await self.subscribe(event_type, handler)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "published": self._published,
            "subscriptions": {
                et.value: len(subs) for et, subs in self._subscriptions.items()
            },
        }
