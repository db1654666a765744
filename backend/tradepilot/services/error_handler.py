"""
Error Handling
TradePilot Strategy Execution Engine

Central error bookkeeping with:
- Error categorization and severity assignment
- Per-component burst detection (operator alert)
- Bounded in-memory error history
- Error event publishing
"""

import asyncio
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional

from loguru import logger

from tradepilot.brokers.base import GatewayError
from tradepilot.core.events import EventBus, EventType
from tradepilot.core.exceptions import (
    CredentialsNotConfigured,
    OrderRejected,
    ValidationError,
)


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"           # Skips, contract violations
    MEDIUM = "medium"     # Transient failures
    HIGH = "high"         # Auth and execution failures
    CRITICAL = "critical" # Operator attention required


class ErrorCategory(str, Enum):
    """Error categories for routing and handling."""
    CONFIGURATION = "configuration"   # Missing or placeholder credentials
    AUTHENTICATION = "authentication" # 401/403 from a venue
    TRANSIENT = "transient"           # Network, timeout, 5xx, rate limits
    VALIDATION = "validation"         # Bad caller input
    ORACLE = "oracle"                 # Oracle failures and contract violations
    EXECUTION = "execution"           # Order rejections and failed fills
    SYSTEM = "system"                 # Everything else


class RecoveryAction(str, Enum):
    """What the engine does about an error."""
    SKIP = "skip"
    CIRCUIT_BREAK = "circuit_break"
    RETRY_NEXT_TICK = "retry_next_tick"
    RAISE = "raise"
    HOLD = "hold"
    ALERT = "alert"


RECOVERY_BY_CATEGORY = {
    ErrorCategory.CONFIGURATION: RecoveryAction.SKIP,
    ErrorCategory.AUTHENTICATION: RecoveryAction.CIRCUIT_BREAK,
    ErrorCategory.TRANSIENT: RecoveryAction.RETRY_NEXT_TICK,
    ErrorCategory.VALIDATION: RecoveryAction.RAISE,
    ErrorCategory.ORACLE: RecoveryAction.HOLD,
    ErrorCategory.EXECUTION: RecoveryAction.RETRY_NEXT_TICK,
    ErrorCategory.SYSTEM: RecoveryAction.ALERT,
}


@dataclass
class ErrorRecord:
    """Record of an error occurrence."""
    error_id: str
    component: str
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    exception_type: str
    stack_trace: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    context: Dict[str, Any] = field(default_factory=dict)
    recovery_action: Optional[RecoveryAction] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_id": self.error_id,
            "component": self.component,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "exception_type": self.exception_type,
            "stack_trace": self.stack_trace,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
            "recovery_action": self.recovery_action.value if self.recovery_action else None,
        }


class ErrorHandler:
    """
    Central error handling system.

    A component that records ``burst_threshold`` errors within
    ``burst_window_seconds`` raises a CRITICAL operator alert.
    """

    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        max_errors: int = 1000,
        burst_threshold: int = 5,
        burst_window_seconds: float = 60.0,
    ):
        self.event_bus = event_bus

        # Error tracking
        self._errors: List[ErrorRecord] = []
        self._max_errors = max_errors
        self._error_counts: Dict[ErrorCategory, int] = {cat: 0 for cat in ErrorCategory}

        # Burst detection per component
        self._error_window: Dict[str, List[datetime]] = {}
        self._burst_window = timedelta(seconds=burst_window_seconds)
        self._burst_threshold = burst_threshold
        self._alerts = 0

        # Callbacks
        self._error_callbacks: List[Callable[[ErrorRecord], Coroutine[Any, Any, None]]] = []

        logger.info("ErrorHandler initialized")

    def register_error_callback(
        self,
        callback: Callable[[ErrorRecord], Coroutine[Any, Any, None]],
    ) -> None:
        """Register a callback for error notifications."""
        self._error_callbacks.append(callback)

    async def handle_error(
        self,
        exception: BaseException,
        component: str,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> ErrorRecord:
        """
        Record and log an error.

        Args:
            exception: The exception that occurred
            component: Name of the reporting component
            category: Error category (auto-detected if not provided)
            severity: Error severity (auto-detected if not provided)
            context: Additional context information

        Returns:
            ErrorRecord describing the error and the engine's response
        """
        if category is None:
            category = self._categorize_exception(exception)

        if severity is None:
            severity = self._assess_severity(exception, category)

        error = ErrorRecord(
            error_id=str(uuid.uuid4()),
            component=component,
            category=category,
            severity=severity,
            message=str(exception) or type(exception).__name__,
            exception_type=type(exception).__name__,
            stack_trace="".join(
                traceback.format_exception(type(exception), exception, exception.__traceback__)
            ) if exception.__traceback__ else "",
            context=context or {},
            recovery_action=RECOVERY_BY_CATEGORY[category],
        )

        self._errors.append(error)
        if len(self._errors) > self._max_errors:
            self._errors = self._errors[-self._max_errors:]

        self._error_counts[category] += 1

        log_method = {
            ErrorSeverity.LOW: logger.warning,
            ErrorSeverity.MEDIUM: logger.error,
            ErrorSeverity.HIGH: logger.error,
            ErrorSeverity.CRITICAL: logger.critical,
        }.get(severity, logger.error)

        log_method(f"[{component}:{category.value}] {error.message}")

        if severity != ErrorSeverity.LOW and self._is_burst(component):
            self._alerts += 1
            logger.critical(
                f"Component {component} has exceeded error threshold "
                f"({self._burst_threshold} errors in {int(self._burst_window.total_seconds())}s)"
            )

        await self._publish_error_event(error)

        for callback in self._error_callbacks:
            try:
                await callback(error)
            except Exception as e:
                logger.warning(f"Error callback failed: {e}")

        return error

    def _categorize_exception(self, exception: BaseException) -> ErrorCategory:
        """Auto-categorize an exception based on its type."""
        if isinstance(exception, CredentialsNotConfigured):
            return ErrorCategory.CONFIGURATION
        if isinstance(exception, GatewayError):
            if exception.is_auth_error:
                return ErrorCategory.AUTHENTICATION
            if exception.status_code is None or exception.status_code >= 500 or exception.status_code == 429:
                return ErrorCategory.TRANSIENT
            return ErrorCategory.EXECUTION
        if isinstance(exception, OrderRejected):
            return ErrorCategory.EXECUTION
        if isinstance(exception, ValidationError):
            return ErrorCategory.VALIDATION
        if isinstance(exception, (asyncio.TimeoutError, ConnectionError)):
            return ErrorCategory.TRANSIENT

        exception_type = type(exception).__name__
        if any(x in exception_type for x in ['Connection', 'Timeout', 'Network']):
            return ErrorCategory.TRANSIENT
        if any(x in exception_type for x in ['Validation', 'Value']):
            return ErrorCategory.VALIDATION

        return ErrorCategory.SYSTEM

    def _assess_severity(self, exception: BaseException, category: ErrorCategory) -> ErrorSeverity:
        """Assess error severity based on exception and category."""
        if category in (ErrorCategory.AUTHENTICATION, ErrorCategory.EXECUTION):
            return ErrorSeverity.HIGH

        if category in (ErrorCategory.TRANSIENT, ErrorCategory.SYSTEM):
            return ErrorSeverity.MEDIUM

        return ErrorSeverity.LOW

    def _is_burst(self, component: str) -> bool:
        """Record an error for ``component`` and report whether it is bursting."""
        now = datetime.now(timezone.utc)
        cutoff = now - self._burst_window

        window = [t for t in self._error_window.get(component, []) if t > cutoff]
        window.append(now)
        self._error_window[component] = window

        return len(window) >= self._burst_threshold

    async def _publish_error_event(self, error: ErrorRecord) -> None:
        if self.event_bus is None:
            return
        try:
            await self.event_bus.publish(EventType.STRATEGY_ERROR.value, error.to_dict())
        except Exception as e:
            logger.warning(f"Failed to publish error event: {e}")

    def get_error_count(self, component: str) -> int:
        """Errors recorded for ``component`` inside the current burst window."""
        cutoff = datetime.now(timezone.utc) - self._burst_window
        return len([t for t in self._error_window.get(component, []) if t > cutoff])

    def get_error_stats(self) -> Dict[str, Any]:
        """Get error statistics."""
        return {
            "total_errors": len(self._errors),
            "alerts": self._alerts,
            "by_category": {cat.value: count for cat, count in self._error_counts.items()},
            "recent_errors": [e.to_dict() for e in self._errors[-10:]],
        }

    def get_errors(
        self,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        component: Optional[str] = None,
        limit: int = 100,
    ) -> List[ErrorRecord]:
        """Get filtered error history."""
        errors = self._errors

        if category:
            errors = [e for e in errors if e.category == category]
        if severity:
            errors = [e for e in errors if e.severity == severity]
        if component:
            errors = [e for e in errors if e.component == component]

        return errors[-limit:]

    def clear(self) -> None:
        self._errors = []
        self._error_counts = {cat: 0 for cat in ErrorCategory}
        self._error_window.clear()
