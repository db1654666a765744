"""
Authentication circuit breaker.

Counts authentication failures per account. Once an account reaches the
limit it is considered open: all trading and sync for it is suppressed
until its credentials are updated.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from loguru import logger


@dataclass
class BreakerState:
    failures: int = 0
    tripped_at: Optional[datetime] = None
    last_error: Optional[str] = None


class AuthCircuitBreaker:
    """Per-account authentication failure counter."""

    def __init__(self, max_failures: int = 3):
        self.max_failures = max_failures
        self._states: Dict[str, BreakerState] = {}

    def _state(self, account_id: str) -> BreakerState:
        state = self._states.get(account_id)
        if state is None:
            state = BreakerState()
            self._states[account_id] = state
        return state

    def record_failure(self, account_id: str, error: str = "") -> bool:
        """
        Count one authentication failure.

        Returns:
            True if this failure tripped the breaker.
        """
        state = self._state(account_id)
        state.failures += 1
        state.last_error = error or state.last_error

        logger.warning(
            f"Authentication failure {state.failures}/{self.max_failures} for {account_id}: {error}"
        )

        if state.failures >= self.max_failures and state.tripped_at is None:
            state.tripped_at = datetime.now(timezone.utc)
            logger.critical(
                f"Circuit breaker OPEN for {account_id} after {state.failures} authentication "
                f"failures - trading and sync suspended until credentials are updated"
            )
            return True
        return False

    def record_success(self, account_id: str) -> None:
        """A successful verification closes the breaker."""
        state = self._states.get(account_id)
        if state and state.failures:
            logger.info(f"Authentication succeeded for {account_id}, failure count reset")
            self._states[account_id] = BreakerState()

    def reset(self, account_id: str) -> None:
        if account_id in self._states:
            logger.info(f"Circuit breaker reset for {account_id}")
        self._states.pop(account_id, None)

    def is_open(self, account_id: str) -> bool:
        state = self._states.get(account_id)
        return state is not None and state.failures >= self.max_failures

    def failures(self, account_id: str) -> int:
        state = self._states.get(account_id)
        return state.failures if state else 0

    def snapshot(self) -> Dict[str, Any]:
        return {
            account_id: {
                "failures": state.failures,
                "open": state.failures >= self.max_failures,
                "tripped_at": state.tripped_at.isoformat() if state.tripped_at else None,
                "last_error": state.last_error,
            }
            for account_id, state in self._states.items()
        }
