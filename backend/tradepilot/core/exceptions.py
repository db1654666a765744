"""
Exception taxonomy for the TradePilot engine.

Validation errors are raised synchronously to control-surface callers.
Order rejections are raised by the order gateway's pre-trade checks and
are treated as "skip this decision" by the pipeline.
"""

from typing import Optional


class TradePilotError(Exception):
    """Base class for engine errors."""
    pass


# =============================================================================
# Validation errors
# =============================================================================

class ValidationError(TradePilotError):
    """Raised when a caller supplies an invalid request."""
    pass


class InvalidAmount(ValidationError):
    """Raised when a capital amount is negative or not a number."""
    pass


class ZeroCapitalNotAllowed(ValidationError):
    """Raised when locking zero capital on an account with running strategies."""
    pass


class InvalidAllocation(ValidationError):
    """Raised when an allocation percentage or mode is out of range."""
    pass


class StrategyNotFound(ValidationError):
    """Raised for an unknown strategy id."""
    pass


class AccountNotFound(ValidationError):
    """Raised for an unknown brokerage account id."""
    pass


class AccountAlreadyRegistered(ValidationError):
    """Raised when registering an account id that is already in use."""
    pass


class UnsupportedVenue(ValidationError):
    """Raised when no gateway implementation is registered for a venue."""
    pass


class PositionNotFound(TradePilotError):
    """Raised for a position id that is not (or no longer) open."""
    pass


class OwnershipViolation(TradePilotError):
    """Raised when a strategy tries to modify a position it does not own."""

    def __init__(self, position_id: str, owner_id: str, actor_id: str):
        self.position_id = position_id
        self.owner_id = owner_id
        self.actor_id = actor_id
        super().__init__(
            f"Strategy {actor_id} cannot modify position {position_id} owned by {owner_id}"
        )


# =============================================================================
# Pre-trade rejections
# =============================================================================

class OrderRejected(TradePilotError):
    """Base class for orders refused before submission."""

    reason = "rejected"

    def __init__(self, message: str, account_id: Optional[str] = None):
        self.account_id = account_id
        super().__init__(message)


class MarketClosed(OrderRejected):
    reason = "market_closed"


class AccountRestricted(OrderRejected):
    reason = "account_restricted"


class InsufficientBuyingPower(OrderRejected):
    reason = "insufficient_buying_power"


class CircuitOpen(OrderRejected):
    """Raised when the account's authentication circuit breaker has tripped."""

    reason = "circuit_open"


class CredentialsNotConfigured(OrderRejected):
    reason = "credentials_not_configured"


# =============================================================================
# Warnings
# =============================================================================

class CapitalRiskWarning(UserWarning):
    """Locked capital exceeds the recommended share of equity. Returned, not raised."""

    def __init__(self, account_id: str, locked: float, equity: float, ceiling: float):
        self.account_id = account_id
        self.locked = locked
        self.equity = equity
        self.ceiling = ceiling
        pct = (locked / equity * 100) if equity > 0 else float("inf")
        super().__init__(
            f"Locked capital ${locked:,.2f} is {pct:.1f}% of equity "
            f"(recommended max ${ceiling:,.2f})"
        )

    @property
    def message(self) -> str:
        return str(self)
