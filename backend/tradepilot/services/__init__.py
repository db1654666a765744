"""
Services Layer
TradePilot Strategy Execution Engine

Bookkeeping and support services shared by the execution layer:
    - CapitalLedger: equity, locked and reserve capital per account
    - PositionLedger: strategy-owned positions and closed history
    - SignalSourceManager: external signal aggregation
    - StateStore: saved positions for resume after restart
    - ErrorHandler / AuditTrail: error bookkeeping and audit events
"""

from tradepilot.services.audit_trail import AuditEvent, AuditEventType, AuditTrail, FileAuditStorage
from tradepilot.services.capital_ledger import BrokerageAccount, CapitalLedger, CapitalUpdate
from tradepilot.services.error_handler import ErrorCategory, ErrorHandler, ErrorSeverity
from tradepilot.services.position_ledger import ClosedPosition, Position, PositionLedger
from tradepilot.services.signals import SignalSource, SignalSourceManager, StaticSignalSource
from tradepilot.services.state_store import SavedPosition, SavedState, StateStore


__all__ = [
    "AuditEvent",
    "AuditEventType",
    "AuditTrail",
    "FileAuditStorage",
    "BrokerageAccount",
    "CapitalLedger",
    "CapitalUpdate",
    "ErrorCategory",
    "ErrorHandler",
    "ErrorSeverity",
    "ClosedPosition",
    "Position",
    "PositionLedger",
    "SignalSource",
    "SignalSourceManager",
    "StaticSignalSource",
    "SavedPosition",
    "SavedState",
    "StateStore",
]
