"""
SessionPay — Delegated-authority recurring billing.

A payer approves a single-purpose session key once, for a bounded total:
Grant issued → Payer approves → Engine charges one verified period at a time.
"""

__version__ = "0.1.0"

from .errors import (
    AlreadyInProgressError,
    InvalidGrantError,
    LedgerError,
    NotDueError,
    NotFoundError,
    PermanentLedgerError,
    SessionPayError,
    StoreUnavailableError,
    TransientNetworkError,
    VerificationMismatchError,
)
from .subscription import ChargeRecord, Subscription, SubscriptionStatus
from .store import SubscriptionStore
from .ledger import Finality, LedgerClient, LedgerClientConfig
from .local_ledger import LocalLedger
from .evm_ledger import JsonRpcConfig, JsonRpcLedger
from .issuer import GrantIssuer, GrantReceipt
from .executor import ChargeExecutor, ChargeFailure, ChargeResult, ChargeState, ExecutorConfig
from .scheduler import ChargeScheduler, SweepSummary
from .settings import Settings
from .engine import BillingEngine
from .audit import AuditTrail, EventType

__all__ = [
    "SessionPayError", "NotFoundError", "StoreUnavailableError", "NotDueError",
    "AlreadyInProgressError", "InvalidGrantError", "LedgerError", "TransientNetworkError",
    "PermanentLedgerError", "VerificationMismatchError",
    "Subscription", "SubscriptionStatus", "ChargeRecord", "SubscriptionStore",
    "LedgerClient", "LedgerClientConfig", "Finality", "LocalLedger",
    "JsonRpcConfig", "JsonRpcLedger",
    "GrantIssuer", "GrantReceipt",
    "ChargeExecutor", "ExecutorConfig", "ChargeResult", "ChargeState", "ChargeFailure",
    "ChargeScheduler", "SweepSummary",
    "Settings", "BillingEngine",
    "AuditTrail", "EventType",
]
