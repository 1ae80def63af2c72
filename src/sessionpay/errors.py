"""
SessionPay error types.

Specific exceptions for different failure modes, enabling callers
to handle each case appropriately (retry, surface, alert, etc.).
"""

from __future__ import annotations


class SessionPayError(Exception):
    """Base error for all SessionPay operations."""
    pass


# Store errors
class StoreError(SessionPayError):
    """Base error for capability store failures."""
    pass


class NotFoundError(StoreError):
    """No subscription exists with the given id."""
    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")


class StoreUnavailableError(StoreError):
    """Underlying persistence failed. Safe to retry."""
    pass


class CredentialError(StoreError):
    """A sealed delegate credential could not be opened with the configured vault key."""
    pass


# Grant errors
class GrantError(SessionPayError):
    """Base error for grant issuance and lifecycle."""
    pass


class InvalidGrantError(GrantError):
    """Grant parameters or lifecycle transition are invalid."""
    pass


class GrantNotApprovedError(GrantError):
    """On-ledger allowance does not cover the approved ceiling."""
    def __init__(self, allowance: int, ceiling: int):
        self.allowance = allowance
        self.ceiling = ceiling
        super().__init__(f"On-ledger allowance {allowance} is below approved ceiling {ceiling}")


# Charge errors
class ChargeError(SessionPayError):
    """Base error for charge attempts."""
    pass


class NotDueError(ChargeError):
    """Subscription is not chargeable right now."""
    pass


class AlreadyInProgressError(ChargeError):
    """Another charge attempt holds this subscription."""
    pass


class VerificationMismatchError(ChargeError):
    """Transfer was accepted but the source balance did not move enough."""
    def __init__(self, expected: int, observed: int):
        self.expected = expected
        self.observed = observed
        super().__init__(f"Balance moved by {observed}, expected at least {expected}")


# Ledger errors
class LedgerError(SessionPayError):
    """Base error for ledger client failures."""
    pass


class TransientNetworkError(LedgerError):
    """Ledger call failed in a way that may succeed if retried."""
    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class StaleAnchorError(TransientNetworkError):
    """Submission was signed against an anchor the ledger no longer accepts."""
    pass


class PermanentLedgerError(LedgerError):
    """Ledger rejected the request (bad credential, allowance, account)."""
    pass


class InsufficientAllowanceError(PermanentLedgerError):
    """Delegate is not authorized to move the requested amount."""
    pass


class InsufficientFundsError(PermanentLedgerError):
    """Source account does not hold enough of the asset."""
    pass


# Audit errors
class AuditIntegrityError(SessionPayError):
    """The audit trail's hash chain does not verify."""
    pass
