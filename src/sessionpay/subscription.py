"""
Subscription records.

A Subscription is the durable capability record for one delegated grant:
who owns the funds, which session key may pull them, how much per period,
and every charge attempt made so far.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

from eth_utils import is_address, to_checksum_address

from .errors import InvalidGrantError


DEFAULT_PERIOD_SECONDS = 30 * 24 * 60 * 60


class SubscriptionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ChargeOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class ChargeRecord:
    """One entry of a subscription's append-only charge history."""

    timestamp: int
    amount: int
    outcome: str
    attempt_id: str
    tx_ref: Optional[str] = None
    pre_balance: Optional[int] = None
    reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome != ChargeOutcome.PENDING.value

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "amount": self.amount,
            "outcome": self.outcome,
            "attempt_id": self.attempt_id,
            "tx_ref": self.tx_ref,
            "pre_balance": self.pre_balance,
            "reason": self.reason,
        }


@dataclass
class Subscription:
    """A delegated recurring-charge capability."""

    id: str
    owner_account: str
    owner_source_account: str
    delegate_account: str
    period_amount: int
    periods_at_creation: int
    periods_remaining: int
    approved_ceiling: int
    period_seconds: int
    created_at: int
    next_charge_at: int
    status: str = SubscriptionStatus.PENDING.value
    activated_at: Optional[int] = None
    revoked_reason: Optional[str] = None
    charge_history: list[ChargeRecord] = field(default_factory=list)
    delegate_credential: Optional[str] = field(default=None, repr=False)

    def not_due_reason(self, now: int) -> Optional[str]:
        """Return why this subscription cannot be charged at ``now``, or None."""
        if self.status != SubscriptionStatus.ACTIVE.value:
            return f"Subscription is {self.status}"
        if self.periods_remaining <= 0:
            return "No periods remaining"
        if now < self.next_charge_at:
            return f"Next charge not due until {self.next_charge_at}"
        return None

    def open_attempt(self) -> Optional[ChargeRecord]:
        """Latest pending entry of an attempt that never reached a terminal entry."""
        if not self.charge_history:
            return None
        last = self.charge_history[-1]
        if last.is_terminal:
            return None
        return last

    def attempt_refs(self, attempt_id: str) -> list[str]:
        """Distinct transfer references recorded for one attempt, oldest first."""
        refs: list[str] = []
        for record in self.charge_history:
            if record.attempt_id == attempt_id and record.tx_ref and record.tx_ref not in refs:
                refs.append(record.tx_ref)
        return refs

    def attempt_pre_balance(self, attempt_id: str) -> Optional[int]:
        for record in self.charge_history:
            if record.attempt_id == attempt_id and record.pre_balance is not None:
                return record.pre_balance
        return None

    def successful_charges(self) -> list[ChargeRecord]:
        return [r for r in self.charge_history if r.outcome == ChargeOutcome.SUCCESS.value]

    def with_charge(self, record: ChargeRecord, **changes: Any) -> "Subscription":
        return replace(self, charge_history=[*self.charge_history, record], **changes)

    def to_public_dict(self) -> dict:
        """Response-safe view. Never includes the delegate credential."""
        return {
            "id": self.id,
            "owner_account": self.owner_account,
            "owner_source_account": self.owner_source_account,
            "delegate_account": self.delegate_account,
            "status": self.status,
            "period_amount": self.period_amount,
            "periods_at_creation": self.periods_at_creation,
            "periods_remaining": self.periods_remaining,
            "approved_ceiling": self.approved_ceiling,
            "period_seconds": self.period_seconds,
            "created_at": self.created_at,
            "activated_at": self.activated_at,
            "next_charge_at": self.next_charge_at,
            "revoked_reason": self.revoked_reason,
            "charge_history": [
                {k: v for k, v in r.to_dict().items() if k != "pre_balance"}
                for r in self.charge_history
            ],
        }


def new_subscription_id() -> str:
    return f"sub_{secrets.token_hex(12)}"


def new_attempt_id() -> str:
    return f"att_{secrets.token_hex(8)}"


def normalize_account(account: str, field_name: str = "account") -> str:
    value = (account or "").strip()
    if not is_address(value):
        raise InvalidGrantError(f"Invalid {field_name}: {account!r}")
    return to_checksum_address(value)
