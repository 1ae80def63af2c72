"""
Grant issuance, the one-time setup of a delegated recurring charge.

Mints a fresh session key, records the pending capability before any
ledger interaction, and hands back only the public side. The payer's
approval transaction is built and signed elsewhere; once it is confirmed
the caller activates the grant here.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from eth_account import Account

from .audit import AuditTrail, EventType
from .errors import GrantNotApprovedError, InvalidGrantError
from .ledger import LedgerClient
from .money import ceiling_for
from .store import SubscriptionStore
from .subscription import (
    DEFAULT_PERIOD_SECONDS,
    Subscription,
    SubscriptionStatus,
    new_subscription_id,
    normalize_account,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GrantReceipt:
    """What the caller needs to build the payer's approval transaction."""

    subscription_id: str
    delegate_account: str
    approved_ceiling: int

    def to_dict(self) -> dict:
        return {
            "subscription_id": self.subscription_id,
            "delegate_account": self.delegate_account,
            "approved_ceiling": self.approved_ceiling,
        }


class GrantIssuer:
    """Creates, activates and revokes subscription grants."""

    def __init__(
        self,
        store: SubscriptionStore,
        audit: AuditTrail,
        ledger: Optional[LedgerClient] = None,
        period_seconds: int = DEFAULT_PERIOD_SECONDS,
        first_charge_delay_seconds: int = 0,
    ):
        self.store = store
        self.audit = audit
        self.ledger = ledger
        self.period_seconds = period_seconds
        self.first_charge_delay_seconds = first_charge_delay_seconds

    def issue(
        self,
        owner_account: str,
        source_account: str,
        period_amount: int,
        periods: int,
        now: Optional[int] = None,
    ) -> GrantReceipt:
        if isinstance(period_amount, bool) or not isinstance(period_amount, int) or period_amount <= 0:
            raise InvalidGrantError("period_amount must be a positive integer of base units")
        if isinstance(periods, bool) or not isinstance(periods, int) or periods <= 0:
            raise InvalidGrantError("periods must be a positive integer")
        owner = normalize_account(owner_account, "owner_account")
        source = normalize_account(source_account, "source_account")

        now = int(time.time()) if now is None else int(now)
        delegate = Account.create()
        subscription = Subscription(
            id=new_subscription_id(),
            owner_account=owner,
            owner_source_account=source,
            delegate_account=delegate.address,
            delegate_credential=delegate.key.hex(),
            period_amount=period_amount,
            periods_at_creation=periods,
            periods_remaining=periods,
            approved_ceiling=ceiling_for(period_amount, periods),
            period_seconds=self.period_seconds,
            created_at=now,
            next_charge_at=now,
            status=SubscriptionStatus.PENDING.value,
        )
        self.store.create(subscription)

        self.audit.log(
            EventType.GRANT_ISSUED,
            subscription_id=subscription.id,
            owner=owner,
            delegate=delegate.address,
            amount=subscription.approved_ceiling,
            details={
                "source_account": source,
                "period_amount": period_amount,
                "periods": periods,
                "period_seconds": self.period_seconds,
            },
        )
        logger.info(
            "Grant issued: %s (owner: %s, delegate: %s, %d x %d)",
            subscription.id, owner, delegate.address, periods, period_amount,
        )
        return GrantReceipt(
            subscription_id=subscription.id,
            delegate_account=delegate.address,
            approved_ceiling=subscription.approved_ceiling,
        )

    def activate(
        self,
        subscription_id: str,
        now: Optional[int] = None,
        verify_allowance: bool = False,
    ) -> Subscription:
        """
        Mark a grant active after the payer's approval is confirmed.

        Idempotent: an already-active grant is returned unchanged.
        """
        now = int(time.time()) if now is None else int(now)
        current = self.store.get(subscription_id)
        if current.status == SubscriptionStatus.ACTIVE.value:
            return current
        if current.status != SubscriptionStatus.PENDING.value:
            raise InvalidGrantError(f"Cannot activate a {current.status} subscription")

        if verify_allowance:
            if self.ledger is None:
                raise InvalidGrantError("Allowance verification needs a ledger client")
            allowance = self.ledger.get_allowance(current.owner_source_account, current.delegate_account)
            if allowance < current.approved_ceiling:
                raise GrantNotApprovedError(allowance, current.approved_ceiling)

        first_charge_at = now + self.first_charge_delay_seconds
        activated = {"changed": False}

        def mutation(sub: Subscription) -> Subscription:
            if sub.status == SubscriptionStatus.ACTIVE.value:
                return sub
            if sub.status != SubscriptionStatus.PENDING.value:
                raise InvalidGrantError(f"Cannot activate a {sub.status} subscription")
            activated["changed"] = True
            sub.status = SubscriptionStatus.ACTIVE.value
            sub.activated_at = now
            sub.next_charge_at = max(sub.next_charge_at, first_charge_at)
            return sub

        updated = self.store.update(subscription_id, mutation)
        if activated["changed"]:
            self.audit.log(
                EventType.GRANT_ACTIVATED,
                subscription_id=subscription_id,
                owner=updated.owner_account,
                delegate=updated.delegate_account,
                details={"next_charge_at": updated.next_charge_at},
            )
            logger.info("Grant activated: %s (first charge at %d)", subscription_id, updated.next_charge_at)
        return updated

    def revoke(self, subscription_id: str, reason: str = "revoked by owner") -> Subscription:
        """Cancel a grant. Idempotent on an already-revoked grant."""
        revoked = {"changed": False}

        def mutation(sub: Subscription) -> Subscription:
            if sub.status == SubscriptionStatus.REVOKED.value:
                return sub
            if sub.status == SubscriptionStatus.EXPIRED.value:
                raise InvalidGrantError("Cannot revoke an expired subscription")
            revoked["changed"] = True
            sub.status = SubscriptionStatus.REVOKED.value
            sub.revoked_reason = reason
            return sub

        updated = self.store.update(subscription_id, mutation)
        if revoked["changed"]:
            self.audit.log(
                EventType.GRANT_REVOKED,
                subscription_id=subscription_id,
                owner=updated.owner_account,
                delegate=updated.delegate_account,
                reason=reason,
            )
            logger.info("Grant revoked: %s (%s)", subscription_id, reason)
        return updated
