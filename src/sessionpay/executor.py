"""
Charge execution for due subscriptions.

Flow for one attempt:
1. Atomically re-check due-ness and take the charge lease
2. Re-verify any attempt a previous run left unfinished
3. Snapshot the source balance
4. Record a pending entry, sign one period's transfer, record its
   reference, then broadcast it
5. Wait for finality and re-read the source balance
6. Settle only if the balance dropped by at least the period amount

Every ledger failure becomes a ChargeResult. Only a verified balance
movement advances the schedule.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .audit import AuditTrail, EventType
from .errors import (
    AlreadyInProgressError,
    CredentialError,
    LedgerError,
    NotDueError,
    NotFoundError,
    PermanentLedgerError,
    StoreUnavailableError,
    TransientNetworkError,
    VerificationMismatchError,
)
from .ledger import Finality, LedgerClient
from .store import SubscriptionStore
from .subscription import (
    ChargeOutcome,
    ChargeRecord,
    Subscription,
    SubscriptionStatus,
    new_attempt_id,
    normalize_account,
)

logger = logging.getLogger(__name__)


class ChargeState(str, Enum):
    SCHEDULED = "scheduled"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    VERIFYING = "verifying"
    SETTLED = "settled"
    FAILED = "failed"


class ChargeFailure(str, Enum):
    NOT_FOUND = "not_found"
    NOT_DUE = "not_due"
    ALREADY_IN_PROGRESS = "already_in_progress"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    VERIFICATION_MISMATCH = "verification_mismatch"
    STORE_UNAVAILABLE = "store_unavailable"
    PENDING_CONFIRMATION = "pending_confirmation"


@dataclass
class ChargeResult:
    """Definitive outcome of one charge invocation."""

    ok: bool
    subscription_id: str
    state: str
    amount_charged: int = 0
    periods_remaining: Optional[int] = None
    next_charge_at: Optional[int] = None
    tx_ref: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "subscription_id": self.subscription_id,
            "state": self.state,
            "amount_charged": self.amount_charged,
            "periods_remaining": self.periods_remaining,
            "next_charge_at": self.next_charge_at,
            "tx_ref": self.tx_ref,
            "error": self.error,
            "reason": self.reason,
        }


@dataclass
class ExecutorConfig:
    merchant_account: str
    finality_timeout_seconds: Optional[float] = None


class ChargeExecutor:
    """Runs one verified charge per due billing period."""

    def __init__(
        self,
        store: SubscriptionStore,
        ledger: LedgerClient,
        audit: AuditTrail,
        config: ExecutorConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.ledger = ledger
        self.audit = audit
        self.config = config
        self.merchant_account = normalize_account(config.merchant_account, "merchant_account")
        self.clock = clock

    def charge(self, subscription_id: str, now: Optional[int] = None) -> ChargeResult:
        now = int(self.clock()) if now is None else int(now)
        try:
            lease, sub = self.store.acquire_charge_lease(subscription_id, now)
        except NotFoundError as e:
            return self._rejected(subscription_id, ChargeFailure.NOT_FOUND, str(e))
        except NotDueError as e:
            logger.debug("Charge on %s not due: %s", subscription_id, e)
            return self._rejected(subscription_id, ChargeFailure.NOT_DUE, str(e))
        except AlreadyInProgressError as e:
            return self._rejected(subscription_id, ChargeFailure.ALREADY_IN_PROGRESS, str(e))
        except StoreUnavailableError as e:
            logger.warning("Store unavailable while charging %s: %s", subscription_id, e)
            return self._rejected(subscription_id, ChargeFailure.STORE_UNAVAILABLE, str(e))
        except CredentialError as e:
            logger.error("Cannot open delegate credential for %s: %s", subscription_id, e)
            return self._rejected(subscription_id, ChargeFailure.PERMANENT, str(e))

        try:
            return self._run_attempt(sub, lease)
        except AlreadyInProgressError as e:
            return self._rejected(subscription_id, ChargeFailure.ALREADY_IN_PROGRESS, str(e))
        except StoreUnavailableError as e:
            logger.warning("Store unavailable mid-charge on %s: %s", subscription_id, e)
            return self._rejected(subscription_id, ChargeFailure.STORE_UNAVAILABLE, str(e))
        except Exception as e:
            # Any open attempt stays in history and is re-verified next time.
            logger.exception("Unexpected error while charging %s", subscription_id)
            return self._unresolved(
                sub, None, ChargeState.FAILED, ChargeFailure.PERMANENT,
                f"Unexpected error: {type(e).__name__}: {e}",
            )
        finally:
            try:
                self.store.release_charge_lease(subscription_id, lease)
            except StoreUnavailableError:
                logger.warning("Could not release charge lease on %s; it will expire", subscription_id)

    # ── Attempt ───────────────────────────────────────────────────

    def _run_attempt(self, sub: Subscription, lease: str) -> ChargeResult:
        open_record = sub.open_attempt()
        if open_record is not None:
            recovered = self._recover(sub, open_record, lease)
            if recovered is not None:
                return recovered

        attempt_id = new_attempt_id()
        self._audit(
            EventType.CHARGE_ATTEMPTED,
            subscription_id=sub.id,
            owner=sub.owner_account,
            delegate=sub.delegate_account,
            amount=sub.period_amount,
            details={"attempt_id": attempt_id, "scheduled_at": sub.next_charge_at},
        )

        try:
            pre_balance = self.ledger.get_balance(sub.owner_source_account)
        except LedgerError as e:
            return self._fail(sub, lease, attempt_id, _failure_kind(e), f"Pre-charge balance read failed: {e}")

        try:
            self._append(
                sub,
                lease,
                self._record(sub, attempt_id, ChargeOutcome.PENDING, pre_balance=pre_balance, reason="submitting"),
                require_active=True,
            )
        except NotDueError as e:
            logger.info("Charge on %s cancelled before submission: %s", sub.id, e)
            return self._rejected(sub.id, ChargeFailure.NOT_DUE, str(e))

        signed_refs: list[str] = []

        def persist_signed(tx_ref: str) -> None:
            # Durable before broadcast, so a crash after it can always be re-checked.
            self._append(
                sub,
                lease,
                self._record(
                    sub, attempt_id, ChargeOutcome.PENDING,
                    tx_ref=tx_ref, pre_balance=pre_balance, reason="signed",
                ),
            )
            signed_refs.append(tx_ref)

        try:
            tx_ref = self.ledger.submit_delegated_transfer(
                source_account=sub.owner_source_account,
                destination_account=self.merchant_account,
                delegate_credential=sub.delegate_credential,
                amount=sub.period_amount,
                on_signed=persist_signed,
            )
        except (AlreadyInProgressError, StoreUnavailableError):
            raise
        except PermanentLedgerError as e:
            return self._fail(sub, lease, attempt_id, ChargeFailure.PERMANENT, f"Submission failed: {e}")
        except Exception as e:
            if signed_refs:
                # A signed transfer may have reached the ledger; do not record a failure.
                return self._unresolved(
                    sub, signed_refs[-1], ChargeState.SUBMITTING, _failure_kind(e),
                    f"Submission outcome unknown ({e}); it will be re-verified on the next attempt",
                )
            if isinstance(e, LedgerError):
                return self._fail(sub, lease, attempt_id, _failure_kind(e), f"Submission failed: {e}")
            logger.exception("Unexpected submission failure on %s", sub.id)
            return self._fail(
                sub, lease, attempt_id, ChargeFailure.PERMANENT,
                f"Submission error: {type(e).__name__}: {e}",
            )

        if tx_ref not in signed_refs:
            self._append(
                sub,
                lease,
                self._record(
                    sub, attempt_id, ChargeOutcome.PENDING,
                    tx_ref=tx_ref, pre_balance=pre_balance, reason="submitted",
                ),
            )
        self._audit(
            EventType.CHARGE_SUBMITTED,
            subscription_id=sub.id,
            delegate=sub.delegate_account,
            amount=sub.period_amount,
            tx_ref=tx_ref,
            details={"attempt_id": attempt_id},
        )
        return self._verify_and_settle(sub, lease, attempt_id, tx_ref, pre_balance)

    def _verify_and_settle(
        self,
        sub: Subscription,
        lease: str,
        attempt_id: str,
        tx_ref: str,
        pre_balance: int,
        finality: Optional[Finality] = None,
    ) -> ChargeResult:
        if finality is None:
            try:
                finality = self.ledger.wait_for_finality(
                    tx_ref, timeout_seconds=self.config.finality_timeout_seconds,
                )
            except LedgerError as e:
                return self._unresolved(sub, tx_ref, ChargeState.SUBMITTED, _failure_kind(e), str(e))

        if finality == Finality.PENDING:
            return self._unresolved(
                sub, tx_ref, ChargeState.SUBMITTED, ChargeFailure.PENDING_CONFIRMATION,
                "Transfer not yet final; it will be re-verified on the next attempt",
            )
        if finality == Finality.FAILED:
            return self._fail(
                sub, lease, attempt_id, ChargeFailure.PERMANENT, "Transfer failed on ledger", tx_ref=tx_ref,
            )

        try:
            post_balance = self.ledger.get_balance(sub.owner_source_account)
        except LedgerError as e:
            return self._unresolved(
                sub, tx_ref, ChargeState.VERIFYING, _failure_kind(e), f"Post-charge balance read failed: {e}",
            )

        moved = pre_balance - post_balance
        if moved < sub.period_amount:
            mismatch = VerificationMismatchError(sub.period_amount, moved)
            logger.warning("Verification mismatch on %s (%s): %s", sub.id, tx_ref, mismatch)
            self._audit(
                EventType.VERIFICATION_MISMATCH,
                subscription_id=sub.id,
                amount=sub.period_amount,
                tx_ref=tx_ref,
                success=False,
                reason=str(mismatch),
                details={"pre_balance": pre_balance, "post_balance": post_balance},
            )
            return self._fail(
                sub, lease, attempt_id, ChargeFailure.VERIFICATION_MISMATCH, str(mismatch), tx_ref=tx_ref,
            )

        return self._settle(sub, lease, attempt_id, tx_ref)

    def _settle(self, sub: Subscription, lease: str, attempt_id: str, tx_ref: Optional[str]) -> ChargeResult:
        timestamp = int(self.clock())

        def mutation(current: Subscription) -> Subscription:
            periods_remaining = current.periods_remaining - 1
            changes = {
                "periods_remaining": periods_remaining,
                "next_charge_at": current.next_charge_at + current.period_seconds,
            }
            if periods_remaining == 0 and current.status == SubscriptionStatus.ACTIVE.value:
                changes["status"] = SubscriptionStatus.EXPIRED.value
            record = ChargeRecord(
                timestamp=timestamp,
                amount=current.period_amount,
                outcome=ChargeOutcome.SUCCESS.value,
                attempt_id=attempt_id,
                tx_ref=tx_ref,
            )
            return current.with_charge(record, **changes)

        updated = self.store.update(sub.id, mutation, lease_token=lease)
        self._audit(
            EventType.CHARGE_SETTLED,
            subscription_id=sub.id,
            owner=sub.owner_account,
            delegate=sub.delegate_account,
            amount=sub.period_amount,
            tx_ref=tx_ref,
            details={
                "attempt_id": attempt_id,
                "periods_remaining": updated.periods_remaining,
                "next_charge_at": updated.next_charge_at,
            },
        )
        if updated.status == SubscriptionStatus.EXPIRED.value:
            self._audit(EventType.SUBSCRIPTION_EXPIRED, subscription_id=sub.id)
            logger.info("Subscription %s has expired (0 periods remaining)", sub.id)
        logger.info(
            "Charge settled on %s: %d (tx %s, %d periods remaining)",
            sub.id, sub.period_amount, tx_ref, updated.periods_remaining,
        )
        return ChargeResult(
            ok=True,
            subscription_id=sub.id,
            state=ChargeState.SETTLED.value,
            amount_charged=sub.period_amount,
            periods_remaining=updated.periods_remaining,
            next_charge_at=updated.next_charge_at,
            tx_ref=tx_ref,
        )

    # ── Recovery ──────────────────────────────────────────────────

    def _recover(
        self,
        sub: Subscription,
        open_record: ChargeRecord,
        lease: str,
    ) -> Optional[ChargeResult]:
        """Resolve an attempt a previous run left pending. None means start fresh."""
        attempt_id = open_record.attempt_id
        refs = sub.attempt_refs(attempt_id)
        pre_balance = sub.attempt_pre_balance(attempt_id)
        logger.info("Re-verifying interrupted attempt %s on %s (%d signed)", attempt_id, sub.id, len(refs))

        if not refs:
            # References are recorded before broadcast: nothing reached the ledger.
            self._fail(
                sub, lease, attempt_id, ChargeFailure.TRANSIENT,
                "Attempt interrupted before a transfer was signed",
            )
            return None

        still_pending = None
        for tx_ref in refs:
            try:
                finality = self.ledger.confirm(tx_ref)
            except LedgerError as e:
                return self._unresolved(
                    sub, tx_ref, ChargeState.SUBMITTED, _failure_kind(e),
                    f"Could not re-check interrupted transfer: {e}",
                )
            if finality == Finality.FINALIZED:
                return self._verify_and_settle(
                    sub, lease, attempt_id, tx_ref, pre_balance or 0, finality=finality,
                )
            if finality == Finality.PENDING:
                still_pending = tx_ref

        if still_pending is not None:
            return self._verify_and_settle(
                sub, lease, attempt_id, still_pending, pre_balance or 0, finality=Finality.PENDING,
            )

        self._fail(
            sub, lease, attempt_id, ChargeFailure.PERMANENT,
            "Interrupted transfer failed on ledger", tx_ref=refs[-1],
        )
        return None

    # ── Helpers ───────────────────────────────────────────────────

    def _audit(self, event_type: EventType, **fields) -> None:
        try:
            self.audit.log(event_type, **fields)
        except OSError:
            logger.exception(
                "Audit write failed for %s on %s", event_type.value, fields.get("subscription_id"),
            )

    def _record(
        self,
        sub: Subscription,
        attempt_id: str,
        outcome: ChargeOutcome,
        tx_ref: Optional[str] = None,
        pre_balance: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> ChargeRecord:
        return ChargeRecord(
            timestamp=int(self.clock()),
            amount=sub.period_amount,
            outcome=outcome.value,
            attempt_id=attempt_id,
            tx_ref=tx_ref,
            pre_balance=pre_balance,
            reason=reason,
        )

    def _append(
        self,
        sub: Subscription,
        lease: str,
        record: ChargeRecord,
        require_active: bool = False,
    ) -> Subscription:
        def mutation(current: Subscription) -> Subscription:
            if require_active and current.status != SubscriptionStatus.ACTIVE.value:
                raise NotDueError(f"Subscription is {current.status}")
            return current.with_charge(record)

        return self.store.update(sub.id, mutation, lease_token=lease)

    def _fail(
        self,
        sub: Subscription,
        lease: str,
        attempt_id: str,
        kind: ChargeFailure,
        reason: str,
        tx_ref: Optional[str] = None,
    ) -> ChargeResult:
        record = self._record(sub, attempt_id, ChargeOutcome.FAILED, tx_ref=tx_ref, reason=reason)
        updated = self._append(sub, lease, record)
        self._audit(
            EventType.CHARGE_FAILED,
            subscription_id=sub.id,
            delegate=sub.delegate_account,
            amount=sub.period_amount,
            tx_ref=tx_ref,
            success=False,
            reason=reason,
            details={"attempt_id": attempt_id, "error": kind.value},
        )
        logger.warning("Charge failed on %s (%s): %s", sub.id, kind.value, reason)
        return ChargeResult(
            ok=False,
            subscription_id=sub.id,
            state=ChargeState.FAILED.value,
            periods_remaining=updated.periods_remaining,
            next_charge_at=updated.next_charge_at,
            tx_ref=tx_ref,
            error=kind.value,
            reason=reason,
        )

    def _unresolved(
        self,
        sub: Subscription,
        tx_ref: Optional[str],
        state: ChargeState,
        kind: ChargeFailure,
        reason: str,
    ) -> ChargeResult:
        """Attempt stays open in history; the next invocation re-verifies it."""
        logger.warning("Charge on %s left unresolved (%s): %s", sub.id, kind.value, reason)
        return ChargeResult(
            ok=False,
            subscription_id=sub.id,
            state=state.value,
            periods_remaining=sub.periods_remaining,
            next_charge_at=sub.next_charge_at,
            tx_ref=tx_ref,
            error=kind.value,
            reason=reason,
        )

    def _rejected(self, subscription_id: str, kind: ChargeFailure, reason: str) -> ChargeResult:
        if kind != ChargeFailure.NOT_DUE:
            self._audit(
                EventType.CHARGE_REJECTED,
                subscription_id=subscription_id,
                success=False,
                reason=reason,
                details={"error": kind.value},
            )
        return ChargeResult(
            ok=False,
            subscription_id=subscription_id,
            state=ChargeState.SCHEDULED.value,
            error=kind.value,
            reason=reason,
        )


def _failure_kind(error: Exception) -> ChargeFailure:
    if isinstance(error, TransientNetworkError):
        return ChargeFailure.TRANSIENT
    return ChargeFailure.PERMANENT
