"""
Ledger client used by the charge engine.

Wraps a ledger backend with a bounded retry policy for transient failures
and the fresh-anchor rule for delegated transfers. A transfer being accepted
here is advisory only: the charge executor verifies balances itself.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, TypeVar

from eth_account import Account
from eth_account.signers.local import LocalAccount

from .errors import PermanentLedgerError, StaleAnchorError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Finality(str, Enum):
    FINALIZED = "finalized"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerAnchor:
    """Recent ledger reference a transfer is signed against."""

    reference: str
    height: int
    fetched_at: float
    fee_per_unit: int = 0

    def age(self, now: Optional[float] = None) -> float:
        return (time.time() if now is None else now) - self.fetched_at


@dataclass(frozen=True)
class DelegatedTransfer:
    """A transfer the delegate is asked to sign."""

    source_account: str
    destination_account: str
    amount: int


@dataclass(frozen=True)
class SignedTransfer:
    """A delegate-signed transfer whose reference is fixed before broadcast."""

    tx_ref: str
    nonce: int
    payload: Any


class LedgerBackend(Protocol):
    def get_allowance(self, source_account: str, delegate_account: str) -> int: ...

    def get_balance(self, account: str) -> int: ...

    def latest_anchor(self) -> LedgerAnchor: ...

    def next_nonce(self, delegate_account: str) -> int: ...

    def sign_delegated_transfer(
        self,
        transfer: DelegatedTransfer,
        signer: LocalAccount,
        anchor: LedgerAnchor,
        nonce: int,
    ) -> SignedTransfer: ...

    def broadcast(self, signed: SignedTransfer) -> str: ...

    def is_known(self, tx_ref: str) -> bool: ...

    def get_finality(self, tx_ref: str) -> Finality: ...


@dataclass
class LedgerClientConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    anchor_validity_seconds: float = 30.0
    finality_timeout_seconds: float = 60.0
    finality_poll_seconds: float = 2.0


@dataclass
class LedgerClient:
    """Retrying, anchor-aware front for a ledger backend."""

    backend: LedgerBackend
    config: LedgerClientConfig = field(default_factory=LedgerClientConfig)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.time

    def get_allowance(self, source_account: str, delegate_account: str) -> int:
        return self._with_retry(
            "get_allowance",
            lambda: self.backend.get_allowance(source_account, delegate_account),
        )

    def get_balance(self, account: str) -> int:
        return self._with_retry("get_balance", lambda: self.backend.get_balance(account))

    def confirm(self, tx_ref: str) -> Finality:
        return self._with_retry("confirm", lambda: self.backend.get_finality(tx_ref))

    def submit_delegated_transfer(
        self,
        source_account: str,
        destination_account: str,
        delegate_credential: str,
        amount: int,
        on_signed: Optional[Callable[[str], None]] = None,
    ) -> str:
        """
        Sign and submit a transfer authorized by the delegate credential.

        The delegate nonce is read once and every retry re-signs against it,
        so at most one of the signed variants can be applied. Before each
        retry the references already signed are looked up and a known one is
        returned instead of broadcasting again. ``on_signed`` receives each
        new reference before it is broadcast.
        """
        if amount <= 0:
            raise PermanentLedgerError("Transfer amount must be positive")
        signer = Account.from_key(delegate_credential)
        transfer = DelegatedTransfer(
            source_account=source_account,
            destination_account=destination_account,
            amount=int(amount),
        )
        nonce = self._with_retry("next_nonce", lambda: self.backend.next_nonce(signer.address))
        signed_refs: list[str] = []

        def submit_once() -> str:
            for ref in signed_refs:
                if self.backend.is_known(ref):
                    logger.info("Earlier broadcast %s reached the ledger; not re-sending", ref)
                    return ref
            # Anchor is fetched on every attempt, right before signing.
            anchor = self.backend.latest_anchor()
            age = anchor.age(self.clock())
            if age > self.config.anchor_validity_seconds:
                raise StaleAnchorError(f"Anchor {anchor.reference} is {age:.1f}s old")
            signed = self.backend.sign_delegated_transfer(transfer, signer, anchor, nonce)
            if signed.tx_ref not in signed_refs:
                if on_signed is not None:
                    on_signed(signed.tx_ref)
                signed_refs.append(signed.tx_ref)
            return self.backend.broadcast(signed)

        tx_ref = self._with_retry("submit_delegated_transfer", submit_once)
        logger.info(
            "Delegated transfer submitted: %s (%d from %s to %s, delegate %s, nonce %d)",
            tx_ref, amount, source_account, destination_account, signer.address, nonce,
        )
        return tx_ref

    def wait_for_finality(
        self,
        tx_ref: str,
        timeout_seconds: Optional[float] = None,
        poll_seconds: Optional[float] = None,
    ) -> Finality:
        """Poll until the transfer is finalized or failed, or the timeout passes."""
        timeout = self.config.finality_timeout_seconds if timeout_seconds is None else timeout_seconds
        poll = self.config.finality_poll_seconds if poll_seconds is None else poll_seconds
        deadline = self.clock() + timeout
        while True:
            status = self.confirm(tx_ref)
            if status != Finality.PENDING:
                return status
            if self.clock() >= deadline:
                logger.warning("Transfer %s still pending after %.1fs", tx_ref, timeout)
                return status
            self.sleep(poll)

    def _with_retry(self, operation: str, call: Callable[[], T]) -> T:
        attempts = max(1, self.config.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return call()
            except TransientNetworkError as e:
                if attempt >= attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", operation, attempts, e,
                    )
                    raise
                delay = self._backoff(attempt, e.retry_after)
                logger.info(
                    "Retryable ledger error in %s (attempt %d/%d), retrying in %.2fs: %s",
                    operation, attempt, attempts, delay, e,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")

    def _backoff(self, attempt: int, retry_after: Optional[float]) -> float:
        delay = self.config.base_delay_seconds * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.config.max_delay_seconds)
