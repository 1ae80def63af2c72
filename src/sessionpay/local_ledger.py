"""
Local stand-in for the token ledger.

Enforces the same allowance, signature and anchor-expiry semantics the
engine expects from a real network, either in memory or backed by a JSON
state file. Suitable for local development, the CLI demo flow, and tests.
"""

from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_account.signers.local import LocalAccount
from eth_utils import keccak

from .errors import (
    InsufficientAllowanceError,
    InsufficientFundsError,
    LedgerError,
    PermanentLedgerError,
    StaleAnchorError,
)
from .ledger import DelegatedTransfer, Finality, LedgerAnchor, SignedTransfer
from .storage import atomic_write_json, ensure_private_dir, ensure_private_file
from .subscription import normalize_account


DEFAULT_BLOCK_SECONDS = 0.4
DEFAULT_MAX_ANCHOR_AGE_BLOCKS = 150


def _empty_state() -> dict:
    return {
        "balances": {},
        "allowances": {},
        "nonces": {},
        "transfers": {},
        "tx_counter": 0,
    }


def transfer_message(transfer: DelegatedTransfer, anchor: LedgerAnchor, nonce: int) -> str:
    return json.dumps(
        {
            "source": transfer.source_account,
            "destination": transfer.destination_account,
            "amount": transfer.amount,
            "anchor": anchor.reference,
            "height": anchor.height,
            "nonce": nonce,
        },
        sort_keys=True,
        separators=(",", ":"),
    )


class LocalLedger:
    """In-memory or file-backed token ledger with delegate allowances."""

    def __init__(
        self,
        path: Optional[Path] = None,
        finality_polls: int = 0,
        block_seconds: float = DEFAULT_BLOCK_SECONDS,
        max_anchor_age_blocks: int = DEFAULT_MAX_ANCHOR_AGE_BLOCKS,
        clock: Callable[[], float] = time.time,
    ):
        self.path = path
        self.finality_polls = finality_polls
        self.block_seconds = block_seconds
        self.max_anchor_age_blocks = max_anchor_age_blocks
        self.clock = clock
        self._genesis = clock()
        self._mutex = threading.RLock()
        self._faults: dict[str, list[LedgerError]] = {}
        self._memory_state = _empty_state()
        if self.path is not None:
            ensure_private_dir(self.path.parent)
            self._lock_path = self.path.parent / ".ledger.lock"
            ensure_private_file(self._lock_path)
            if not self.path.exists():
                atomic_write_json(self.path, {**_empty_state(), "genesis": self._genesis})
            with self._state() as state:
                self._genesis = float(state.get("genesis", self._genesis))

    @contextmanager
    def _state(self, write: bool = False):
        with self._mutex:
            if self.path is None:
                yield self._memory_state
                return
            with open(self._lock_path, "r+") as lockf:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
                try:
                    with open(self.path, encoding="utf-8") as f:
                        state = json.load(f)
                    yield state
                    if write:
                        atomic_write_json(self.path, state)
                finally:
                    fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    # ── Fault injection ───────────────────────────────────────────

    def inject_fault(self, operation: str, error: LedgerError, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        with self._mutex:
            self._faults.setdefault(operation, []).extend([error] * times)

    def _maybe_fail(self, operation: str) -> None:
        with self._mutex:
            queued = self._faults.get(operation)
            if queued:
                raise queued.pop(0)

    # ── Administrative operations (owner / faucet side) ───────────

    def mint(self, account: str, amount: int) -> int:
        account = normalize_account(account)
        with self._state(write=True) as state:
            balances = state["balances"]
            balances[account] = int(balances.get(account, 0)) + int(amount)
            return balances[account]

    def approve(self, source_account: str, delegate_account: str, amount: int) -> str:
        """Set the delegate's allowance over ``source_account`` (owner-signed on a real ledger)."""
        key = _allowance_key(normalize_account(source_account), normalize_account(delegate_account))
        with self._state(write=True) as state:
            state["allowances"][key] = int(amount)
            return self._record_tx(state, {"kind": "approve", "allowance_key": key, "amount": int(amount)})

    def height(self) -> int:
        return int((self.clock() - self._genesis) / self.block_seconds)

    # ── LedgerBackend ─────────────────────────────────────────────

    def get_allowance(self, source_account: str, delegate_account: str) -> int:
        self._maybe_fail("get_allowance")
        key = _allowance_key(normalize_account(source_account), normalize_account(delegate_account))
        with self._state() as state:
            return int(state["allowances"].get(key, 0))

    def get_balance(self, account: str) -> int:
        self._maybe_fail("get_balance")
        account = normalize_account(account)
        with self._state() as state:
            return int(state["balances"].get(account, 0))

    def latest_anchor(self) -> LedgerAnchor:
        self._maybe_fail("latest_anchor")
        height = self.height()
        return LedgerAnchor(reference=f"anchor-{height}", height=height, fetched_at=self.clock())

    def next_nonce(self, delegate_account: str) -> int:
        self._maybe_fail("next_nonce")
        with self._state() as state:
            return int(state["nonces"].get(normalize_account(delegate_account), 0))

    def sign_delegated_transfer(
        self,
        transfer: DelegatedTransfer,
        signer: LocalAccount,
        anchor: LedgerAnchor,
        nonce: int,
    ) -> SignedTransfer:
        message = transfer_message(transfer, anchor, nonce)
        signature = bytes(signer.sign_message(encode_defunct(text=message)).signature)
        return SignedTransfer(
            tx_ref="0x" + keccak(signature).hex(),
            nonce=nonce,
            payload={"message": message, "signature": "0x" + signature.hex(), "delegate": signer.address},
        )

    def broadcast(self, signed: SignedTransfer) -> str:
        self._maybe_fail("broadcast")
        message = signed.payload["message"]
        fields = json.loads(message)
        if self.height() - int(fields["height"]) > self.max_anchor_age_blocks:
            raise StaleAnchorError(f"Anchor {fields['anchor']} has expired")

        recovered = Account.recover_message(encode_defunct(text=message), signature=signed.payload["signature"])
        if recovered != signed.payload["delegate"] or int(fields["nonce"]) != signed.nonce:
            raise PermanentLedgerError("Delegate signature does not verify")

        source = normalize_account(fields["source"])
        destination = normalize_account(fields["destination"])
        amount = int(fields["amount"])
        with self._state(write=True) as state:
            if signed.tx_ref in state["transfers"]:
                return signed.tx_ref
            expected = int(state["nonces"].get(recovered, 0))
            if signed.nonce != expected:
                raise PermanentLedgerError(f"Nonce {signed.nonce} for {recovered} is not next ({expected})")

            key = _allowance_key(source, recovered)
            allowance = int(state["allowances"].get(key, 0))
            if allowance < amount:
                raise InsufficientAllowanceError(f"Delegate {recovered} allowance {allowance} below {amount}")
            balance = int(state["balances"].get(source, 0))
            if balance < amount:
                raise InsufficientFundsError(f"Account {source} balance {balance} below {amount}")

            moved = self._settled_amount(amount)
            state["allowances"][key] = allowance - amount
            state["balances"][source] = balance - moved
            state["balances"][destination] = int(state["balances"].get(destination, 0)) + moved
            state["nonces"][recovered] = expected + 1
            return self._record_tx(
                state,
                {
                    "kind": "transfer",
                    "source": source,
                    "destination": destination,
                    "amount": amount,
                    "delegate": recovered,
                    "nonce": signed.nonce,
                    "anchor": fields["anchor"],
                },
                tx_ref=signed.tx_ref,
            )

    def is_known(self, tx_ref: str) -> bool:
        self._maybe_fail("is_known")
        with self._state() as state:
            return tx_ref in state["transfers"]

    def get_finality(self, tx_ref: str) -> Finality:
        self._maybe_fail("get_finality")
        with self._state(write=True) as state:
            record = state["transfers"].get(tx_ref)
            # Never applied: signed but not broadcast, or rejected.
            if record is None or record.get("failed"):
                return Finality.FAILED
            record["polls"] = int(record.get("polls", 0)) + 1
            if record["polls"] > self.finality_polls:
                return Finality.FINALIZED
            return Finality.PENDING

    def transfer(self, tx_ref: str) -> Optional[dict]:
        with self._state() as state:
            record = state["transfers"].get(tx_ref)
            return dict(record) if record else None

    def mark_failed(self, tx_ref: str) -> None:
        """Flag a recorded transaction as reverted."""
        with self._state(write=True) as state:
            if tx_ref not in state["transfers"]:
                raise KeyError(f"Transaction not found: {tx_ref}")
            state["transfers"][tx_ref]["failed"] = True

    def _settled_amount(self, amount: int) -> int:
        """Amount the ledger actually moves for an accepted transfer."""
        return amount

    def _record_tx(self, state: dict, record: dict, tx_ref: Optional[str] = None) -> str:
        state["tx_counter"] = int(state.get("tx_counter", 0)) + 1
        if tx_ref is None:
            tx_ref = "0x" + os.urandom(16).hex() + f"{state['tx_counter']:032x}"
        state["transfers"][tx_ref] = {**record, "polls": 0, "created_at": self.clock()}
        return tx_ref


def _allowance_key(source_account: str, delegate_account: str) -> str:
    return f"{source_account}|{delegate_account}"
