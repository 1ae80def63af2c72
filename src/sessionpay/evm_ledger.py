"""
ERC-20 ledger backend over Ethereum JSON-RPC.

The delegate is an ERC-20 spender: the payer's approval sets
``allowance(source, delegate)`` to the grant ceiling, and each charge is a
``transferFrom(source, merchant, amount)`` signed and paid for by the
delegate. One ``httpx.Client`` is reused for every call.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from eth_account.signers.local import LocalAccount
from eth_utils import keccak, to_checksum_address, to_hex

from .errors import PermanentLedgerError, TransientNetworkError
from .ledger import DelegatedTransfer, Finality, LedgerAnchor, SignedTransfer

logger = logging.getLogger(__name__)


_TRANSIENT_RPC_MARKERS = ("header not found", "limit exceeded", "rate limit", "timeout", "try again")
_ALREADY_KNOWN_MARKERS = ("already known", "known transaction")


def _selector(signature: str) -> str:
    return keccak(text=signature)[:4].hex()


ALLOWANCE_SELECTOR = _selector("allowance(address,address)")
BALANCE_OF_SELECTOR = _selector("balanceOf(address)")
TRANSFER_FROM_SELECTOR = _selector("transferFrom(address,address,uint256)")


def _encode_address(address: str) -> str:
    return to_checksum_address(address)[2:].lower().rjust(64, "0")


def _encode_uint(value: int) -> str:
    if value < 0:
        raise ValueError("uint256 cannot be negative")
    return format(value, "064x")


def encode_call(selector: str, *args: str) -> str:
    return "0x" + selector + "".join(args)


@dataclass
class JsonRpcConfig:
    rpc_url: str
    token_address: str
    chain_id: int
    confirmations: int = 2
    timeout_seconds: float = 15.0
    gas_limit: int = 100_000
    priority_fee_wei: int = 1_000_000_000
    base_fee_multiplier: int = 2


class JsonRpcLedger:
    """LedgerBackend for an ERC-20 token on an EVM chain."""

    def __init__(self, config: JsonRpcConfig, http: Optional[httpx.Client] = None):
        self.config = config
        self.token_address = to_checksum_address(config.token_address)
        self._http = http or httpx.Client(timeout=config.timeout_seconds)
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._http.post(self.config.rpc_url, json=payload)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"RPC timeout on {method}: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"RPC connection failed on {method}: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            retry_after = _retry_after(response)
            raise TransientNetworkError(
                f"RPC unavailable ({response.status_code}) on {method}",
                retry_after=retry_after,
            )
        if response.status_code != 200:
            raise PermanentLedgerError(
                f"RPC rejected {method} ({response.status_code}): {response.text[:200]}"
            )

        body = response.json()
        error = body.get("error")
        if error:
            message = str(error.get("message", error))
            lowered = message.lower()
            if any(marker in lowered for marker in _TRANSIENT_RPC_MARKERS):
                raise TransientNetworkError(f"RPC error on {method}: {message}")
            raise PermanentLedgerError(f"RPC error on {method}: {message}")
        return body.get("result")

    def _call(self, data: str) -> int:
        result = self._rpc("eth_call", [{"to": self.token_address, "data": data}, "latest"])
        return int(result or "0x0", 16)

    def get_allowance(self, source_account: str, delegate_account: str) -> int:
        return self._call(
            encode_call(ALLOWANCE_SELECTOR, _encode_address(source_account), _encode_address(delegate_account))
        )

    def get_balance(self, account: str) -> int:
        return self._call(encode_call(BALANCE_OF_SELECTOR, _encode_address(account)))

    def latest_anchor(self) -> LedgerAnchor:
        block = self._rpc("eth_getBlockByNumber", ["latest", False])
        if not block:
            raise TransientNetworkError("RPC returned no latest block")
        return LedgerAnchor(
            reference=block["hash"],
            height=int(block["number"], 16),
            fetched_at=time.time(),
            fee_per_unit=int(block.get("baseFeePerGas") or "0x0", 16),
        )

    def next_nonce(self, delegate_account: str) -> int:
        # Pending count: a transaction of this delegate still in the mempool keeps its slot.
        return int(self._rpc("eth_getTransactionCount", [delegate_account, "pending"]), 16)

    def sign_delegated_transfer(
        self,
        transfer: DelegatedTransfer,
        signer: LocalAccount,
        anchor: LedgerAnchor,
        nonce: int,
    ) -> SignedTransfer:
        priority = self.config.priority_fee_wei
        tx = {
            "chainId": self.config.chain_id,
            "nonce": nonce,
            "to": self.token_address,
            "value": 0,
            "gas": self.config.gas_limit,
            "maxPriorityFeePerGas": priority,
            "maxFeePerGas": anchor.fee_per_unit * self.config.base_fee_multiplier + priority,
            "data": encode_call(
                TRANSFER_FROM_SELECTOR,
                _encode_address(transfer.source_account),
                _encode_address(transfer.destination_account),
                _encode_uint(transfer.amount),
            ),
        }
        signed = signer.sign_transaction(tx)
        return SignedTransfer(
            tx_ref=to_hex(signed.hash),
            nonce=nonce,
            payload=to_hex(signed.raw_transaction),
        )

    def broadcast(self, signed: SignedTransfer) -> str:
        try:
            result = self._rpc("eth_sendRawTransaction", [signed.payload])
        except PermanentLedgerError as e:
            if any(marker in str(e).lower() for marker in _ALREADY_KNOWN_MARKERS):
                logger.info("Transaction %s already known to the node", signed.tx_ref)
                return signed.tx_ref
            raise
        return result or signed.tx_ref

    def is_known(self, tx_ref: str) -> bool:
        return self._rpc("eth_getTransactionByHash", [tx_ref]) is not None

    def get_finality(self, tx_ref: str) -> Finality:
        receipt = self._rpc("eth_getTransactionReceipt", [tx_ref])
        if receipt is None:
            if not self.is_known(tx_ref):
                return Finality.FAILED
            return Finality.PENDING
        if int(receipt.get("status", "0x0"), 16) != 1:
            return Finality.FAILED
        head = int(self._rpc("eth_blockNumber", []), 16)
        depth = head - int(receipt["blockNumber"], 16) + 1
        if depth >= self.config.confirmations:
            return Finality.FINALIZED
        return Finality.PENDING

    def close(self):
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None
