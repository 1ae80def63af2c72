"""Tests for the retrying ledger client and the local ledger."""

import time

import pytest
from eth_account import Account

from sessionpay.errors import (
    InsufficientAllowanceError,
    PermanentLedgerError,
    StaleAnchorError,
    TransientNetworkError,
)
from sessionpay.ledger import DelegatedTransfer, Finality, LedgerAnchor, LedgerClient, LedgerClientConfig
from sessionpay.local_ledger import LocalLedger

from conftest import MERCHANT


@pytest.fixture
def delegate():
    return Account.create()


@pytest.fixture
def funded(backend, payer, delegate):
    backend.mint(payer.address, 100)
    backend.approve(payer.address, delegate.address, 50)
    return payer


def make_client(backend, sleeps, **config):
    return LedgerClient(backend, LedgerClientConfig(**config), sleep=sleeps.append)


class TestRetryPolicy:
    def test_transient_errors_are_retried(self, backend, funded, delegate):
        sleeps = []
        client = make_client(backend, sleeps, max_attempts=3, base_delay_seconds=0.5)
        backend.inject_fault("get_balance", TransientNetworkError("timeout"), times=2)

        assert client.get_balance(funded.address) == 100
        assert sleeps == [0.5, 1.0]

    def test_retry_budget_is_bounded(self, backend, funded):
        sleeps = []
        client = make_client(backend, sleeps, max_attempts=3)
        backend.inject_fault("get_balance", TransientNetworkError("timeout"), times=5)

        with pytest.raises(TransientNetworkError):
            client.get_balance(funded.address)
        assert len(sleeps) == 2

    def test_permanent_errors_are_not_retried(self, backend, funded):
        sleeps = []
        client = make_client(backend, sleeps)
        backend.inject_fault("get_balance", PermanentLedgerError("bad account"), times=1)

        with pytest.raises(PermanentLedgerError):
            client.get_balance(funded.address)
        assert sleeps == []

    def test_retry_after_hint_is_honoured(self, backend, funded):
        sleeps = []
        client = make_client(backend, sleeps, base_delay_seconds=0.1, max_delay_seconds=8.0)
        backend.inject_fault("get_balance", TransientNetworkError("429", retry_after=3.0), times=1)

        client.get_balance(funded.address)
        assert sleeps == [3.0]

    def test_backoff_is_capped(self):
        client = LedgerClient(LocalLedger(), LedgerClientConfig(base_delay_seconds=1.0, max_delay_seconds=4.0))
        assert client._backoff(1, None) == 1.0
        assert client._backoff(5, None) == 4.0
        assert client._backoff(1, 60.0) == 4.0


class TestDelegatedTransfer:
    def test_submit_moves_funds(self, backend, funded, delegate):
        client = make_client(backend, [])

        tx_ref = client.submit_delegated_transfer(funded.address, MERCHANT, delegate.key.hex(), 20)

        assert client.confirm(tx_ref) == Finality.FINALIZED
        assert backend.get_balance(funded.address) == 80
        assert backend.get_balance(MERCHANT) == 20
        assert backend.get_allowance(funded.address, delegate.address) == 30
        assert backend.transfer(tx_ref)["delegate"] == delegate.address

    def test_allowance_caps_total(self, backend, funded, delegate):
        client = make_client(backend, [])
        client.submit_delegated_transfer(funded.address, MERCHANT, delegate.key.hex(), 50)

        with pytest.raises(InsufficientAllowanceError):
            client.submit_delegated_transfer(funded.address, MERCHANT, delegate.key.hex(), 1)

    def test_wrong_delegate_is_rejected(self, backend, funded):
        client = make_client(backend, [])
        stranger = Account.create()
        with pytest.raises(InsufficientAllowanceError):
            client.submit_delegated_transfer(funded.address, MERCHANT, stranger.key.hex(), 5)
        assert backend.get_balance(funded.address) == 100

    @pytest.mark.parametrize("amount", [0, -1])
    def test_non_positive_amount_rejected(self, backend, funded, delegate, amount):
        client = make_client(backend, [])
        with pytest.raises(PermanentLedgerError):
            client.submit_delegated_transfer(funded.address, MERCHANT, delegate.key.hex(), amount)

    def test_stale_anchor_is_refused_before_signing(self, backend, funded, delegate):
        sleeps = []
        client = LedgerClient(
            backend,
            LedgerClientConfig(max_attempts=2, anchor_validity_seconds=30.0),
            sleep=sleeps.append,
            clock=lambda: time.time() + 120,
        )

        with pytest.raises(StaleAnchorError):
            client.submit_delegated_transfer(funded.address, MERCHANT, delegate.key.hex(), 5)
        assert len(sleeps) == 1
        assert backend.get_balance(MERCHANT) == 0

    def test_anchor_refetched_on_retry(self, backend, funded, delegate):
        client = make_client(backend, [])
        backend.inject_fault("broadcast", TransientNetworkError("dropped"), times=1)
        fetched = []
        real_anchor = backend.latest_anchor

        def counting_anchor():
            fetched.append(1)
            return real_anchor()

        backend.latest_anchor = counting_anchor
        client.submit_delegated_transfer(funded.address, MERCHANT, delegate.key.hex(), 5)

        assert len(fetched) == 2

    def test_ledger_rejects_expired_anchor(self, backend, funded, delegate):
        old = LedgerAnchor(reference="anchor-0", height=backend.height() - 1000, fetched_at=time.time())
        signed = backend.sign_delegated_transfer(DelegatedTransfer(funded.address, MERCHANT, 5), delegate, old, 0)
        with pytest.raises(StaleAnchorError):
            backend.broadcast(signed)


class LostResponseLedger(LocalLedger):
    lost = 1

    def broadcast(self, signed):
        tx_ref = super().broadcast(signed)
        if self.lost:
            self.lost -= 1
            raise TransientNetworkError("read timeout")
        return tx_ref


class TestSubmissionIdempotency:
    def test_lost_response_is_not_resent(self, payer, delegate):
        backend = LostResponseLedger()
        backend.mint(payer.address, 100)
        backend.approve(payer.address, delegate.address, 50)
        sleeps = []
        client = make_client(backend, sleeps)

        tx_ref = client.submit_delegated_transfer(payer.address, MERCHANT, delegate.key.hex(), 20)

        assert len(sleeps) == 1
        assert backend.transfer(tx_ref)["amount"] == 20
        assert backend.get_balance(MERCHANT) == 20
        assert backend.next_nonce(delegate.address) == 1

    def test_same_nonce_lands_once(self, backend, funded, delegate):
        transfer = DelegatedTransfer(funded.address, MERCHANT, 5)
        first = backend.sign_delegated_transfer(transfer, delegate, backend.latest_anchor(), 0)
        later_anchor = LedgerAnchor(reference="anchor-x", height=backend.height() + 1, fetched_at=time.time())
        second = backend.sign_delegated_transfer(transfer, delegate, later_anchor, 0)
        assert first.tx_ref != second.tx_ref

        backend.broadcast(first)
        with pytest.raises(PermanentLedgerError, match="not next"):
            backend.broadcast(second)
        assert backend.get_balance(MERCHANT) == 5

    def test_rebroadcast_of_applied_transfer_is_accepted(self, backend, funded, delegate):
        signed = backend.sign_delegated_transfer(
            DelegatedTransfer(funded.address, MERCHANT, 5), delegate, backend.latest_anchor(), 0,
        )
        assert backend.broadcast(signed) == backend.broadcast(signed)
        assert backend.get_balance(MERCHANT) == 5

    def test_reference_is_reported_before_broadcast(self, backend, funded, delegate):
        client = make_client(backend, [])
        seen = []
        client.submit_delegated_transfer(
            funded.address, MERCHANT, delegate.key.hex(), 5,
            on_signed=lambda ref: seen.append((ref, backend.transfer(ref))),
        )

        assert len(seen) == 1
        ref, applied = seen[0]
        assert applied is None
        assert backend.transfer(ref) is not None



class TestFinality:
    def test_wait_for_finality_polls_until_final(self, payer, delegate):
        backend = LocalLedger(finality_polls=2)
        backend.mint(payer.address, 10)
        backend.approve(payer.address, delegate.address, 10)
        sleeps = []
        client = make_client(backend, sleeps, finality_poll_seconds=1.0, finality_timeout_seconds=60.0)
        tx_ref = client.submit_delegated_transfer(payer.address, MERCHANT, delegate.key.hex(), 5)

        assert client.wait_for_finality(tx_ref) == Finality.FINALIZED
        assert sleeps == [1.0, 1.0]

    def test_wait_for_finality_times_out_pending(self, payer, delegate):
        backend = LocalLedger(finality_polls=100)
        backend.mint(payer.address, 10)
        backend.approve(payer.address, delegate.address, 10)
        client = make_client(backend, [], finality_timeout_seconds=0)
        tx_ref = client.submit_delegated_transfer(payer.address, MERCHANT, delegate.key.hex(), 5)

        assert client.wait_for_finality(tx_ref) == Finality.PENDING

    def test_failed_transfer_reports_failed(self, backend, funded, delegate):
        client = make_client(backend, [])
        tx_ref = client.submit_delegated_transfer(funded.address, MERCHANT, delegate.key.hex(), 5)
        backend.mark_failed(tx_ref)
        assert client.wait_for_finality(tx_ref) == Finality.FAILED

    def test_unknown_reference_is_failed(self, backend):
        client = make_client(backend, [])
        assert client.confirm("0xdeadbeef") == Finality.FAILED


class TestFileBackedLedger:
    def test_state_survives_reopen(self, tmp_path, payer):
        path = tmp_path / "ledger" / "ledger.json"
        LocalLedger(path).mint(payer.address, 42)

        assert LocalLedger(path).get_balance(payer.address) == 42
        assert (path.stat().st_mode & 0o777) == 0o600
