"""Tests for the charge execution flow."""

from concurrent.futures import ThreadPoolExecutor

import pytest
from cryptography.fernet import Fernet

from sessionpay.audit import AuditTrail, EventType
from sessionpay.errors import PermanentLedgerError, TransientNetworkError
from sessionpay.executor import ChargeExecutor, ExecutorConfig
from sessionpay.ledger import LedgerClient, LedgerClientConfig
from sessionpay.local_ledger import LocalLedger
from sessionpay.store import SubscriptionStore
from sessionpay.subscription import ChargeOutcome, ChargeRecord, SubscriptionStatus
from sessionpay.vault import CredentialVault

from conftest import MERCHANT, NOW, PERIOD


class ShortSettlingLedger(LocalLedger):
    """Accepts transfers but moves one unit less than asked."""

    def _settled_amount(self, amount):
        return amount - 1


class LostResponseLedger(LocalLedger):
    """Applies the first broadcast, then reports it as timed out."""

    lost = 1

    def broadcast(self, signed):
        tx_ref = super().broadcast(signed)
        if self.lost:
            self.lost -= 1
            raise TransientNetworkError("response lost after the ledger applied the transfer")
        return tx_ref


class ProcessKilled(BaseException):
    """Stands in for the engine process dying mid-charge."""


class DyingAfterBroadcastLedger(LocalLedger):
    kill = True

    def broadcast(self, signed):
        tx_ref = super().broadcast(signed)
        if self.kill:
            self.kill = False
            raise ProcessKilled()
        return tx_ref


class BrokenAudit(AuditTrail):
    """Audit trail whose disk rejects settlement events."""

    def log(self, event_type, **kwargs):
        if event_type == EventType.CHARGE_SETTLED:
            raise OSError("No space left on device")
        return super().log(event_type, **kwargs)


def _executor_for(backend, store, audit):
    ledger = LedgerClient(
        backend,
        LedgerClientConfig(finality_poll_seconds=0, finality_timeout_seconds=0),
        sleep=lambda s: None,
    )
    return ChargeExecutor(store, ledger, audit, ExecutorConfig(merchant_account=MERCHANT))


class TestChargeFlow:
    def test_successful_charge(self, make_active, executor, backend, store, payer):
        receipt = make_active(period_amount=5, periods=3)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.ok
        assert result.state == "settled"
        assert result.amount_charged == 5
        assert result.periods_remaining == 2
        assert result.next_charge_at == NOW + PERIOD
        assert result.tx_ref
        assert backend.get_balance(MERCHANT) == 5
        assert backend.get_balance(payer.address) == 10

        sub = store.get(receipt.subscription_id)
        outcomes = [r.outcome for r in sub.charge_history]
        assert outcomes == ["pending", "pending", "success"]
        assert len({r.attempt_id for r in sub.charge_history}) == 1
        assert sub.charge_history[-1].tx_ref == result.tx_ref

    def test_periods_count_down_to_expiry(self, make_active, executor, store):
        receipt = make_active(period_amount=5, periods=3)

        remaining = []
        for i in range(3):
            result = executor.charge(receipt.subscription_id, now=NOW + i * PERIOD)
            assert result.ok
            remaining.append(result.periods_remaining)

        assert remaining == [2, 1, 0]
        sub = store.get(receipt.subscription_id)
        assert sub.status == SubscriptionStatus.EXPIRED.value
        assert len(sub.successful_charges()) == 3

        after = executor.charge(receipt.subscription_id, now=NOW + 3 * PERIOD)
        assert not after.ok
        assert after.error == "not_due"

    def test_schedule_advances_from_scheduled_date(self, make_active, executor):
        receipt = make_active(period_amount=5, periods=2)

        # Charged late: the next date still follows the scheduled one.
        result = executor.charge(receipt.subscription_id, now=NOW + 3 * 24 * 3600)

        assert result.ok
        assert result.next_charge_at == NOW + PERIOD

    def test_single_period_end_to_end(self, make_active, executor, backend, store, payer):
        receipt = make_active(period_amount=5, periods=1)
        assert receipt.approved_ceiling == 5

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.ok
        assert result.periods_remaining == 0
        assert backend.get_balance(payer.address) == 0
        assert backend.get_balance(MERCHANT) == 5
        assert backend.get_allowance(payer.address, receipt.delegate_account) == 0
        assert store.get(receipt.subscription_id).status == SubscriptionStatus.EXPIRED.value

    def test_not_due_leaves_record_untouched(self, make_active, executor, store):
        receipt = make_active(period_amount=5, periods=3)
        assert executor.charge(receipt.subscription_id, now=NOW).ok
        before = store.get(receipt.subscription_id)

        result = executor.charge(receipt.subscription_id, now=NOW + PERIOD - 1)

        assert not result.ok
        assert result.error == "not_due"
        after = store.get(receipt.subscription_id)
        assert after == before

    def test_pending_grant_is_not_due(self, issuer, executor, store, payer):
        receipt = issuer.issue(payer.address, payer.address, 5, 3, now=NOW)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.error == "not_due"
        assert store.get(receipt.subscription_id).charge_history == []

    def test_unknown_subscription(self, executor):
        result = executor.charge("sub_missing", now=NOW)
        assert not result.ok
        assert result.error == "not_found"


class TestChargeFailures:
    def test_verification_gate_blocks_short_settlement(self, store, audit, issuer, payer):
        backend = ShortSettlingLedger()
        executor = _executor_for(backend, store, audit)
        backend.mint(payer.address, 15)
        receipt = issuer.issue(payer.address, payer.address, 5, 3, now=NOW)
        backend.approve(payer.address, receipt.delegate_account, receipt.approved_ceiling)
        issuer.activate(receipt.subscription_id, now=NOW)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert not result.ok
        assert result.error == "verification_mismatch"
        assert result.tx_ref
        sub = store.get(receipt.subscription_id)
        assert sub.periods_remaining == 3
        assert sub.next_charge_at == NOW
        assert sub.charge_history[-1].outcome == ChargeOutcome.FAILED.value
        assert sub.successful_charges() == []
        mismatches = audit.read_events(
            subscription_id=receipt.subscription_id,
            event_type=EventType.VERIFICATION_MISMATCH,
        )
        assert len(mismatches) == 1

    def test_transient_failure_before_signing_records_failed_attempt(self, make_active, executor, backend, store):
        receipt = make_active(period_amount=5, periods=3)
        backend.inject_fault("latest_anchor", TransientNetworkError("node busy"), times=3)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert not result.ok
        assert result.error == "transient"
        assert backend.get_balance(MERCHANT) == 0
        sub = store.get(receipt.subscription_id)
        assert sub.periods_remaining == 3
        assert sub.next_charge_at == NOW
        assert sub.charge_history[-1].outcome == "failed"

        retry = executor.charge(receipt.subscription_id, now=NOW)
        assert retry.ok
        assert backend.get_balance(MERCHANT) == 5

    def test_transient_broadcast_failure_leaves_attempt_open(self, make_active, executor, backend, store):
        receipt = make_active(period_amount=5, periods=3)
        backend.inject_fault("broadcast", TransientNetworkError("node busy"), times=3)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert not result.ok
        assert result.error == "transient"
        assert result.state == "submitting"
        assert result.tx_ref
        last = store.get(receipt.subscription_id).charge_history[-1]
        assert last.outcome == "pending"
        assert last.tx_ref == result.tx_ref

        # The signed transfer never landed, so the retry records it failed and charges once.
        retry = executor.charge(receipt.subscription_id, now=NOW)
        assert retry.ok
        assert backend.get_balance(MERCHANT) == 5
        history = store.get(receipt.subscription_id).charge_history
        assert [r.outcome for r in history if r.attempt_id == last.attempt_id][-1] == "failed"

    def test_lost_broadcast_response_charges_once(self, store, audit, issuer, payer):
        backend = LostResponseLedger()
        executor = _executor_for(backend, store, audit)
        backend.mint(payer.address, 15)
        receipt = issuer.issue(payer.address, payer.address, 5, 3, now=NOW)
        backend.approve(payer.address, receipt.delegate_account, receipt.approved_ceiling)
        issuer.activate(receipt.subscription_id, now=NOW)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.ok
        assert result.periods_remaining == 2
        assert backend.lost == 0
        assert backend.get_balance(payer.address) == 10
        assert backend.get_balance(MERCHANT) == 5
        assert backend.next_nonce(receipt.delegate_account) == 1

    def test_transient_fault_within_retry_budget_succeeds(self, make_active, executor, backend):
        receipt = make_active(period_amount=5, periods=3)
        backend.inject_fault("broadcast", TransientNetworkError("blip"), times=2)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.ok
        assert backend.get_balance(MERCHANT) == 5

    def test_insufficient_funds_is_permanent(self, make_active, executor, store):
        receipt = make_active(period_amount=5, periods=3, fund=3)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert not result.ok
        assert result.error == "permanent"
        sub = store.get(receipt.subscription_id)
        assert sub.periods_remaining == 3
        assert sub.status == SubscriptionStatus.ACTIVE.value

    def test_missing_allowance_is_permanent(self, issuer, executor, backend, store, payer):
        backend.mint(payer.address, 15)
        receipt = issuer.issue(payer.address, payer.address, 5, 3, now=NOW)
        issuer.activate(receipt.subscription_id, now=NOW)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.error == "permanent"
        assert "allowance" in result.reason.lower()
        assert store.get(receipt.subscription_id).periods_remaining == 3

    def test_pre_balance_failure_advances_nothing(self, make_active, executor, backend, store):
        receipt = make_active(period_amount=5, periods=3)
        backend.inject_fault("get_balance", PermanentLedgerError("rpc down"), times=1)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.error == "permanent"
        sub = store.get(receipt.subscription_id)
        assert sub.periods_remaining == 3
        assert [r.outcome for r in sub.charge_history] == ["failed"]

    def test_failure_does_not_revoke(self, make_active, executor, store):
        receipt = make_active(period_amount=5, periods=3, fund=0)

        for _ in range(3):
            assert not executor.charge(receipt.subscription_id, now=NOW).ok

        assert store.get(receipt.subscription_id).status == SubscriptionStatus.ACTIVE.value


class TestConcurrency:
    def test_no_double_charge_under_concurrency(self, make_active, executor, backend, store):
        receipt = make_active(period_amount=5, periods=3)

        with ThreadPoolExecutor(max_workers=10) as ex:
            results = list(ex.map(lambda _: executor.charge(receipt.subscription_id, now=NOW), range(10)))

        settled = [r for r in results if r.ok]
        assert len(settled) == 1
        assert all(r.error in ("already_in_progress", "not_due") for r in results if not r.ok)
        assert backend.get_balance(MERCHANT) == 5
        sub = store.get(receipt.subscription_id)
        assert sub.periods_remaining == 2
        assert len(sub.successful_charges()) == 1

    def test_held_lease_rejects_second_charge(self, make_active, executor, store):
        receipt = make_active(period_amount=5, periods=3)
        token, _ = store.acquire_charge_lease(receipt.subscription_id, NOW)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.error == "already_in_progress"
        store.release_charge_lease(receipt.subscription_id, token)
        assert executor.charge(receipt.subscription_id, now=NOW).ok

    def test_independent_subscriptions_charge_in_parallel(self, make_active, executor, backend):
        receipts = [make_active(period_amount=5, periods=2) for _ in range(4)]

        with ThreadPoolExecutor(max_workers=4) as ex:
            results = list(ex.map(lambda r: executor.charge(r.subscription_id, now=NOW), receipts))

        assert all(r.ok for r in results)
        assert backend.get_balance(MERCHANT) == 20


class TestRecovery:
    def test_interrupted_submitted_attempt_is_settled_not_resubmitted(
        self, make_active, executor, ledger, backend, store, payer
    ):
        receipt = make_active(period_amount=5, periods=3)
        sub = store.get(receipt.subscription_id, with_credential=True)
        pre_balance = backend.get_balance(payer.address)
        tx_ref = ledger.submit_delegated_transfer(payer.address, MERCHANT, sub.delegate_credential, 5)
        store.update(
            sub.id,
            lambda s: s.with_charge(
                ChargeRecord(NOW, 5, "pending", "att_crashed", tx_ref=tx_ref, pre_balance=pre_balance)
            ),
        )

        result = executor.charge(sub.id, now=NOW)

        assert result.ok
        assert result.tx_ref == tx_ref
        assert backend.get_balance(MERCHANT) == 5
        recovered = store.get(sub.id)
        assert recovered.periods_remaining == 2
        assert recovered.charge_history[-1].attempt_id == "att_crashed"
        assert recovered.charge_history[-1].outcome == "success"

    def test_abandoned_attempt_without_movement_is_failed_then_retried(
        self, make_active, executor, backend, store, payer
    ):
        receipt = make_active(period_amount=5, periods=3)
        pre_balance = backend.get_balance(payer.address)
        store.update(
            receipt.subscription_id,
            lambda s: s.with_charge(ChargeRecord(NOW, 5, "pending", "att_lost", pre_balance=pre_balance)),
        )

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.ok
        assert backend.get_balance(MERCHANT) == 5
        history = store.get(receipt.subscription_id).charge_history
        lost = [r for r in history if r.attempt_id == "att_lost"]
        assert [r.outcome for r in lost] == ["pending", "failed"]
        assert history[-1].outcome == "success"
        assert history[-1].attempt_id != "att_lost"

    def test_pending_finality_is_rechecked_on_next_call(self, store, audit, issuer, payer):
        backend = LocalLedger(finality_polls=1)
        executor = _executor_for(backend, store, audit)
        backend.mint(payer.address, 15)
        receipt = issuer.issue(payer.address, payer.address, 5, 3, now=NOW)
        backend.approve(payer.address, receipt.delegate_account, receipt.approved_ceiling)
        issuer.activate(receipt.subscription_id, now=NOW)

        first = executor.charge(receipt.subscription_id, now=NOW)
        assert not first.ok
        assert first.error == "pending_confirmation"
        assert store.get(receipt.subscription_id).periods_remaining == 3

        second = executor.charge(receipt.subscription_id, now=NOW)
        assert second.ok
        assert second.tx_ref == first.tx_ref
        assert backend.get_balance(MERCHANT) == 5
        assert store.get(receipt.subscription_id).periods_remaining == 2

    def test_failed_interrupted_transfer_is_recorded_and_retried(
        self, make_active, executor, ledger, backend, store, payer
    ):
        receipt = make_active(period_amount=5, periods=3, fund=20)
        sub = store.get(receipt.subscription_id, with_credential=True)
        backend.approve(payer.address, receipt.delegate_account, 20)
        pre_balance = backend.get_balance(payer.address)
        tx_ref = ledger.submit_delegated_transfer(payer.address, MERCHANT, sub.delegate_credential, 5)
        backend.mark_failed(tx_ref)
        store.update(
            sub.id,
            lambda s: s.with_charge(
                ChargeRecord(NOW, 5, "pending", "att_reverted", tx_ref=tx_ref, pre_balance=pre_balance)
            ),
        )

        result = executor.charge(sub.id, now=NOW)

        assert result.ok
        assert result.tx_ref != tx_ref
        history = store.get(sub.id).charge_history
        assert [r.outcome for r in history if r.attempt_id == "att_reverted"] == ["pending", "failed"]


    def test_crash_after_broadcast_is_rechecked_not_resubmitted(self, store, audit, issuer, payer):
        backend = DyingAfterBroadcastLedger(finality_polls=1)
        executor = _executor_for(backend, store, audit)
        backend.mint(payer.address, 15)
        receipt = issuer.issue(payer.address, payer.address, 5, 3, now=NOW)
        backend.approve(payer.address, receipt.delegate_account, receipt.approved_ceiling)
        issuer.activate(receipt.subscription_id, now=NOW)

        with pytest.raises(ProcessKilled):
            executor.charge(receipt.subscription_id, now=NOW)
        open_record = store.get(receipt.subscription_id).charge_history[-1]
        assert open_record.outcome == "pending"
        assert open_record.tx_ref

        in_flight = executor.charge(receipt.subscription_id, now=NOW)
        assert in_flight.error == "pending_confirmation"
        assert in_flight.tx_ref == open_record.tx_ref

        settled = executor.charge(receipt.subscription_id, now=NOW)
        assert settled.ok
        assert settled.tx_ref == open_record.tx_ref
        assert backend.get_balance(MERCHANT) == 5
        assert backend.next_nonce(receipt.delegate_account) == 1
        assert store.get(receipt.subscription_id).periods_remaining == 2

    def test_signed_but_never_broadcast_attempt_is_failed_then_retried(
        self, make_active, executor, ledger, backend, store, payer
    ):
        receipt = make_active(period_amount=5, periods=3)
        sub = store.get(receipt.subscription_id, with_credential=True)
        pre_balance = backend.get_balance(payer.address)

        def crash(tx_ref):
            store.update(
                sub.id,
                lambda s: s.with_charge(
                    ChargeRecord(NOW, 5, "pending", "att_unsent", tx_ref=tx_ref, pre_balance=pre_balance)
                ),
            )
            raise ProcessKilled()

        with pytest.raises(ProcessKilled):
            ledger.submit_delegated_transfer(payer.address, MERCHANT, sub.delegate_credential, 5, on_signed=crash)

        result = executor.charge(sub.id, now=NOW)

        assert result.ok
        assert backend.get_balance(MERCHANT) == 5
        history = store.get(sub.id).charge_history
        assert [r.outcome for r in history if r.attempt_id == "att_unsent"] == ["pending", "failed"]


class TestFaultContainment:
    def test_undecryptable_credential_becomes_permanent_result(self, make_active, ledger, audit, tmp_path):
        receipt = make_active(period_amount=5, periods=3)
        rekeyed = SubscriptionStore(tmp_path / "store", vault=CredentialVault(key=Fernet.generate_key()))
        executor = ChargeExecutor(rekeyed, ledger, audit, ExecutorConfig(merchant_account=MERCHANT))

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert not result.ok
        assert result.error == "permanent"
        assert "vault key" in result.reason
        assert rekeyed.get(receipt.subscription_id).periods_remaining == 3

    def test_audit_failure_after_settlement_still_reports_success(self, make_active, ledger, store, tmp_path):
        receipt = make_active(period_amount=5, periods=3)
        audit = BrokenAudit(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")
        executor = ChargeExecutor(store, ledger, audit, ExecutorConfig(merchant_account=MERCHANT))

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.ok
        assert result.periods_remaining == 2
        assert store.get(receipt.subscription_id).periods_remaining == 2


class TestCancellation:
    def test_revoked_grant_is_not_charged(self, make_active, executor, issuer, backend):
        receipt = make_active(period_amount=5, periods=3)
        issuer.revoke(receipt.subscription_id)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.error == "not_due"
        assert backend.get_balance(MERCHANT) == 0

    def test_revoke_after_submission_still_records_charge(self, store, audit, issuer, payer):
        class RevokingLedger(LocalLedger):
            def broadcast(self, signed):
                tx_ref = super().broadcast(signed)
                issuer.revoke(self.subscription_id, reason="cancelled mid-charge")
                return tx_ref

        backend = RevokingLedger()
        executor = _executor_for(backend, store, audit)
        backend.mint(payer.address, 15)
        receipt = issuer.issue(payer.address, payer.address, 5, 3, now=NOW)
        backend.subscription_id = receipt.subscription_id
        backend.approve(payer.address, receipt.delegate_account, receipt.approved_ceiling)
        issuer.activate(receipt.subscription_id, now=NOW)

        result = executor.charge(receipt.subscription_id, now=NOW)

        assert result.ok
        sub = store.get(receipt.subscription_id)
        assert sub.status == SubscriptionStatus.REVOKED.value
        assert sub.periods_remaining == 2
        assert len(sub.successful_charges()) == 1
        assert backend.get_balance(MERCHANT) == 5


class TestAuditIntegration:
    def test_settled_charge_is_audited(self, make_active, executor, audit):
        receipt = make_active(period_amount=5, periods=1)

        executor.charge(receipt.subscription_id, now=NOW)

        types = [e.event_type for e in audit.read_events(subscription_id=receipt.subscription_id)]
        assert types[:2] == ["grant_issued", "grant_activated"]
        assert "charge_attempted" in types
        assert "charge_submitted" in types
        assert "charge_settled" in types
        assert types[-1] == "subscription_expired"

    def test_credentials_never_reach_audit_log(self, make_active, executor, store, tmp_path):
        receipt = make_active(period_amount=5, periods=1)
        executor.charge(receipt.subscription_id, now=NOW)

        credential = store.get(receipt.subscription_id, with_credential=True).delegate_credential
        raw = (tmp_path / "audit.jsonl").read_text()
        assert credential[-64:] not in raw
