"""Shared fixtures: an isolated store, audit trail and in-memory ledger per test."""

import pytest
from cryptography.fernet import Fernet
from eth_account import Account

from sessionpay.audit import AuditTrail
from sessionpay.executor import ChargeExecutor, ExecutorConfig
from sessionpay.issuer import GrantIssuer
from sessionpay.ledger import LedgerClient, LedgerClientConfig
from sessionpay.local_ledger import LocalLedger
from sessionpay.store import SubscriptionStore
from sessionpay.vault import CredentialVault


NOW = 1_700_000_000
PERIOD = 30 * 24 * 60 * 60
MERCHANT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"


@pytest.fixture
def vault():
    return CredentialVault(key=Fernet.generate_key())


@pytest.fixture
def store(tmp_path, vault):
    return SubscriptionStore(tmp_path / "store", vault=vault)


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


@pytest.fixture
def backend():
    return LocalLedger()


@pytest.fixture
def ledger(backend):
    return LedgerClient(
        backend,
        LedgerClientConfig(finality_poll_seconds=0, finality_timeout_seconds=0),
        sleep=lambda s: None,
    )


@pytest.fixture
def issuer(store, audit, ledger):
    return GrantIssuer(store, audit, ledger=ledger, period_seconds=PERIOD)


@pytest.fixture
def executor(store, ledger, audit):
    return ChargeExecutor(store, ledger, audit, ExecutorConfig(merchant_account=MERCHANT))


@pytest.fixture
def payer():
    return Account.create()


@pytest.fixture
def make_active(issuer, backend, payer):
    """Issue, fund, approve and activate a grant. Returns the GrantReceipt."""

    def _make(period_amount=5, periods=3, fund=None, now=NOW, owner=None):
        owner = owner or payer
        backend.mint(owner.address, period_amount * periods if fund is None else fund)
        receipt = issuer.issue(owner.address, owner.address, period_amount, periods, now=now)
        backend.approve(owner.address, receipt.delegate_account, receipt.approved_ceiling)
        issuer.activate(receipt.subscription_id, now=now, verify_allowance=True)
        return receipt

    return _make
