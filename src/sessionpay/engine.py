"""Wires the store, ledger, audit trail and services from one Settings object."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .audit import AuditTrail
from .evm_ledger import JsonRpcConfig, JsonRpcLedger
from .executor import ChargeExecutor, ExecutorConfig
from .issuer import GrantIssuer
from .ledger import LedgerBackend, LedgerClient, LedgerClientConfig
from .local_ledger import LocalLedger
from .scheduler import ChargeScheduler
from .settings import Settings
from .store import SubscriptionStore
from .storage import ensure_private_dir
from .vault import CredentialVault

logger = logging.getLogger(__name__)


@dataclass
class BillingEngine:
    settings: Settings
    store: SubscriptionStore
    backend: LedgerBackend
    ledger: LedgerClient
    audit: AuditTrail
    issuer: GrantIssuer
    executor: ChargeExecutor
    scheduler: ChargeScheduler

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        backend: Optional[LedgerBackend] = None,
        ledger_config: Optional[LedgerClientConfig] = None,
    ) -> "BillingEngine":
        settings = settings or Settings.from_env()
        ensure_private_dir(settings.home)

        vault = CredentialVault(
            key=settings.vault_key.encode() if settings.vault_key else None,
            key_path=settings.secrets_dir / "vault.key",
        )
        store = SubscriptionStore(settings.store_dir, vault=vault, lease_ttl_seconds=settings.lease_ttl_seconds)
        audit = AuditTrail(settings.audit_path, key_path=settings.secrets_dir / "audit_hmac.key")

        if backend is None:
            backend = _build_backend(settings)
        ledger = LedgerClient(
            backend,
            ledger_config or LedgerClientConfig(
                max_attempts=settings.max_attempts,
                anchor_validity_seconds=settings.anchor_validity_seconds,
                finality_timeout_seconds=settings.finality_timeout_seconds,
            ),
        )
        issuer = GrantIssuer(
            store,
            audit,
            ledger=ledger,
            period_seconds=settings.period_seconds,
            first_charge_delay_seconds=settings.first_charge_delay_seconds,
        )
        executor = ChargeExecutor(
            store,
            ledger,
            audit,
            ExecutorConfig(merchant_account=settings.merchant_account),
        )
        scheduler = ChargeScheduler(store, executor, max_workers=settings.sweep_workers)
        logger.debug("Billing engine ready (home: %s, ledger: %s)", settings.home, settings.ledger_backend)
        return cls(
            settings=settings,
            store=store,
            backend=backend,
            ledger=ledger,
            audit=audit,
            issuer=issuer,
            executor=executor,
            scheduler=scheduler,
        )


def _build_backend(settings: Settings) -> LedgerBackend:
    if settings.ledger_backend == "jsonrpc":
        return JsonRpcLedger(
            JsonRpcConfig(
                rpc_url=settings.rpc_url,
                token_address=settings.token_address,
                chain_id=settings.chain_id,
                confirmations=settings.confirmations,
            )
        )
    return LocalLedger(settings.ledger_state_path)
