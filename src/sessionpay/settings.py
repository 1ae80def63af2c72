"""
Runtime settings, read from ``SESSIONPAY_*`` environment variables.

Everything has a default suitable for the local ledger, so a bare
``Settings()`` runs the whole engine under ``~/.sessionpay``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .money import DEFAULT_DECIMALS, DEFAULT_SYMBOL
from .subscription import DEFAULT_PERIOD_SECONDS


ENV_PREFIX = "SESSIONPAY_"
DEFAULT_HOME = Path.home() / ".sessionpay"
# Well-known Hardhat account #1; only meaningful on the local ledger.
DEFAULT_LOCAL_MERCHANT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

LEDGER_BACKENDS = ("local", "jsonrpc")


@dataclass
class Settings:
    home: Path = DEFAULT_HOME
    ledger_backend: str = "local"
    rpc_url: Optional[str] = None
    token_address: Optional[str] = None
    chain_id: int = 84532
    merchant_account: str = DEFAULT_LOCAL_MERCHANT
    period_seconds: int = DEFAULT_PERIOD_SECONDS
    first_charge_delay_seconds: int = 0
    max_attempts: int = 3
    anchor_validity_seconds: float = 30.0
    confirmations: int = 2
    finality_timeout_seconds: float = 60.0
    lease_ttl_seconds: int = 300
    sweep_workers: int = 8
    vault_key: Optional[str] = None
    decimals: int = DEFAULT_DECIMALS
    symbol: str = DEFAULT_SYMBOL
    log_level: str = "WARNING"

    def __post_init__(self):
        self.home = Path(self.home).expanduser()
        if self.ledger_backend not in LEDGER_BACKENDS:
            raise ValueError(
                f"Unknown ledger backend {self.ledger_backend!r} (expected one of {', '.join(LEDGER_BACKENDS)})"
            )
        if self.ledger_backend == "jsonrpc" and not (self.rpc_url and self.token_address):
            raise ValueError("jsonrpc ledger needs SESSIONPAY_RPC_URL and SESSIONPAY_TOKEN_ADDRESS")
        if self.period_seconds <= 0:
            raise ValueError("period_seconds must be positive")

    @property
    def store_dir(self) -> Path:
        return self.home / "store"

    @property
    def audit_path(self) -> Path:
        return self.home / "audit.jsonl"

    @property
    def ledger_state_path(self) -> Path:
        return self.home / "ledger.json"

    @property
    def secrets_dir(self) -> Path:
        # Kept beside, not inside, the data directory.
        return self.home.parent / f"{self.home.name}-secrets"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value not in (None, "") else None

        kwargs: dict = {}
        text_fields = {
            "HOME": "home",
            "LEDGER": "ledger_backend",
            "RPC_URL": "rpc_url",
            "TOKEN_ADDRESS": "token_address",
            "MERCHANT_ACCOUNT": "merchant_account",
            "VAULT_KEY": "vault_key",
            "SYMBOL": "symbol",
            "LOG_LEVEL": "log_level",
        }
        int_fields = {
            "CHAIN_ID": "chain_id",
            "PERIOD_SECONDS": "period_seconds",
            "FIRST_CHARGE_DELAY_SECONDS": "first_charge_delay_seconds",
            "MAX_ATTEMPTS": "max_attempts",
            "CONFIRMATIONS": "confirmations",
            "LEASE_TTL_SECONDS": "lease_ttl_seconds",
            "SWEEP_WORKERS": "sweep_workers",
            "DECIMALS": "decimals",
        }
        float_fields = {
            "ANCHOR_VALIDITY_SECONDS": "anchor_validity_seconds",
            "FINALITY_TIMEOUT_SECONDS": "finality_timeout_seconds",
        }

        for name, attr in text_fields.items():
            value = get(name)
            if value is not None:
                kwargs[attr] = value
        for name, attr in int_fields.items():
            value = get(name)
            if value is not None:
                try:
                    kwargs[attr] = int(value)
                except ValueError as e:
                    raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {value!r}") from e
        for name, attr in float_fields.items():
            value = get(name)
            if value is not None:
                try:
                    kwargs[attr] = float(value)
                except ValueError as e:
                    raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from e

        if "home" in kwargs:
            kwargs["home"] = Path(kwargs["home"])
        return cls(**kwargs)
