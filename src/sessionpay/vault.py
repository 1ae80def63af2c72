"""
At-rest protection for delegate credentials.

Session-key private keys are the only secrets the engine holds. They are
sealed with Fernet before they reach the store, and opened only inside
the charge path when a transfer has to be signed.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import CredentialError
from .storage import load_or_create_secret


VAULT_KEY_ENV = "SESSIONPAY_VAULT_KEY"
DEFAULT_VAULT_KEY_PATH = Path.home() / ".sessionpay-secrets" / "vault.key"


class CredentialVault:
    """Seals and opens delegate credentials."""

    def __init__(self, key: Optional[bytes] = None, key_path: Optional[Path] = None):
        if key is None:
            env_key = os.getenv(VAULT_KEY_ENV)
            if env_key:
                key = env_key.encode()
            else:
                key = load_or_create_secret(key_path or DEFAULT_VAULT_KEY_PATH, Fernet.generate_key)
        self._fernet = Fernet(key)

    def seal(self, credential: str) -> str:
        return self._fernet.encrypt(credential.encode("utf-8")).decode("ascii")

    def open(self, sealed: str) -> str:
        try:
            return self._fernet.decrypt(sealed.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise CredentialError("Delegate credential could not be decrypted with this vault key") from e

    def __repr__(self) -> str:
        return "CredentialVault(<sealed>)"
