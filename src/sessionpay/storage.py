"""Local storage hardening helpers."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, 0o700)


def ensure_private_file(path: Path) -> None:
    if not path.exists():
        path.touch()
    os.chmod(path, 0o600)


def load_or_create_secret(path: Path, factory) -> bytes:
    """Read a secret from ``path`` or create it once with ``factory()``."""
    if path.exists() and path.stat().st_size > 0:
        return path.read_bytes().strip()
    ensure_private_dir(path.parent)
    secret = factory()
    path.write_bytes(secret)
    ensure_private_file(path)
    return secret


def atomic_write_json(path: Path, payload: Any) -> None:
    tmp_path = path.with_suffix(path.suffix + f".tmp.{os.getpid()}")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    ensure_private_file(path)
