"""
Audit trail for grant and charge operations.

One JSON object per line. Each line carries an HMAC seal over its own
fields and the previous line's seal, so an edited, dropped or reordered
line breaks verification of everything after it.

The API server and a sweeping scheduler are separate processes writing
the same file. Appends are serialized with an flock on a sidecar lock
file, and the chain head is re-read from the end of the file under that
lock before every append.
"""

from __future__ import annotations

import fcntl
import hashlib
import hmac
import json
import os
import secrets
import threading
import time
from collections import Counter, deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from .errors import AuditIntegrityError
from .storage import ensure_private_dir, ensure_private_file, load_or_create_secret


DEFAULT_AUDIT_PATH = Path.home() / ".sessionpay" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".sessionpay-secrets" / "audit_hmac.key"
AUDIT_KEY_ENV = "SESSIONPAY_AUDIT_HMAC_KEY"

_SEAL_KEYS = frozenset({"prev_hash", "event_hash"})
_TAIL_CHUNK = 4096


class EventType(str, Enum):
    GRANT_ISSUED = "grant_issued"
    GRANT_ACTIVATED = "grant_activated"
    GRANT_REVOKED = "grant_revoked"
    CHARGE_ATTEMPTED = "charge_attempted"
    CHARGE_SUBMITTED = "charge_submitted"
    CHARGE_SETTLED = "charge_settled"
    CHARGE_FAILED = "charge_failed"
    CHARGE_REJECTED = "charge_rejected"
    VERIFICATION_MISMATCH = "verification_mismatch"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


@dataclass
class AuditEvent:
    """One sealed line of the trail."""

    event_type: str
    timestamp: float
    subscription_id: Optional[str] = None
    owner: Optional[str] = None
    delegate: Optional[str] = None
    amount: Optional[int] = None
    tx_ref: Optional[str] = None
    success: bool = True
    reason: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    prev_hash: Optional[str] = None
    event_hash: Optional[str] = None

    @classmethod
    def from_line(cls, raw: dict) -> "AuditEvent":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None}, separators=(",", ":"))


def _seal(key: bytes, prev_hash: str, payload: dict) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256).hexdigest()


def _last_line(path: Path) -> Optional[bytes]:
    """Last non-empty line of ``path``, read backwards in chunks."""
    with open(path, "rb") as f:
        f.seek(0, os.SEEK_END)
        pos = f.tell()
        buf = b""
        while pos > 0:
            step = min(_TAIL_CHUNK, pos)
            pos -= step
            f.seek(pos)
            buf = f.read(step) + buf
            lines = [line for line in buf.splitlines() if line.strip()]
            # With two or more lines the last one is known to be whole.
            if len(lines) > 1 or (lines and pos == 0):
                return lines[-1]
    return None


class AuditTrail:
    """Tamper-evident append-only audit log, safe for several writer processes."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = path or DEFAULT_AUDIT_PATH
        self.key_path = key_path or DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_file(self.path)
        self._lock_path = self.path.with_name(f".{self.path.name}.lock")
        ensure_private_file(self._lock_path)

        self._hmac_key = self._load_or_create_key()
        self._mutex = threading.Lock()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_KEY_ENV)
        if env_key:
            return env_key.encode()
        return load_or_create_secret(self.key_path, lambda: secrets.token_hex(32).encode())

    @contextmanager
    def _locked(self, mode: int = fcntl.LOCK_EX):
        with self._mutex, open(self._lock_path, "r+") as lockf:
            fcntl.flock(lockf.fileno(), mode)
            try:
                yield
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    def _chain_head(self) -> str:
        line = _last_line(self.path)
        if line is None:
            return ""
        return json.loads(line).get("event_hash") or ""

    def log(
        self,
        event_type: EventType,
        subscription_id: Optional[str] = None,
        owner: Optional[str] = None,
        delegate: Optional[str] = None,
        amount: Optional[int] = None,
        tx_ref: Optional[str] = None,
        success: bool = True,
        reason: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        payload = {
            k: v
            for k, v in (
                ("event_type", event_type.value),
                ("timestamp", time.time()),
                ("subscription_id", subscription_id),
                ("owner", owner),
                ("delegate", delegate),
                ("amount", amount),
                ("tx_ref", tx_ref),
                ("success", success),
                ("reason", reason),
                ("details", details),
            )
            if v is not None
        }

        with self._locked():
            prev_hash = self._chain_head()
            event = AuditEvent(
                **payload,
                prev_hash=prev_hash or None,
                event_hash=_seal(self._hmac_key, prev_hash, payload),
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(event.to_json() + "\n")
                f.flush()
                os.fsync(f.fileno())
        return event

    def _verified_lines(self) -> Iterator[dict]:
        with self._locked(fcntl.LOCK_SH):
            with open(self.path, encoding="utf-8") as f:
                lines = f.readlines()

        expected_prev = ""
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            raw = json.loads(line)
            prev_hash = raw.get("prev_hash") or ""
            if prev_hash != expected_prev:
                raise AuditIntegrityError(f"Audit chain broken at line {lineno}: previous hash mismatch")
            payload = {k: v for k, v in raw.items() if k not in _SEAL_KEYS}
            event_hash = raw.get("event_hash") or ""
            if not hmac.compare_digest(_seal(self._hmac_key, prev_hash, payload), event_hash):
                raise AuditIntegrityError(f"Audit chain broken at line {lineno}: event hash mismatch")
            expected_prev = event_hash
            yield raw

    def read_events(
        self,
        subscription_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Verify the whole chain and return the last ``limit`` matching events."""
        matches = (
            AuditEvent.from_line(raw)
            for raw in self._verified_lines()
            if (not subscription_id or raw.get("subscription_id") == subscription_id)
            and (event_type is None or raw.get("event_type") == event_type.value)
        )
        return list(deque(matches, maxlen=max(limit, 0)))

    def summary(self, subscription_id: Optional[str] = None) -> dict:
        events = self.read_events(subscription_id=subscription_id, limit=10000)
        return {
            "total_events": len(events),
            "by_type": dict(Counter(e.event_type for e in events)),
            "failures": sum(1 for e in events if not e.success),
            "last_event": events[-1].to_json() if events else None,
        }
