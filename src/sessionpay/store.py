"""
Capability store for subscriptions.

Uses a SQLite database so read-modify-write of a single subscription is
atomic across threads and processes. Charge history lives in its own
append-only table; rows are inserted, never updated.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import AlreadyInProgressError, NotDueError, NotFoundError, StoreUnavailableError
from .storage import ensure_private_dir
from .subscription import ChargeRecord, Subscription, SubscriptionStatus
from .vault import CredentialVault

logger = logging.getLogger(__name__)


DEFAULT_STORE_DIR = Path.home() / ".sessionpay" / "store"
DEFAULT_LEASE_TTL_SECONDS = 300

_IMMUTABLE_FIELDS = (
    "id",
    "owner_account",
    "owner_source_account",
    "delegate_account",
    "period_amount",
    "periods_at_creation",
    "approved_ceiling",
    "period_seconds",
    "created_at",
)

_ALLOWED_TRANSITIONS = {
    SubscriptionStatus.PENDING.value: {
        SubscriptionStatus.PENDING.value,
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.REVOKED.value,
    },
    SubscriptionStatus.ACTIVE.value: {
        SubscriptionStatus.ACTIVE.value,
        SubscriptionStatus.EXPIRED.value,
        SubscriptionStatus.REVOKED.value,
    },
    SubscriptionStatus.EXPIRED.value: {SubscriptionStatus.EXPIRED.value},
    SubscriptionStatus.REVOKED.value: {SubscriptionStatus.REVOKED.value},
}

Mutation = Callable[[Subscription], Subscription]


class DueSnapshot:
    """Point-in-time list of due subscriptions.

    Rows are captured in one read transaction and decoded on iteration, so
    the snapshot can be walked more than once. Records may be stale by the
    time they are used; callers re-check before acting.
    """

    def __init__(self, taken_at: int, rows: list[sqlite3.Row], history: dict[str, list[ChargeRecord]]):
        self.taken_at = taken_at
        self._rows = rows
        self._history = history

    def __iter__(self) -> Iterator[Subscription]:
        for row in self._rows:
            yield _row_to_subscription(row, self._history.get(row["id"], []))

    def __len__(self) -> int:
        return len(self._rows)

    @property
    def ids(self) -> list[str]:
        return [row["id"] for row in self._rows]


class SubscriptionStore:
    """
    Durable record of every delegated grant.

    Every write runs inside BEGIN IMMEDIATE, which serializes writers on the
    database and makes ``update`` an atomic per-record read-modify-write.
    """

    def __init__(
        self,
        store_dir: Optional[Path] = None,
        vault: Optional[CredentialVault] = None,
        lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS,
    ):
        self.store_dir = store_dir or DEFAULT_STORE_DIR
        ensure_private_dir(self.store_dir)
        self.db_path = self.store_dir / "subscriptions.sqlite3"
        self.vault = vault or CredentialVault(
            key_path=self.store_dir.parent / ".sessionpay-secrets" / "vault.key"
        )
        self.lease_ttl_seconds = lease_ttl_seconds
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = True):
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open subscription store: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            _rollback(conn)
            raise StoreUnavailableError(f"Subscription store I/O failed: {e}") from e
        except BaseException:
            _rollback(conn)
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot open subscription store: {e}") from e
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    owner_account TEXT NOT NULL,
                    owner_source_account TEXT NOT NULL,
                    delegate_account TEXT NOT NULL UNIQUE,
                    delegate_credential TEXT NOT NULL,
                    period_amount INTEGER NOT NULL,
                    periods_at_creation INTEGER NOT NULL,
                    periods_remaining INTEGER NOT NULL,
                    approved_ceiling INTEGER NOT NULL,
                    period_seconds INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    activated_at INTEGER,
                    next_charge_at INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    revoked_reason TEXT,
                    lease_token TEXT,
                    lease_expires_at INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS charge_history (
                    subscription_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    timestamp INTEGER NOT NULL,
                    amount INTEGER NOT NULL,
                    outcome TEXT NOT NULL,
                    attempt_id TEXT NOT NULL,
                    tx_ref TEXT,
                    pre_balance INTEGER,
                    reason TEXT,
                    PRIMARY KEY (subscription_id, seq)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_subscriptions_due
                ON subscriptions (status, next_charge_at)
                """
            )
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"Cannot initialize subscription store: {e}") from e
        finally:
            conn.close()

    # ── Reads ─────────────────────────────────────────────────────

    def _history(self, conn: sqlite3.Connection, subscription_id: str) -> list[ChargeRecord]:
        rows = conn.execute(
            "SELECT * FROM charge_history WHERE subscription_id = ? ORDER BY seq ASC",
            (subscription_id,),
        ).fetchall()
        return [_row_to_record(r) for r in rows]

    def _load(
        self,
        conn: sqlite3.Connection,
        subscription_id: str,
        with_credential: bool = False,
    ) -> Optional[Subscription]:
        row = conn.execute(
            "SELECT * FROM subscriptions WHERE id = ?",
            (subscription_id,),
        ).fetchone()
        if row is None:
            return None
        sub = _row_to_subscription(row, self._history(conn, subscription_id))
        if with_credential:
            sub.delegate_credential = self.vault.open(row["delegate_credential"])
        return sub

    def get(self, subscription_id: str, with_credential: bool = False) -> Subscription:
        """Load one subscription. The credential is only decrypted on request."""
        with self._transaction(immediate=False) as conn:
            sub = self._load(conn, subscription_id, with_credential=with_credential)
        if sub is None:
            raise NotFoundError(subscription_id)
        return sub

    def list_due(self, now: int) -> DueSnapshot:
        """Snapshot of active subscriptions whose next charge is due at ``now``."""
        with self._transaction(immediate=False) as conn:
            rows = conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE status = ? AND next_charge_at <= ? AND periods_remaining > 0
                ORDER BY next_charge_at ASC, id ASC
                """,
                (SubscriptionStatus.ACTIVE.value, int(now)),
            ).fetchall()
            history = {row["id"]: self._history(conn, row["id"]) for row in rows}
        return DueSnapshot(int(now), rows, history)

    def list_all(self, status: Optional[str] = None) -> list[Subscription]:
        with self._transaction(immediate=False) as conn:
            if status:
                rows = conn.execute(
                    "SELECT * FROM subscriptions WHERE status = ? ORDER BY created_at ASC, id ASC",
                    (status,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM subscriptions ORDER BY created_at ASC, id ASC"
                ).fetchall()
            return [_row_to_subscription(r, self._history(conn, r["id"])) for r in rows]

    # ── Writes ────────────────────────────────────────────────────

    def create(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription record."""
        if not subscription.delegate_credential:
            raise ValueError("Subscription must carry its delegate credential")
        sealed = self.vault.seal(subscription.delegate_credential)
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO subscriptions (
                        id, owner_account, owner_source_account, delegate_account,
                        delegate_credential, period_amount, periods_at_creation,
                        periods_remaining, approved_ceiling, period_seconds, created_at,
                        activated_at, next_charge_at, status, revoked_reason
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        subscription.id,
                        subscription.owner_account,
                        subscription.owner_source_account,
                        subscription.delegate_account,
                        sealed,
                        subscription.period_amount,
                        subscription.periods_at_creation,
                        subscription.periods_remaining,
                        subscription.approved_ceiling,
                        subscription.period_seconds,
                        subscription.created_at,
                        subscription.activated_at,
                        subscription.next_charge_at,
                        subscription.status,
                        subscription.revoked_reason,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Subscription already exists or reuses a delegate: {subscription.id}") from e
            _insert_history(conn, subscription.id, 0, subscription.charge_history)
        logger.info("Subscription stored: %s (status: %s)", subscription.id, subscription.status)
        return replace(subscription, delegate_credential=None)

    def update(
        self,
        subscription_id: str,
        mutation: Mutation,
        lease_token: Optional[str] = None,
    ) -> Subscription:
        """
        Atomically apply ``mutation`` to one subscription.

        The mutation receives the current record and returns the new one.
        Exceptions raised by the mutation roll the transaction back. When
        ``lease_token`` is given, the write only commits if that charge lease
        is still held.
        """
        with self._transaction() as conn:
            current = self._load(conn, subscription_id)
            if current is None:
                raise NotFoundError(subscription_id)
            if lease_token is not None:
                row = conn.execute(
                    "SELECT lease_token FROM subscriptions WHERE id = ?",
                    (subscription_id,),
                ).fetchone()
                if row["lease_token"] != lease_token:
                    raise AlreadyInProgressError(f"Charge lease lost for {subscription_id}")
            working = replace(current, charge_history=list(current.charge_history))
            updated = mutation(working)
            _check_invariants(current, updated)
            conn.execute(
                """
                UPDATE subscriptions
                SET periods_remaining = ?, next_charge_at = ?, status = ?,
                    activated_at = ?, revoked_reason = ?
                WHERE id = ?
                """,
                (
                    updated.periods_remaining,
                    updated.next_charge_at,
                    updated.status,
                    updated.activated_at,
                    updated.revoked_reason,
                    subscription_id,
                ),
            )
            _insert_history(
                conn,
                subscription_id,
                len(current.charge_history),
                updated.charge_history[len(current.charge_history):],
            )
        return replace(updated, delegate_credential=None)

    # ── Charge leases ─────────────────────────────────────────────

    def acquire_charge_lease(self, subscription_id: str, now: int) -> tuple[str, Subscription]:
        """
        Claim a subscription for one charge attempt.

        Re-checks due-ness inside the same transaction that takes the lease.
        Returns the lease token and the record with its credential opened.
        """
        wall = int(time.time())
        with self._transaction() as conn:
            sub = self._load(conn, subscription_id, with_credential=True)
            if sub is None:
                raise NotFoundError(subscription_id)
            reason = sub.not_due_reason(now)
            if reason:
                raise NotDueError(reason)
            row = conn.execute(
                "SELECT lease_token, lease_expires_at FROM subscriptions WHERE id = ?",
                (subscription_id,),
            ).fetchone()
            if row["lease_token"] and row["lease_expires_at"] > wall:
                raise AlreadyInProgressError(f"Charge already in progress for {subscription_id}")
            if row["lease_token"]:
                logger.warning("Reclaiming expired charge lease on %s", subscription_id)
            token = secrets.token_hex(8)
            conn.execute(
                "UPDATE subscriptions SET lease_token = ?, lease_expires_at = ? WHERE id = ?",
                (token, wall + self.lease_ttl_seconds, subscription_id),
            )
        return token, sub

    def release_charge_lease(self, subscription_id: str, lease_token: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE subscriptions SET lease_token = NULL, lease_expires_at = 0
                WHERE id = ? AND lease_token = ?
                """,
                (subscription_id, lease_token),
            )


def _rollback(conn: sqlite3.Connection) -> None:
    try:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
    except sqlite3.Error:
        logger.warning("Rollback failed on subscription store", exc_info=True)


def _insert_history(
    conn: sqlite3.Connection,
    subscription_id: str,
    start_seq: int,
    records: list[ChargeRecord],
) -> None:
    for offset, record in enumerate(records):
        conn.execute(
            """
            INSERT INTO charge_history (
                subscription_id, seq, timestamp, amount, outcome,
                attempt_id, tx_ref, pre_balance, reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                subscription_id,
                start_seq + offset,
                record.timestamp,
                record.amount,
                record.outcome,
                record.attempt_id,
                record.tx_ref,
                record.pre_balance,
                record.reason,
            ),
        )


def _check_invariants(current: Subscription, updated: Subscription) -> None:
    for name in _IMMUTABLE_FIELDS:
        if getattr(current, name) != getattr(updated, name):
            raise ValueError(f"Field {name} is immutable")
    if updated.periods_remaining > current.periods_remaining:
        raise ValueError("periods_remaining may only decrease")
    if updated.periods_remaining < 0:
        raise ValueError("periods_remaining cannot be negative")
    if updated.next_charge_at < current.next_charge_at:
        raise ValueError("next_charge_at may only move forward")
    if updated.status not in _ALLOWED_TRANSITIONS.get(current.status, set()):
        raise ValueError(f"Invalid status transition {current.status} -> {updated.status}")
    if current.activated_at is not None and updated.activated_at != current.activated_at:
        raise ValueError("activated_at is set once")
    prior = len(current.charge_history)
    if updated.charge_history[:prior] != current.charge_history:
        raise ValueError("charge_history is append-only")


def _row_to_record(row: sqlite3.Row) -> ChargeRecord:
    return ChargeRecord(
        timestamp=row["timestamp"],
        amount=row["amount"],
        outcome=row["outcome"],
        attempt_id=row["attempt_id"],
        tx_ref=row["tx_ref"],
        pre_balance=row["pre_balance"],
        reason=row["reason"],
    )


def _row_to_subscription(row: sqlite3.Row, history: list[ChargeRecord]) -> Subscription:
    return Subscription(
        id=row["id"],
        owner_account=row["owner_account"],
        owner_source_account=row["owner_source_account"],
        delegate_account=row["delegate_account"],
        period_amount=row["period_amount"],
        periods_at_creation=row["periods_at_creation"],
        periods_remaining=row["periods_remaining"],
        approved_ceiling=row["approved_ceiling"],
        period_seconds=row["period_seconds"],
        created_at=row["created_at"],
        next_charge_at=row["next_charge_at"],
        status=row["status"],
        activated_at=row["activated_at"],
        revoked_reason=row["revoked_reason"],
        charge_history=history,
    )
