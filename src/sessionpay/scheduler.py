"""
Periodic sweep over due subscriptions.

Each due subscription is charged independently on a worker thread. The
executor's lease keeps overlapping sweeps from double-charging, so a slow
sweep and the next one may safely run side by side.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import StoreUnavailableError
from .executor import ChargeExecutor, ChargeFailure, ChargeResult, ChargeState
from .store import SubscriptionStore

logger = logging.getLogger(__name__)


DEFAULT_MAX_WORKERS = 8
DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass
class SweepSummary:
    due: int = 0
    settled: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[ChargeResult] = field(default_factory=list)

    def add(self, result: ChargeResult) -> None:
        self.results.append(result)
        if result.ok:
            self.settled += 1
        elif result.error in (ChargeFailure.NOT_DUE.value, ChargeFailure.ALREADY_IN_PROGRESS.value):
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict:
        return {
            "due": self.due,
            "settled": self.settled,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


class ChargeScheduler:
    """Charges every subscription that is due, one sweep at a time."""

    def __init__(
        self,
        store: SubscriptionStore,
        executor: ChargeExecutor,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.executor = executor
        self.max_workers = max(1, max_workers)
        self.clock = clock

    def run_once(self, now: Optional[int] = None) -> SweepSummary:
        now = int(self.clock()) if now is None else int(now)
        snapshot = self.store.list_due(now)
        summary = SweepSummary(due=len(snapshot))
        if not snapshot:
            logger.debug("Sweep at %d: nothing due", now)
            return summary

        logger.info("Sweep at %d: %d subscription(s) due", now, len(snapshot))
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self.executor.charge, subscription_id, now): subscription_id
                for subscription_id in snapshot.ids
            }
            for future in as_completed(futures):
                subscription_id = futures[future]
                try:
                    result = future.result()
                except Exception as e:
                    logger.exception("Charge crashed for %s", subscription_id)
                    result = ChargeResult(
                        ok=False,
                        subscription_id=subscription_id,
                        state=ChargeState.FAILED.value,
                        error=ChargeFailure.PERMANENT.value,
                        reason=f"{type(e).__name__}: {e}",
                    )
                summary.add(result)

        logger.info(
            "Sweep complete: %d settled, %d failed, %d skipped",
            summary.settled, summary.failed, summary.skipped,
        )
        return summary

    def run_forever(
        self,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
        stop_event: Optional[threading.Event] = None,
        max_sweeps: Optional[int] = None,
    ) -> int:
        """Sweep every ``interval_seconds`` until stopped. Returns sweeps run."""
        stop_event = stop_event or threading.Event()
        sweeps = 0
        while not stop_event.is_set():
            try:
                self.run_once()
            except StoreUnavailableError as e:
                logger.warning("Sweep skipped, store unavailable: %s", e)
            sweeps += 1
            if max_sweeps is not None and sweeps >= max_sweeps:
                break
            stop_event.wait(interval_seconds)
        return sweeps
