"""Tests for the periodic charge sweep."""

import threading

from eth_account import Account

from sessionpay.scheduler import ChargeScheduler

from conftest import MERCHANT, NOW, PERIOD


class TestSweep:
    def test_sweep_charges_only_due_subscriptions(self, make_active, store, executor, backend):
        due = [make_active(period_amount=5, periods=2) for _ in range(3)]
        later = make_active(period_amount=5, periods=2, now=NOW + PERIOD)
        scheduler = ChargeScheduler(store, executor, max_workers=4)

        summary = scheduler.run_once(now=NOW)

        assert summary.due == 3
        assert summary.settled == 3
        assert summary.failed == 0
        assert {r.subscription_id for r in summary.results} == {r.subscription_id for r in due}
        assert store.get(later.subscription_id).periods_remaining == 2
        assert backend.get_balance(MERCHANT) == 15

    def test_one_failure_does_not_stop_the_sweep(self, make_active, store, executor, backend):
        healthy = make_active(period_amount=5, periods=2)
        broke = make_active(period_amount=5, periods=2, fund=0, owner=Account.create())
        scheduler = ChargeScheduler(store, executor)

        summary = scheduler.run_once(now=NOW)

        assert summary.settled == 1
        assert summary.failed == 1
        by_id = {r.subscription_id: r for r in summary.results}
        assert by_id[healthy.subscription_id].ok
        assert by_id[broke.subscription_id].error == "permanent"

    def test_repeated_sweep_does_not_recharge(self, make_active, store, executor, backend):
        make_active(period_amount=5, periods=3)
        scheduler = ChargeScheduler(store, executor)

        scheduler.run_once(now=NOW)
        second = scheduler.run_once(now=NOW)

        assert second.due == 0
        assert backend.get_balance(MERCHANT) == 5

    def test_overlapping_sweeps_charge_once(self, make_active, store, executor, backend):
        receipts = [make_active(period_amount=5, periods=3) for _ in range(3)]
        scheduler = ChargeScheduler(store, executor, max_workers=3)

        summaries = []
        threads = [
            threading.Thread(target=lambda: summaries.append(scheduler.run_once(now=NOW)))
            for _ in range(2)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(s.settled for s in summaries) == 3
        assert backend.get_balance(MERCHANT) == 15
        for receipt in receipts:
            assert store.get(receipt.subscription_id).periods_remaining == 2

    def test_empty_sweep(self, store, executor):
        summary = ChargeScheduler(store, executor).run_once(now=NOW)
        assert summary.due == 0
        assert summary.to_dict()["results"] == []


class TestRunForever:
    def test_stops_after_max_sweeps(self, make_active, store, executor):
        make_active(period_amount=5, periods=3)
        scheduler = ChargeScheduler(store, executor, clock=lambda: NOW)

        sweeps = scheduler.run_forever(interval_seconds=0, max_sweeps=2)

        assert sweeps == 2

    def test_stop_event_ends_loop(self, store, executor):
        stop = threading.Event()
        stop.set()
        scheduler = ChargeScheduler(store, executor)
        assert scheduler.run_forever(interval_seconds=0, stop_event=stop) == 0
