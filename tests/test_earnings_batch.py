from __future__ import annotations

import threading

import pytest

from finance_engine.aggregation.batch import resolve_active_users, run_earnings_batch
from finance_engine.aggregation.earnings import MonthlyEarningsAggregator
from finance_engine.aggregation.models import RunKind, RunStatus
from finance_engine.common.errors import StoreUnavailableError
from finance_engine.common.shutdown import SHUTDOWN_EVENT
from tests.conftest import make_tx, ts


def _seed_users(store, n: int) -> list[str]:
    uids = [f"c{i:02d}" for i in range(n)]
    for i, uid in enumerate(uids):
        store.add_transaction(make_tx(f"e{i}", uid, "chat-spend", "IN", 100 + i, ts(2025, 1, 1 + (i % 27))))
    return uids


class _FlakyAggregator(MonthlyEarningsAggregator):
    def __init__(self, store, *, fail: dict[str, BaseException], **kwargs):
        super().__init__(store, **kwargs)
        self._fail = fail
        self.seen: list[str] = []
        self._lock = threading.Lock()

    def aggregate(self, user_id, year, month, *, force=True):
        with self._lock:
            self.seen.append(user_id)
        err = self._fail.get(user_id)
        if err is not None:
            raise err
        return super().aggregate(user_id, year, month, force=force)


def test_batch_aggregates_every_active_user(store, clock):
    uids = _seed_users(store, 12)
    store.add_transaction(make_tx("feb", "late", "chat-spend", "IN", 5, ts(2025, 2, 1)))

    assert resolve_active_users(store, 2025, 1) == uids

    result = run_earnings_batch(store, 2025, 1, max_workers=4, clock=clock)
    assert result.status == RunStatus.COMPLETED
    assert result.ok
    assert (result.processed, result.failed, result.skipped) == (12, 0, 0)
    assert len(store.list_earnings_snapshots(through=(2025, 1))) == 12

    runs = store.list_runs(period="2025-01")
    assert len(runs) == 1
    assert runs[0].run_id == result.run_id
    assert runs[0].kind == RunKind.CREATOR_EARNINGS
    assert runs[0].status == RunStatus.COMPLETED


def test_single_user_failure_does_not_abort_the_batch(store, clock):
    uids = _seed_users(store, 6)
    agg = _FlakyAggregator(store, clock=clock, fail={"c03": RuntimeError("bad doc")})

    result = run_earnings_batch(store, 2025, 1, aggregator=agg, max_workers=3, clock=clock)

    assert result.status == RunStatus.PARTIAL
    assert (result.processed, result.failed, result.skipped) == (5, 1, 0)
    assert result.failures == {"c03": "RuntimeError: bad doc"}
    assert store.get_earnings_snapshot("c03", 2025, 1) is None
    assert sorted(agg.seen) == uids


def test_store_unavailable_aborts_the_run(store, clock):
    _seed_users(store, 5)
    agg = _FlakyAggregator(store, clock=clock, fail={"c00": StoreUnavailableError("firestore down")})

    with pytest.raises(StoreUnavailableError):
        run_earnings_batch(store, 2025, 1, aggregator=agg, user_ids=["c00", "c01", "c02"], max_workers=1, clock=clock)

    run = store.list_runs(period="2025-01")[0]
    assert run.status == RunStatus.ABORTED
    assert run.skipped == 2
    assert run.error == "firestore down"


def test_cancellation_is_checked_between_users(store, clock):
    _seed_users(store, 5)
    cancel = threading.Event()

    class _CancelAfterFirst(MonthlyEarningsAggregator):
        def aggregate(self, user_id, year, month, *, force=True):
            snap = super().aggregate(user_id, year, month, force=force)
            cancel.set()
            return snap

    agg = _CancelAfterFirst(store, clock=clock)
    result = run_earnings_batch(store, 2025, 1, aggregator=agg, max_workers=1, cancel_event=cancel, clock=clock)

    assert result.status == RunStatus.CANCELLED
    assert (result.processed, result.skipped) == (1, 4)
    # Work completed before cancellation stays written.
    assert store.get_earnings_snapshot("c00", 2025, 1) is not None


def test_process_shutdown_event_cancels_by_default(store, clock):
    _seed_users(store, 3)
    SHUTDOWN_EVENT.set()
    result = run_earnings_batch(store, 2025, 1, max_workers=2, clock=clock)
    assert result.status == RunStatus.CANCELLED
    assert result.skipped == 3
    assert store.list_earnings_snapshots() == []


def test_explicit_user_ids_are_deduplicated(store, clock):
    _seed_users(store, 2)
    result = run_earnings_batch(store, 2025, 1, user_ids=["c00", "c00", " ", "c01"], max_workers=2, clock=clock)
    assert result.processed == 2


def test_rerun_over_unchanged_ledger_is_identical(store, clock):
    _seed_users(store, 4)
    run_earnings_batch(store, 2025, 1, max_workers=2, clock=clock)
    before = {s.user_id: s.to_firestore_doc() for s in store.list_earnings_snapshots()}

    clock.now = clock.now.replace(day=25)
    run_earnings_batch(store, 2025, 1, max_workers=2, clock=clock)
    after = {s.user_id: s.to_firestore_doc() for s in store.list_earnings_snapshots()}
    assert after == before
