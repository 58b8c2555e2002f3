from __future__ import annotations

import threading

import pytest

from finance_engine.aggregation.models import RunKind, RunStatus
from finance_engine.common.errors import EngineOperationError, InvalidPeriodError
from finance_engine.jobs.monthly_close import run_monthly_close
from finance_engine.reconciliation.models import AnomalyStatus, AnomalyType
from finance_engine.service import FinanceEngine
from tests.conftest import make_payout, make_tx, ts


def _seed(store, wallet) -> None:
    store.add_transaction(make_tx("buy", "p1", "purchase", "IN", 1000, ts(2025, 2, 1)))
    store.add_transaction(make_tx("s1", "p1", "call-spend", "OUT", 500, ts(2025, 2, 2)))
    store.add_transaction(
        make_tx("e1", "c1", "call-spend", "IN", 500, ts(2025, 2, 2), meta={"creatorShare": 400, "platformShare": 100})
    )
    store.add_transaction(
        make_tx("e2", "c1", "chat-spend", "IN", 100, ts(2025, 2, 3), meta={"creatorShare": 90, "platformShare": 90})
    )
    store.add_transaction(make_tx("s2", "p1", "chat-spend", "OUT", 100, ts(2025, 2, 3)))
    store.add_transaction(make_tx("e3", "c1", "chat-spend", "IN", 40, ts(2025, 3, 2)))
    store.add_payout(make_payout("po", "c1", 200, created_at=ts(2025, 2, 10), processed_at=ts(2025, 2, 11)))
    store.set_wallet(wallet("p1", 400))
    store.set_wallet(wallet("c1", 600))


def test_monthly_close_runs_batch_then_rollup_then_detection(store, clock, wallet):
    _seed(store, wallet)
    engine = FinanceEngine(store, clock=clock)

    report = run_monthly_close(engine)

    assert report.period == "2025-02"
    assert report.complete
    assert report.batch.processed == 2
    assert report.platform is not None
    assert report.platform.gmv_tokens == 600
    assert report.platform.outstanding_creator_liability_tokens == 465 - 200
    assert report.anomalies == 1
    kinds = {r.kind for r in store.list_runs(period="2025-02")}
    assert kinds == {RunKind.CREATOR_EARNINGS, RunKind.ANOMALY_DETECTION}

    [a] = store.list_anomalies()
    assert a.type == AnomalyType.INVALID_SPLIT
    assert a.metadata["transactionIds"] == ["e2"]


def test_detect_anomalies_modes(store, clock, wallet):
    _seed(store, wallet)
    store.set_wallet(wallet("c1", 999))
    engine = FinanceEngine(store, clock=clock)

    user_only = engine.detect_anomalies(user_id="c1", persist=False)
    assert [a.type for a in user_only] == [AnomalyType.BALANCE_MISMATCH]

    period_scoped = engine.detect_anomalies(user_id="c1", year=2025, month=2, persist=False)
    assert {a.type for a in period_scoped} == {AnomalyType.INVALID_SPLIT, AnomalyType.BALANCE_MISMATCH}

    every_wallet = engine.detect_anomalies()
    assert {(a.type, a.user_id) for a in every_wallet} == {(AnomalyType.BALANCE_MISMATCH, "c1")}
    assert store.list_runs()[0].status == RunStatus.COMPLETED

    with pytest.raises(InvalidPeriodError):
        engine.detect_anomalies(year=2025)


def test_review_workflow_is_the_only_status_path(store, clock, wallet):
    _seed(store, wallet)
    store.set_wallet(wallet("c1", 999))
    engine = FinanceEngine(store, clock=clock)
    [a] = engine.detect_anomalies(user_id="c1")

    reviewed = engine.review_anomaly(a.id, AnomalyStatus.RESOLVED, reviewer="ops")
    assert reviewed.status == AnomalyStatus.RESOLVED
    assert reviewed.resolved_at == clock()

    # Re-detection within the month returns the reviewed record, not a new one.
    [again] = engine.detect_anomalies(user_id="c1")
    assert again.status == AnomalyStatus.RESOLVED

    with pytest.raises(ValueError):
        engine.review_anomaly(a.id, AnomalyStatus.OPEN, reviewer=" ")


def test_get_summary_reads_through_current_month(store, clock, wallet):
    _seed(store, wallet)
    engine = FinanceEngine(store, clock=clock)
    engine.aggregate_month("c1", 2025, 2)

    summary = engine.get_summary("c1")

    assert (summary.year, summary.month) == (2025, 3)
    assert summary.current_month.net_earned == 40
    assert store.get_earnings_snapshot("c1", 2025, 3) == summary.current_month
    assert summary.lifetime_net_earned == 640
    assert summary.lifetime_creator_share == 465 + 26
    assert summary.lifetime_payout_paid_tokens == 200
    assert summary.wallet_balance == 600
    assert summary.open_anomalies == 0


def test_get_summary_returns_cached_current_month_snapshot(store, clock, wallet):
    _seed(store, wallet)
    engine = FinanceEngine(store, clock=clock)
    cached = engine.aggregate_month("c1", 2025, 3)
    store.add_transaction(make_tx("late", "c1", "chat-spend", "IN", 110, ts(2025, 3, 10)))

    summary = engine.get_summary("c1")

    assert summary.current_month == cached
    assert summary.current_month.net_earned == 40
    assert engine.aggregate_month("c1", 2025, 3, force=True).net_earned == 150


def test_get_summary_wraps_store_failures_with_correlation_id(store, clock, monkeypatch):
    engine = FinanceEngine(store, clock=clock)

    def _boom(**kwargs):
        raise RuntimeError("backend exploded")

    monkeypatch.setattr(store, "list_earnings_snapshots", _boom)

    with pytest.raises(EngineOperationError) as ei:
        engine.get_summary("c1")
    assert ei.value.correlation_id
    assert ei.value.correlation_id in str(ei.value)
    assert isinstance(ei.value.cause, RuntimeError)


def test_aggregate_month_defaults_to_cached_snapshot(store, clock, wallet):
    _seed(store, wallet)
    engine = FinanceEngine(store, clock=clock)
    first = engine.aggregate_month("c1", 2025, 2)
    store.add_transaction(make_tx("late", "c1", "chat-spend", "IN", 10, ts(2025, 2, 20)))

    assert engine.aggregate_month("c1", 2025, 2) == first
    assert engine.aggregate_month("c1", 2025, 2, force=True).earned_tokens == first.earned_tokens + 10


def test_monthly_close_stops_before_rollup_when_cancelled(store, clock, wallet):
    _seed(store, wallet)
    engine = FinanceEngine(store, clock=clock)
    cancel = threading.Event()
    cancel.set()

    report = run_monthly_close(engine, year=2025, month=2, cancel_event=cancel)

    assert report.batch.status == RunStatus.CANCELLED
    assert report.platform is None
    assert not report.complete
    assert store.get_platform_snapshot(2025, 2) is None
    assert store.list_anomalies() == []
