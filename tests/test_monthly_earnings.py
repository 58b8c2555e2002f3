from __future__ import annotations

import pytest

from finance_engine.aggregation.earnings import MonthlyEarningsAggregator, compute_creator_earnings
from finance_engine.common.config import EngineSettings
from finance_engine.common.errors import InvalidPeriodError
from finance_engine.ledger.models import PayoutStatus
from finance_engine.persistence.memory_store import InMemoryFinanceStore
from tests.conftest import FixedClock, make_payout, make_tx, ts


class _CountingStore(InMemoryFinanceStore):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.reads = 0
        self.writes = 0

    def iter_transactions(self, start, end, *, user_id=None):
        self.reads += 1
        return super().iter_transactions(start, end, user_id=user_id)

    def put_earnings_snapshot(self, snapshot):
        self.writes += 1
        super().put_earnings_snapshot(snapshot)


def _seed(store) -> None:
    store.add_transaction(make_tx("e1", "c1", "chat-spend", "IN", 101, ts(2025, 1, 3)))
    store.add_transaction(make_tx("e2", "c1", "calendar-booking", "IN", 200, ts(2025, 1, 10)))
    store.add_transaction(make_tx("e3", "c1", "event-ticket", "IN", 50, ts(2025, 1, 20)))
    store.add_transaction(
        make_tx("r1", "c1", "calendar-refund", "OUT", 200, ts(2025, 1, 11), meta={"originalTransactionId": "e2"})
    )
    # payer leg of the booking, never counted for the creator
    store.add_transaction(make_tx("s1", "p1", "calendar-booking", "OUT", 200, ts(2025, 1, 10)))
    # outside the month
    store.add_transaction(make_tx("e4", "c1", "chat-spend", "IN", 999, ts(2025, 2, 1, 0)))
    store.add_transaction(make_tx("e5", "c1", "chat-spend", "IN", 999, ts(2024, 12, 31, 23)))
    store.add_payout(
        make_payout("p-paid", "c1", 100, created_at=ts(2025, 1, 15), processed_at=ts(2025, 1, 16), amount_fiat=4.0)
    )
    store.add_payout(make_payout("p-pending", "c1", 30, status=PayoutStatus.PENDING, created_at=ts(2025, 1, 25)))
    store.add_payout(make_payout("p-failed", "c1", 70, status=PayoutStatus.FAILED, created_at=ts(2025, 1, 26)))


def test_snapshot_figures(store, clock):
    _seed(store)
    snap = MonthlyEarningsAggregator(store, clock=clock).aggregate("c1", 2025, 1)

    assert snap.earned_by_source == {"chat": 101, "calls": 0, "calendar": 200, "events": 50, "other": 0}
    assert snap.refunded_by_source == {"chat": 0, "calls": 0, "calendar": 200, "events": 0, "other": 0}
    assert snap.earned_tokens == 351
    assert snap.refunded_tokens == 200
    assert snap.net_earned == 151
    # chat 101 -> 65/36, events 50 -> 40/10, calendar booking and refund cancel out
    assert snap.creator_share == 105
    assert snap.platform_share == 46
    assert snap.creator_share + snap.platform_share == snap.net_earned
    assert snap.payout_requested_tokens == 130
    assert snap.payout_paid_tokens == 100
    assert snap.payout_fiat_paid == 4.0
    assert snap.payout_currency == "PLN"
    assert snap.transaction_count == 4
    assert snap.split_table_version == "2024-01"
    assert store.get_earnings_snapshot("c1", 2025, 1) == snap


def test_rerun_is_idempotent(clock):
    store = _CountingStore()
    _seed(store)
    agg = MonthlyEarningsAggregator(store, clock=clock)

    first = agg.aggregate("c1", 2025, 1, force=True)
    clock.now = clock.now.replace(day=20)
    second = agg.aggregate("c1", 2025, 1, force=True)

    assert second == first
    assert second.to_firestore_doc() == first.to_firestore_doc()
    assert store.writes == 1


def test_force_false_returns_existing_without_reading_ledger(clock):
    store = _CountingStore()
    _seed(store)
    agg = MonthlyEarningsAggregator(store, clock=clock)
    first = agg.aggregate("c1", 2025, 1)
    reads = store.reads

    store.add_transaction(make_tx("late", "c1", "chat-spend", "IN", 10, ts(2025, 1, 28)))
    cached = agg.aggregate("c1", 2025, 1, force=False)
    assert cached == first
    assert store.reads == reads

    refreshed = agg.aggregate("c1", 2025, 1, force=True)
    assert refreshed.earned_tokens == first.earned_tokens + 10
    assert refreshed.generated_at == first.generated_at


def test_deleted_snapshot_is_reconstructed(store, clock):
    _seed(store)
    agg = MonthlyEarningsAggregator(store, clock=clock)
    before = agg.aggregate("c1", 2025, 1)

    store.delete_earnings_snapshot("c1", 2025, 1)
    clock.now = clock.now.replace(day=28)
    after = agg.aggregate("c1", 2025, 1)

    assert after.content_hash == before.content_hash
    assert after.financial_payload() == before.financial_payload()


def test_unclassified_transactions_never_touch_financial_buckets(store, clock):
    _seed(store)
    agg = MonthlyEarningsAggregator(store, clock=clock)
    baseline = agg.aggregate("c1", 2025, 1)

    store.add_transaction(make_tx("u1", "c1", "mystery-kind", "IN", 5000, ts(2025, 1, 5)))
    store.add_transaction(make_tx("u2", "c1", "mystery-kind", "IN", 7, ts(2025, 1, 6)))
    snap = agg.aggregate("c1", 2025, 1)

    assert snap.earned_by_source == baseline.earned_by_source
    assert snap.creator_share == baseline.creator_share
    assert snap.platform_share == baseline.platform_share
    assert snap.unclassified_count == 2
    assert snap.unclassified_types == {"mystery-kind": 2}
    assert snap.transaction_count == baseline.transaction_count + 2


def test_unknown_type_naming_a_category_is_only_counted_as_unclassified(store, clock):
    store.add_transaction(make_tx("v1", "c1", "video_call_minute", "IN", 100, ts(2025, 1, 7)))

    snap = MonthlyEarningsAggregator(store, clock=clock).aggregate("c1", 2025, 1)

    assert snap.unclassified_count == 1
    assert snap.unclassified_types == {"video_call_minute": 1}
    assert sum(snap.earned_by_source.values()) == 0
    assert sum(snap.refunded_by_source.values()) == 0
    assert snap.creator_share == 0 and snap.platform_share == 0
    assert snap.net_earned == 0


def test_refund_of_previous_month_can_make_net_negative(store, clock):
    store.add_transaction(make_tx("e", "c1", "event-ticket", "IN", 100, ts(2025, 1, 30)))
    store.add_transaction(
        make_tx("r", "c1", "event-refund", "OUT", 100, ts(2025, 2, 2), meta={"originalTransactionId": "e"})
    )
    feb = MonthlyEarningsAggregator(store, clock=clock).aggregate("c1", 2025, 2)
    assert feb.net_earned == -100
    assert feb.creator_share == -80
    assert feb.platform_share == -20


def test_mixed_payout_currencies_convert_tokens_to_reporting_currency(clock):
    paid = [
        make_payout("a", "c1", 100, created_at=ts(2025, 1, 2), processed_at=ts(2025, 1, 3), currency="USD", amount_fiat=1.0),
        make_payout("b", "c1", 50, created_at=ts(2025, 1, 2), processed_at=ts(2025, 1, 3), currency="EUR", amount_fiat=0.45),
    ]
    settings = EngineSettings()
    snap = compute_creator_earnings(
        user_id="c1",
        year=2025,
        month=1,
        transactions=[],
        requested_payouts=paid,
        paid_payouts=paid,
        splits=settings.splits,
        fiat=settings.fiat,
        generated_at=clock(),
    )
    assert snap.payout_currency == "PLN"
    assert snap.payout_fiat_paid == 6.0
    assert snap.payout_paid_tokens == 150


def test_invalid_period_is_rejected_before_any_read(clock):
    store = _CountingStore()
    agg = MonthlyEarningsAggregator(store, clock=clock)
    with pytest.raises(InvalidPeriodError):
        agg.aggregate("c1", 2025, 13)
    with pytest.raises(InvalidPeriodError):
        agg.aggregate("c1", 1999, 1)
    assert store.reads == 0
