from __future__ import annotations

"""
In-memory FinanceStore.

Used by tests and local dry runs. Mirrors the Firestore store's semantics
(ordering, half-open windows, create-if-absent) behind a single lock.
"""

import threading
from datetime import datetime
from typing import Iterable, Iterator, Optional, Sequence

from finance_engine.aggregation.models import AggregationRun, CreatorEarningsMonthly, PlatformFinanceMonthly
from finance_engine.common.periods import as_utc, period_key, utc_now
from finance_engine.ledger.models import PayoutRecord, PayoutStatus, UserWallet, WalletTransaction
from finance_engine.reconciliation.models import AnomalyStatus, AnomalyType, FinanceAnomaly

from .interfaces import FinanceStore
from .schema import earnings_snapshot_id, platform_snapshot_id


def _tx_sort_key(tx: WalletTransaction) -> tuple[datetime, str]:
    return tx.created_at, tx.id


class InMemoryFinanceStore(FinanceStore):
    def __init__(
        self,
        *,
        transactions: Iterable[WalletTransaction] = (),
        payouts: Iterable[PayoutRecord] = (),
        wallets: Iterable[UserWallet] = (),
    ) -> None:
        self._lock = threading.RLock()
        self._transactions: dict[str, WalletTransaction] = {}
        self._payouts: dict[str, PayoutRecord] = {}
        self._wallets: dict[str, UserWallet] = {}
        self._earnings: dict[str, CreatorEarningsMonthly] = {}
        self._platform: dict[str, PlatformFinanceMonthly] = {}
        self._anomalies: dict[str, FinanceAnomaly] = {}
        self._runs: dict[str, AggregationRun] = {}
        for tx in transactions:
            self.add_transaction(tx)
        for p in payouts:
            self.add_payout(p)
        for w in wallets:
            self.set_wallet(w)

    # ---- seeding (stands in for the upstream producers) ----

    def add_transaction(self, tx: WalletTransaction) -> None:
        with self._lock:
            if tx.id in self._transactions:
                raise ValueError(f"duplicate transaction id {tx.id}")
            self._transactions[tx.id] = tx

    def add_payout(self, payout: PayoutRecord) -> None:
        with self._lock:
            self._payouts[payout.id] = payout

    def set_wallet(self, wallet: UserWallet) -> None:
        with self._lock:
            self._wallets[wallet.user_id] = wallet

    # ---- ledger ----

    def iter_transactions(
        self, start: datetime, end: datetime, *, user_id: Optional[str] = None
    ) -> Iterator[WalletTransaction]:
        start_u, end_u = as_utc(start), as_utc(end)
        with self._lock:
            rows = [
                tx
                for tx in self._transactions.values()
                if start_u <= tx.created_at < end_u and (user_id is None or tx.user_id == user_id)
            ]
        return iter(sorted(rows, key=_tx_sort_key))

    def iter_user_transactions(self, user_id: str) -> Iterator[WalletTransaction]:
        with self._lock:
            rows = [tx for tx in self._transactions.values() if tx.user_id == user_id]
        return iter(sorted(rows, key=_tx_sort_key))

    def get_transaction(self, tx_id: str) -> Optional[WalletTransaction]:
        with self._lock:
            return self._transactions.get(tx_id)

    def list_payouts(
        self,
        start: datetime,
        end: datetime,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[PayoutStatus]] = None,
    ) -> list[PayoutRecord]:
        start_u, end_u = as_utc(start), as_utc(end)
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            rows = [
                p
                for p in self._payouts.values()
                if start_u <= p.created_at < end_u
                and (user_id is None or p.user_id == user_id)
                and (wanted is None or p.status in wanted)
            ]
        return sorted(rows, key=lambda p: (p.created_at, p.id))

    def list_paid_payouts(
        self, end: datetime, *, start: Optional[datetime] = None, user_id: Optional[str] = None
    ) -> list[PayoutRecord]:
        end_u = as_utc(end)
        start_u = as_utc(start) if start is not None else None
        with self._lock:
            rows = [
                p
                for p in self._payouts.values()
                if p.is_paid
                and p.processed_at < end_u
                and (start_u is None or p.processed_at >= start_u)
                and (user_id is None or p.user_id == user_id)
            ]
        return sorted(rows, key=lambda p: (p.processed_at, p.id))

    def get_wallet(self, user_id: str) -> Optional[UserWallet]:
        with self._lock:
            return self._wallets.get(user_id)

    def list_wallet_user_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._wallets)

    # ---- creator snapshots ----

    def get_earnings_snapshot(self, user_id: str, year: int, month: int) -> Optional[CreatorEarningsMonthly]:
        with self._lock:
            return self._earnings.get(earnings_snapshot_id(user_id, year, month))

    def put_earnings_snapshot(self, snapshot: CreatorEarningsMonthly) -> None:
        with self._lock:
            self._earnings[earnings_snapshot_id(snapshot.user_id, snapshot.year, snapshot.month)] = snapshot

    def delete_earnings_snapshot(self, user_id: str, year: int, month: int) -> None:
        with self._lock:
            self._earnings.pop(earnings_snapshot_id(user_id, year, month), None)

    def list_earnings_snapshots(
        self, *, user_id: Optional[str] = None, through: Optional[tuple[int, int]] = None
    ) -> list[CreatorEarningsMonthly]:
        limit = period_key(*through) if through is not None else None
        with self._lock:
            rows = [
                s
                for s in self._earnings.values()
                if (user_id is None or s.user_id == user_id) and (limit is None or s.period <= limit)
            ]
        return sorted(rows, key=lambda s: (s.period, s.user_id))

    # ---- platform snapshots ----

    def get_platform_snapshot(self, year: int, month: int) -> Optional[PlatformFinanceMonthly]:
        with self._lock:
            return self._platform.get(platform_snapshot_id(year, month))

    def put_platform_snapshot(self, snapshot: PlatformFinanceMonthly) -> None:
        with self._lock:
            self._platform[platform_snapshot_id(snapshot.year, snapshot.month)] = snapshot

    def delete_platform_snapshot(self, year: int, month: int) -> None:
        with self._lock:
            self._platform.pop(platform_snapshot_id(year, month), None)

    # ---- anomalies ----

    def create_anomaly_if_absent(self, anomaly: FinanceAnomaly) -> tuple[bool, FinanceAnomaly]:
        with self._lock:
            existing = self._anomalies.get(anomaly.id)
            if existing is not None:
                return False, existing
            self._anomalies[anomaly.id] = anomaly
            return True, anomaly

    def list_anomalies(
        self,
        *,
        user_id: Optional[str] = None,
        period: Optional[str] = None,
        statuses: Optional[Sequence[AnomalyStatus]] = None,
        types: Optional[Sequence[AnomalyType]] = None,
    ) -> list[FinanceAnomaly]:
        with self._lock:
            rows = [
                a
                for a in self._anomalies.values()
                if (user_id is None or a.user_id == user_id)
                and (period is None or a.period == period)
                and (statuses is None or a.status in statuses)
                and (types is None or a.type in types)
            ]
        return sorted(rows, key=lambda a: (a.created_at, a.id))

    def update_anomaly_status(
        self, anomaly_id: str, status: AnomalyStatus, *, by: Optional[str] = None, at: Optional[datetime] = None
    ) -> FinanceAnomaly:
        with self._lock:
            current = self._anomalies.get(anomaly_id)
            if current is None:
                raise KeyError(f"unknown anomaly {anomaly_id}")
            updated = current.with_status(status, at=at or utc_now(), by=by)
            self._anomalies[anomaly_id] = updated
            return updated

    # ---- audit trail ----

    def record_run(self, run: AggregationRun) -> None:
        with self._lock:
            self._runs[run.run_id] = run

    def list_runs(self, *, period: Optional[str] = None, limit: int = 50) -> list[AggregationRun]:
        with self._lock:
            rows = [r for r in self._runs.values() if period is None or r.period == period]
        rows.sort(key=lambda r: (r.started_at, r.run_id), reverse=True)
        return rows[: max(0, int(limit))]
