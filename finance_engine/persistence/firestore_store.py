from __future__ import annotations

"""
Firestore-backed FinanceStore.

Reads page through collections with `limit()` + `start_after()` so a month of
ledger traffic is never materialised in a single RPC. Every RPC goes through
`with_firestore_retry`, which turns exhausted transient failures into
`StoreUnavailableError`.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Iterable, Iterator, Optional, Sequence

from google.api_core import exceptions as gexc

from finance_engine.aggregation.models import AggregationRun, CreatorEarningsMonthly, PlatformFinanceMonthly
from finance_engine.common.periods import as_utc, period_key, utc_now
from finance_engine.ledger.codec import payout_from_doc, wallet_from_doc, wallet_transaction_from_doc
from finance_engine.ledger.models import PayoutRecord, PayoutStatus, UserWallet, WalletTransaction
from finance_engine.reconciliation.models import AnomalyStatus, AnomalyType, FinanceAnomaly

from .firebase_client import get_firestore_client
from .firestore_retry import with_firestore_retry
from .interfaces import FinanceStore
from .schema import (
    COLLECTION_AGGREGATION_RUNS,
    COLLECTION_CREATOR_EARNINGS_MONTHLY,
    COLLECTION_FINANCE_ANOMALIES,
    COLLECTION_PAYOUT_REQUESTS,
    COLLECTION_PLATFORM_FINANCE_MONTHLY,
    COLLECTION_WALLET_TRANSACTIONS,
    COLLECTION_WALLETS,
    earnings_snapshot_id,
    platform_snapshot_id,
)

logger = logging.getLogger(__name__)

_DOC_ID_FIELD = "__name__"


class FirestoreFinanceStore(FinanceStore):
    def __init__(self, db: Any = None, *, project_id: Optional[str] = None, page_size: int = 500) -> None:
        self._db = db if db is not None else get_firestore_client(project_id=project_id)
        self._page_size = max(1, int(page_size))

    # ---- helpers ----

    def _col(self, name: str):
        return self._db.collection(name)

    def _paged(self, query: Any) -> Iterator[Any]:
        """
        Yield snapshots page by page. `query` must carry a total order.
        """
        last = None
        while True:
            q = query.limit(self._page_size)
            if last is not None:
                q = q.start_after(last)
            page = with_firestore_retry(lambda: list(q.stream()))
            yield from page
            if len(page) < self._page_size:
                return
            last = page[-1]

    def _get(self, ref: Any) -> Optional[dict[str, Any]]:
        snap = with_firestore_retry(ref.get)
        if not getattr(snap, "exists", False):
            return None
        return snap.to_dict() or {}

    def _decode_transactions(self, snaps: Iterable[Any]) -> Iterator[WalletTransaction]:
        for snap in snaps:
            tx = wallet_transaction_from_doc(snap.id, snap.to_dict() or {})
            if tx is not None:
                yield tx

    def _decode_payouts(
        self, snaps: Iterable[Any], keep: Callable[[PayoutRecord], bool] = lambda p: True
    ) -> list[PayoutRecord]:
        out: list[PayoutRecord] = []
        for snap in snaps:
            p = payout_from_doc(snap.id, snap.to_dict() or {})
            if p is not None and keep(p):
                out.append(p)
        return out

    # ---- ledger ----

    def iter_transactions(
        self, start: datetime, end: datetime, *, user_id: Optional[str] = None
    ) -> Iterator[WalletTransaction]:
        q = self._col(COLLECTION_WALLET_TRANSACTIONS)
        if user_id:
            q = q.where("userId", "==", user_id)
        q = (
            q.where("createdAt", ">=", as_utc(start))
            .where("createdAt", "<", as_utc(end))
            .order_by("createdAt")
            .order_by(_DOC_ID_FIELD)
        )
        return self._decode_transactions(self._paged(q))

    def iter_user_transactions(self, user_id: str) -> Iterator[WalletTransaction]:
        q = self._col(COLLECTION_WALLET_TRANSACTIONS).where("userId", "==", user_id).order_by("createdAt").order_by(
            _DOC_ID_FIELD
        )
        return self._decode_transactions(self._paged(q))

    def get_transaction(self, tx_id: str) -> Optional[WalletTransaction]:
        doc = self._get(self._col(COLLECTION_WALLET_TRANSACTIONS).document(str(tx_id)))
        if doc is None:
            return None
        return wallet_transaction_from_doc(str(tx_id), doc)

    def list_payouts(
        self,
        start: datetime,
        end: datetime,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[PayoutStatus]] = None,
    ) -> list[PayoutRecord]:
        q = self._col(COLLECTION_PAYOUT_REQUESTS)
        if user_id:
            q = q.where("userId", "==", user_id)
        q = (
            q.where("createdAt", ">=", as_utc(start))
            .where("createdAt", "<", as_utc(end))
            .order_by("createdAt")
            .order_by(_DOC_ID_FIELD)
        )
        wanted = set(statuses) if statuses is not None else None
        # Status filtering stays client-side to avoid an extra composite index.
        return self._decode_payouts(self._paged(q), lambda p: wanted is None or p.status in wanted)

    def list_paid_payouts(
        self, end: datetime, *, start: Optional[datetime] = None, user_id: Optional[str] = None
    ) -> list[PayoutRecord]:
        q = self._col(COLLECTION_PAYOUT_REQUESTS).where("status", "==", PayoutStatus.PAID.value)
        if user_id:
            q = q.where("userId", "==", user_id)
        if start is not None:
            q = q.where("processedAt", ">=", as_utc(start))
        q = q.where("processedAt", "<", as_utc(end)).order_by("processedAt").order_by(_DOC_ID_FIELD)
        return self._decode_payouts(self._paged(q), lambda p: p.is_paid)

    def get_wallet(self, user_id: str) -> Optional[UserWallet]:
        doc = self._get(self._col(COLLECTION_WALLETS).document(str(user_id)))
        if doc is None:
            return None
        return wallet_from_doc(str(user_id), doc)

    def list_wallet_user_ids(self) -> list[str]:
        q = self._col(COLLECTION_WALLETS).order_by(_DOC_ID_FIELD)
        return [snap.id for snap in self._paged(q)]

    # ---- creator snapshots ----

    def _earnings_ref(self, user_id: str, year: int, month: int):
        return self._col(COLLECTION_CREATOR_EARNINGS_MONTHLY).document(earnings_snapshot_id(user_id, year, month))

    def get_earnings_snapshot(self, user_id: str, year: int, month: int) -> Optional[CreatorEarningsMonthly]:
        doc = self._get(self._earnings_ref(user_id, year, month))
        return CreatorEarningsMonthly.from_firestore_doc(doc) if doc is not None else None

    def put_earnings_snapshot(self, snapshot: CreatorEarningsMonthly) -> None:
        ref = self._earnings_ref(snapshot.user_id, snapshot.year, snapshot.month)
        doc = snapshot.to_firestore_doc()
        with_firestore_retry(lambda: ref.set(doc, merge=True))

    def delete_earnings_snapshot(self, user_id: str, year: int, month: int) -> None:
        ref = self._earnings_ref(user_id, year, month)
        with_firestore_retry(ref.delete)

    def list_earnings_snapshots(
        self, *, user_id: Optional[str] = None, through: Optional[tuple[int, int]] = None
    ) -> list[CreatorEarningsMonthly]:
        q = self._col(COLLECTION_CREATOR_EARNINGS_MONTHLY)
        if user_id:
            q = q.where("userId", "==", user_id)
        if through is not None:
            q = q.where("period", "<=", period_key(*through))
        q = q.order_by("period").order_by(_DOC_ID_FIELD)
        rows = [CreatorEarningsMonthly.from_firestore_doc(snap.to_dict() or {}) for snap in self._paged(q)]
        return sorted(rows, key=lambda s: (s.period, s.user_id))

    # ---- platform snapshots ----

    def _platform_ref(self, year: int, month: int):
        return self._col(COLLECTION_PLATFORM_FINANCE_MONTHLY).document(platform_snapshot_id(year, month))

    def get_platform_snapshot(self, year: int, month: int) -> Optional[PlatformFinanceMonthly]:
        doc = self._get(self._platform_ref(year, month))
        return PlatformFinanceMonthly.from_firestore_doc(doc) if doc is not None else None

    def put_platform_snapshot(self, snapshot: PlatformFinanceMonthly) -> None:
        ref = self._platform_ref(snapshot.year, snapshot.month)
        doc = snapshot.to_firestore_doc()
        with_firestore_retry(lambda: ref.set(doc, merge=True))

    def delete_platform_snapshot(self, year: int, month: int) -> None:
        with_firestore_retry(self._platform_ref(year, month).delete)

    # ---- anomalies ----

    def create_anomaly_if_absent(self, anomaly: FinanceAnomaly) -> tuple[bool, FinanceAnomaly]:
        ref = self._col(COLLECTION_FINANCE_ANOMALIES).document(anomaly.id)
        doc = anomaly.to_firestore_doc()
        try:
            with_firestore_retry(lambda: ref.create(doc))
            return True, anomaly
        except gexc.AlreadyExists:
            existing = self._get(ref)
            if existing is None:
                # Deleted between create() and get(); treat the stored copy as ours.
                return False, anomaly
            return False, FinanceAnomaly.from_firestore_doc(existing, doc_id=anomaly.id)

    def list_anomalies(
        self,
        *,
        user_id: Optional[str] = None,
        period: Optional[str] = None,
        statuses: Optional[Sequence[AnomalyStatus]] = None,
        types: Optional[Sequence[AnomalyType]] = None,
    ) -> list[FinanceAnomaly]:
        q = self._col(COLLECTION_FINANCE_ANOMALIES)
        if user_id:
            q = q.where("userId", "==", user_id)
        if period:
            q = q.where("period", "==", period)
        q = q.order_by(_DOC_ID_FIELD)

        out: list[FinanceAnomaly] = []
        for snap in self._paged(q):
            a = FinanceAnomaly.from_firestore_doc(snap.to_dict() or {}, doc_id=snap.id)
            if statuses is not None and a.status not in statuses:
                continue
            if types is not None and a.type not in types:
                continue
            out.append(a)
        return sorted(out, key=lambda a: (a.created_at, a.id))

    def update_anomaly_status(
        self, anomaly_id: str, status: AnomalyStatus, *, by: Optional[str] = None, at: Optional[datetime] = None
    ) -> FinanceAnomaly:
        ref = self._col(COLLECTION_FINANCE_ANOMALIES).document(str(anomaly_id))
        doc = self._get(ref)
        if doc is None:
            raise KeyError(f"unknown anomaly {anomaly_id}")
        updated = FinanceAnomaly.from_firestore_doc(doc, doc_id=str(anomaly_id)).with_status(
            status, at=at or utc_now(), by=by
        )
        patch = {
            "status": updated.status.value,
            "resolvedAt": updated.resolved_at,
            "resolvedBy": updated.resolved_by,
        }
        with_firestore_retry(lambda: ref.set(patch, merge=True))
        logger.info("anomaly.status_updated anomaly_id=%s status=%s by=%s", anomaly_id, status.value, by)
        return updated

    # ---- audit trail ----

    def record_run(self, run: AggregationRun) -> None:
        ref = self._col(COLLECTION_AGGREGATION_RUNS).document(run.run_id)
        doc = run.to_firestore_doc()
        with_firestore_retry(lambda: ref.set(doc, merge=True))

    def list_runs(self, *, period: Optional[str] = None, limit: int = 50) -> list[AggregationRun]:
        q = self._col(COLLECTION_AGGREGATION_RUNS)
        if period:
            q = q.where("period", "==", period)
        q = q.order_by("startedAt", direction="DESCENDING").limit(max(1, int(limit)))
        snaps = with_firestore_retry(lambda: list(q.stream()))
        return [AggregationRun.from_firestore_doc(s.to_dict() or {}) for s in snaps]
