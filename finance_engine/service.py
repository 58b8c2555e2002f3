from __future__ import annotations

"""
FinanceEngine: the operations exposed to schedulers and admin tooling.

The store is injected; `FinanceEngine.from_firestore()` wires the production
Firestore store for scripts and jobs.
"""

import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, Optional

from finance_engine.aggregation.batch import new_run_id, record_run_safely, run_earnings_batch
from finance_engine.aggregation.earnings import MonthlyEarningsAggregator
from finance_engine.aggregation.models import (
    AggregationRun,
    BatchResult,
    CreatorEarningsMonthly,
    PlatformFinanceMonthly,
    RunKind,
    RunStatus,
    UserFinancialSummary,
)
from finance_engine.aggregation.platform import PlatformRollupAggregator
from finance_engine.common.config import EngineSettings, load_settings
from finance_engine.common.errors import EngineOperationError, FinanceEngineError, InvalidPeriodError
from finance_engine.common.logging import bind_correlation_id, log_event
from finance_engine.common.periods import current_month, period_key, utc_now, validate_period
from finance_engine.persistence.interfaces import FinanceStore
from finance_engine.reconciliation.models import AnomalyStatus, FinanceAnomaly
from finance_engine.reconciliation.reconciler import BalanceReconciler

logger = logging.getLogger(__name__)


class FinanceEngine:
    def __init__(
        self,
        store: FinanceStore,
        *,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings or EngineSettings()
        self._clock = clock or utc_now
        self.earnings = MonthlyEarningsAggregator(store, settings=self.settings, clock=self._clock)
        self.platform = PlatformRollupAggregator(store, settings=self.settings, clock=self._clock)
        self.reconciler = BalanceReconciler(store, settings=self.settings, clock=self._clock)

    @classmethod
    def from_firestore(
        cls, *, project_id: Optional[str] = None, settings: Optional[EngineSettings] = None
    ) -> "FinanceEngine":
        from finance_engine.persistence.firestore_store import FirestoreFinanceStore

        s = settings or load_settings()
        return cls(FirestoreFinanceStore(project_id=project_id, page_size=s.page_size), settings=s)

    def now(self) -> datetime:
        return self._clock()

    # ---- aggregation ----

    def aggregate_month(self, user_id: str, year: int, month: int, force: bool = False) -> CreatorEarningsMonthly:
        return self.earnings.aggregate(user_id, year, month, force=force)

    def aggregate_platform_month(self, year: int, month: int, force: bool = False) -> PlatformFinanceMonthly:
        return self.platform.aggregate(year, month, force=force)

    def run_earnings_batch(
        self,
        year: int,
        month: int,
        *,
        user_ids: Optional[Iterable[str]] = None,
        force: bool = True,
        cancel_event: Optional[threading.Event] = None,
        triggered_by: str = "manual",
    ) -> BatchResult:
        return run_earnings_batch(
            self.store,
            year,
            month,
            aggregator=self.earnings,
            user_ids=user_ids,
            force=force,
            max_workers=self.settings.max_workers,
            cancel_event=cancel_event,
            triggered_by=triggered_by,
            clock=self._clock,
        )

    # ---- reconciliation ----

    def detect_anomalies(
        self,
        user_id: Optional[str] = None,
        year: Optional[int] = None,
        month: Optional[int] = None,
        *,
        persist: bool = True,
        triggered_by: str = "manual",
    ) -> list[FinanceAnomaly]:
        """
        - user only: balance check for that user
        - period (optionally scoped to a user): split + refund checks, plus the user's balance check
        - nothing: balance check for every wallet
        """
        if (year is None) != (month is None):
            raise InvalidPeriodError("year and month must be given together")
        period = None
        if year is not None and month is not None:
            validate_period(year, month)
            period = period_key(year, month)

        run_id = new_run_id(RunKind.ANOMALY_DETECTION, period)
        started_at = self._clock()
        with bind_correlation_id(correlation_id=run_id):
            try:
                found: list[FinanceAnomaly] = []
                if period is not None:
                    found.extend(self.reconciler.check_splits(year, month, user_id=user_id, persist=persist))
                    found.extend(self.reconciler.check_refunds(year, month, user_id=user_id, persist=persist))
                    if user_id:
                        found.extend(self.reconciler.check_user(user_id, persist=persist).anomalies)
                elif user_id:
                    found.extend(self.reconciler.check_user(user_id, persist=persist).anomalies)
                else:
                    found.extend(self.reconciler.check_all_wallets(persist=persist))
            except FinanceEngineError as e:
                if persist:
                    record_run_safely(
                        self.store,
                        AggregationRun(
                            run_id=run_id,
                            kind=RunKind.ANOMALY_DETECTION,
                            period=period,
                            status=RunStatus.ABORTED,
                            processed=0,
                            failed=1,
                            skipped=0,
                            started_at=started_at,
                            finished_at=self._clock(),
                            triggered_by=triggered_by,
                            error=str(e),
                        ),
                    )
                raise

            if persist:
                record_run_safely(
                    self.store,
                    AggregationRun(
                        run_id=run_id,
                        kind=RunKind.ANOMALY_DETECTION,
                        period=period,
                        status=RunStatus.COMPLETED,
                        processed=len(found),
                        failed=0,
                        skipped=0,
                        started_at=started_at,
                        finished_at=self._clock(),
                        triggered_by=triggered_by,
                    ),
                )
            log_event(
                logger,
                "reconcile.completed",
                run_id=run_id,
                user_id=user_id,
                period=period,
                anomalies=len(found),
                persisted=bool(persist),
            )
            return found

    def review_anomaly(self, anomaly_id: str, status: AnomalyStatus, *, reviewer: str) -> FinanceAnomaly:
        """Human review workflow: the only path that changes an anomaly's status."""
        if not str(reviewer or "").strip():
            raise ValueError("reviewer is required")
        return self.store.update_anomaly_status(anomaly_id, status, by=reviewer, at=self._clock())

    # ---- admin reads ----

    def get_summary(self, user_id: str) -> UserFinancialSummary:
        """Read-through on the current month: the stored snapshot, or a fresh aggregation if absent."""
        uid = str(user_id or "").strip()
        if not uid:
            raise ValueError("user_id is required")

        with bind_correlation_id() as cid:
            try:
                year, month = current_month(self._clock())
                current = self.earnings.aggregate(uid, year, month, force=False)
                history = [
                    s
                    for s in self.store.list_earnings_snapshots(user_id=uid, through=(year, month))
                    if s.period != current.period
                ]
                wallet = self.store.get_wallet(uid)
                open_anomalies = self.store.list_anomalies(user_id=uid, statuses=[AnomalyStatus.OPEN])
            except Exception as e:
                log_event(
                    logger,
                    "summary.failed",
                    severity="ERROR",
                    exc_info=True,
                    user_id=uid,
                    correlation_id=cid,
                    error=str(e),
                )
                raise EngineOperationError("get_summary", correlation_id=cid, cause=e) from e

        return UserFinancialSummary(
            user_id=uid,
            year=year,
            month=month,
            current_month=current,
            lifetime_net_earned=sum(s.net_earned for s in history) + current.net_earned,
            lifetime_creator_share=sum(s.creator_share for s in history) + current.creator_share,
            lifetime_payout_paid_tokens=sum(s.payout_paid_tokens for s in history) + current.payout_paid_tokens,
            wallet_balance=wallet.tokens_balance if wallet is not None else None,
            open_anomalies=len(open_anomalies),
        )
