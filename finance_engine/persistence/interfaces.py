from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Iterator, Optional, Sequence

from finance_engine.aggregation.models import AggregationRun, CreatorEarningsMonthly, PlatformFinanceMonthly
from finance_engine.ledger.models import PayoutRecord, PayoutStatus, UserWallet, WalletTransaction
from finance_engine.reconciliation.models import AnomalyStatus, AnomalyType, FinanceAnomaly


class FinanceStore(ABC):
    """
    Storage abstraction for the finance engine.

    Contract:
    - Ledger reads are read-only; the engine never mutates transactions, payouts or wallets.
    - Time windows are half-open `[start, end)` over UTC datetimes.
    - Transaction iteration is ordered by `(created_at, id)` so every run sees the same sequence.
    - Snapshot writes are upserts keyed by the deterministic ids in `schema.py`.
    - Implementations must be safe to share between worker threads.
    - Transient backend failures surface as `StoreUnavailableError`.
    """

    # ---- ledger (read-only) ----

    @abstractmethod
    def iter_transactions(
        self, start: datetime, end: datetime, *, user_id: Optional[str] = None
    ) -> Iterator[WalletTransaction]: ...

    @abstractmethod
    def iter_user_transactions(self, user_id: str) -> Iterator[WalletTransaction]:
        """Full history for one user, ordered by `(created_at, id)`."""

    @abstractmethod
    def get_transaction(self, tx_id: str) -> Optional[WalletTransaction]: ...

    @abstractmethod
    def list_payouts(
        self,
        start: datetime,
        end: datetime,
        *,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[PayoutStatus]] = None,
    ) -> list[PayoutRecord]:
        """Payout requests created in `[start, end)`."""

    @abstractmethod
    def list_paid_payouts(
        self, end: datetime, *, start: Optional[datetime] = None, user_id: Optional[str] = None
    ) -> list[PayoutRecord]:
        """PAID payouts whose `processed_at` falls in `[start, end)` (open start when None)."""

    @abstractmethod
    def get_wallet(self, user_id: str) -> Optional[UserWallet]: ...

    @abstractmethod
    def list_wallet_user_ids(self) -> list[str]: ...

    # ---- creator snapshots ----

    @abstractmethod
    def get_earnings_snapshot(self, user_id: str, year: int, month: int) -> Optional[CreatorEarningsMonthly]: ...

    @abstractmethod
    def put_earnings_snapshot(self, snapshot: CreatorEarningsMonthly) -> None: ...

    @abstractmethod
    def delete_earnings_snapshot(self, user_id: str, year: int, month: int) -> None: ...

    @abstractmethod
    def list_earnings_snapshots(
        self, *, user_id: Optional[str] = None, through: Optional[tuple[int, int]] = None
    ) -> list[CreatorEarningsMonthly]:
        """Snapshots with period <= `through` (inclusive) when given."""

    # ---- platform snapshots ----

    @abstractmethod
    def get_platform_snapshot(self, year: int, month: int) -> Optional[PlatformFinanceMonthly]: ...

    @abstractmethod
    def put_platform_snapshot(self, snapshot: PlatformFinanceMonthly) -> None: ...

    @abstractmethod
    def delete_platform_snapshot(self, year: int, month: int) -> None: ...

    # ---- anomalies ----

    @abstractmethod
    def create_anomaly_if_absent(self, anomaly: FinanceAnomaly) -> tuple[bool, FinanceAnomaly]:
        """
        Returns (created, record).

        - created=True: `anomaly` was stored
        - created=False: a record with the same (type, user_id, period) exists and is returned unchanged
        """

    @abstractmethod
    def list_anomalies(
        self,
        *,
        user_id: Optional[str] = None,
        period: Optional[str] = None,
        statuses: Optional[Sequence[AnomalyStatus]] = None,
        types: Optional[Sequence[AnomalyType]] = None,
    ) -> list[FinanceAnomaly]: ...

    @abstractmethod
    def update_anomaly_status(
        self, anomaly_id: str, status: AnomalyStatus, *, by: Optional[str] = None, at: Optional[datetime] = None
    ) -> FinanceAnomaly:
        """Review workflow entry point. Raises KeyError for unknown ids."""

    # ---- audit trail ----

    @abstractmethod
    def record_run(self, run: AggregationRun) -> None: ...

    @abstractmethod
    def list_runs(self, *, period: Optional[str] = None, limit: int = 50) -> list[AggregationRun]:
        """Most recent first."""
