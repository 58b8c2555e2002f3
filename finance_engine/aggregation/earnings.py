from __future__ import annotations

"""
Monthly creator earnings aggregation.

Snapshots are rebuilt from the raw ledger on every run (never incremented from
a previous snapshot), so a rerun over unchanged data yields the same content
and a deleted snapshot can always be regenerated.

Rules:
- EARNING (IN) adds its amount to `earned_by_source[category]` and its split to the shares.
- REFUND (OUT, clawed back from the creator) adds to `refunded_by_source[category]`
  and subtracts its own split from the shares.
- Splits are computed per transaction; shares are never derived from a blended ratio.
"""

import logging
from dataclasses import replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Iterable, Optional

from finance_engine.common.config import EngineSettings, FiatConversionTable, RevenueSplitTable
from finance_engine.common.logging import log_event
from finance_engine.common.periods import month_period_utc, utc_now
from finance_engine.ledger.classifier import Kind, classify_transaction
from finance_engine.ledger.models import REQUESTED_PAYOUT_STATUSES, PayoutRecord, WalletTransaction
from finance_engine.ledger.splits import compute_split
from finance_engine.persistence.interfaces import FinanceStore

from .models import CreatorEarningsMonthly, zero_by_source

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_CENT = Decimal("0.01")


def _payout_fiat(paid: list[PayoutRecord], fiat: FiatConversionTable) -> tuple[float, str]:
    """
    Sum fiat paid out.

    A single payout currency is summed as recorded; mixed currencies are converted
    from tokens into the reporting currency at the fixed table rate.
    """
    if not paid:
        return 0.0, fiat.reporting_currency
    currencies = {p.currency for p in paid}
    if len(currencies) == 1 and "" not in currencies:
        total = sum((Decimal(str(p.amount_fiat)) for p in paid), Decimal("0"))
        return float(total.quantize(_CENT, rounding=ROUND_HALF_UP)), next(iter(currencies))
    tokens = sum(p.tokens_requested for p in paid)
    return float(fiat.to_fiat(tokens)), fiat.reporting_currency


def compute_creator_earnings(
    *,
    user_id: str,
    year: int,
    month: int,
    transactions: Iterable[WalletTransaction],
    requested_payouts: Iterable[PayoutRecord],
    paid_payouts: Iterable[PayoutRecord],
    splits: RevenueSplitTable,
    fiat: FiatConversionTable,
    generated_at: datetime,
    updated_at: Optional[datetime] = None,
) -> CreatorEarningsMonthly:
    """
    Pure computation of one creator's monthly snapshot (no I/O).

    Callers pass the user's transactions and payouts already scoped to the month.
    """
    month_period_utc(year=year, month=month)

    earned = zero_by_source()
    refunded = zero_by_source()
    creator_share = 0
    platform_share = 0
    tx_count = 0
    unclassified_types: dict[str, int] = {}

    for tx in transactions:
        if tx.user_id != user_id:
            continue
        tx_count += 1
        c = classify_transaction(tx)
        if c.kind == Kind.UNCLASSIFIED:
            key = tx.raw_type or "<empty>"
            unclassified_types[key] = unclassified_types.get(key, 0) + 1
            continue
        if c.is_creator_earning and c.category is not None:
            s = compute_split(tx.amount, c.category, splits)
            earned[c.category.value] += tx.amount
            creator_share += s.creator_share
            platform_share += s.platform_share
        elif c.is_creator_refund and c.category is not None:
            s = compute_split(tx.amount, c.category, splits)
            refunded[c.category.value] += tx.amount
            creator_share -= s.creator_share
            platform_share -= s.platform_share

    requested_tokens = sum(
        p.tokens_requested for p in requested_payouts if p.user_id == user_id and p.status in REQUESTED_PAYOUT_STATUSES
    )
    paid = [p for p in paid_payouts if p.user_id == user_id and p.is_paid]
    fiat_paid, currency = _payout_fiat(paid, fiat)

    earned_total = sum(earned.values())
    refunded_total = sum(refunded.values())
    return CreatorEarningsMonthly(
        user_id=user_id,
        year=year,
        month=month,
        earned_by_source=earned,
        refunded_by_source=refunded,
        earned_tokens=earned_total,
        refunded_tokens=refunded_total,
        net_earned=earned_total - refunded_total,
        creator_share=creator_share,
        platform_share=platform_share,
        payout_requested_tokens=requested_tokens,
        payout_paid_tokens=sum(p.tokens_requested for p in paid),
        payout_fiat_paid=fiat_paid,
        payout_currency=currency,
        transaction_count=tx_count,
        unclassified_count=sum(unclassified_types.values()),
        unclassified_types=dict(sorted(unclassified_types.items())),
        split_table_version=splits.version,
        generated_at=generated_at,
        updated_at=updated_at or generated_at,
    )


class MonthlyEarningsAggregator:
    """
    Builds and upserts `creator_earnings_monthly/{user_id}__{YYYY-MM}`.

    The store and clock are injected; nothing here holds a module-level client.
    """

    def __init__(
        self,
        store: FinanceStore,
        *,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._settings = settings or EngineSettings()
        self._clock = clock or utc_now

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def compute(self, user_id: str, year: int, month: int) -> CreatorEarningsMonthly:
        """Build the snapshot from the ledger without writing it."""
        uid = str(user_id or "").strip()
        if not uid:
            raise ValueError("user_id is required")
        start, end = month_period_utc(year=year, month=month)

        txs = list(self._store.iter_transactions(start, end, user_id=uid))
        requested = self._store.list_payouts(start, end, user_id=uid, statuses=REQUESTED_PAYOUT_STATUSES)
        paid = self._store.list_paid_payouts(end, start=start, user_id=uid)

        now = self._clock()
        return compute_creator_earnings(
            user_id=uid,
            year=year,
            month=month,
            transactions=txs,
            requested_payouts=requested,
            paid_payouts=paid,
            splits=self._settings.splits,
            fiat=self._settings.fiat,
            generated_at=now,
        )

    def aggregate(self, user_id: str, year: int, month: int, *, force: bool = True) -> CreatorEarningsMonthly:
        uid = str(user_id or "").strip()
        if not uid:
            raise ValueError("user_id is required")
        month_period_utc(year=year, month=month)

        existing = self._store.get_earnings_snapshot(uid, year, month)
        if existing is not None and not force:
            log_event(logger, "earnings.cache_hit", user_id=uid, period=existing.period)
            return existing

        fresh = self.compute(uid, year, month)
        if existing is not None and existing.content_hash == fresh.content_hash:
            # Unchanged content keeps the stored document as is.
            log_event(logger, "earnings.snapshot_unchanged", user_id=uid, period=fresh.period)
            return existing
        if existing is not None:
            fresh = replace(fresh, generated_at=existing.generated_at)

        if fresh.unclassified_count:
            log_event(
                logger,
                "earnings.unclassified_transactions",
                severity="WARNING",
                user_id=uid,
                period=fresh.period,
                unclassified_count=fresh.unclassified_count,
                unclassified_types=fresh.unclassified_types,
            )

        self._store.put_earnings_snapshot(fresh)
        log_event(
            logger,
            "earnings.snapshot_written",
            user_id=uid,
            period=fresh.period,
            net_earned=fresh.net_earned,
            creator_share=fresh.creator_share,
            platform_share=fresh.platform_share,
            transaction_count=fresh.transaction_count,
            content_hash=fresh.content_hash,
        )
        return fresh
