from __future__ import annotations

"""
Platform-wide monthly rollup.

Month-scoped figures are re-derived from the raw transactions in the window,
not summed from creator snapshots, so the two aggregations cross-check each
other. Outstanding liability is cumulative: lifetime creator share through the
period minus every PAID payout processed before the period end.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from finance_engine.common.config import EngineSettings
from finance_engine.common.logging import log_event
from finance_engine.common.periods import month_period_utc, period_key, utc_now
from finance_engine.ledger.classifier import Kind, classify_transaction
from finance_engine.ledger.models import Direction
from finance_engine.ledger.splits import compute_split
from finance_engine.persistence.interfaces import FinanceStore

from .models import PlatformFinanceMonthly, zero_by_source

logger = logging.getLogger(__name__)


class PlatformRollupAggregator:
    def __init__(
        self,
        store: FinanceStore,
        *,
        settings: Optional[EngineSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._settings = settings or EngineSettings()
        self._clock = clock or utc_now

    def aggregate(self, year: int, month: int, *, force: bool = False) -> PlatformFinanceMonthly:
        """
        Return the rollup for `year`/`month`.

        - force=False: an existing snapshot is returned unchanged (it is not refreshed).
        - force=True: recompute from the ledger and overwrite.
        """
        start, end = month_period_utc(year=year, month=month)
        period = period_key(year, month)

        existing = self._store.get_platform_snapshot(year, month)
        if existing is not None and not force:
            log_event(logger, "platform.cache_hit", period=period, generated_at=existing.generated_at.isoformat())
            return existing

        splits = self._settings.splits
        fiat = self._settings.fiat

        gmv = 0
        creator_total = 0
        platform_total = 0
        fees = zero_by_source()
        refunds = 0
        tokens_sold = 0
        tx_count = 0
        unclassified = 0
        creators: set[str] = set()

        for tx in self._store.iter_transactions(start, end):
            tx_count += 1
            c = classify_transaction(tx)
            if c.kind == Kind.UNCLASSIFIED:
                unclassified += 1
            elif c.is_creator_earning and c.category is not None:
                s = compute_split(tx.amount, c.category, splits)
                gmv += tx.amount
                creator_total += s.creator_share
                platform_total += s.platform_share
                fees[c.category.value] += s.platform_share
                creators.add(tx.user_id)
            elif c.is_creator_refund and c.category is not None:
                s = compute_split(tx.amount, c.category, splits)
                refunds += tx.amount
                creator_total -= s.creator_share
                platform_total -= s.platform_share
                fees[c.category.value] -= s.platform_share
            elif c.kind == Kind.PURCHASE and tx.direction == Direction.IN:
                tokens_sold += tx.amount

        paid_in_month = self._store.list_paid_payouts(end, start=start)
        payout_tokens = sum(p.tokens_requested for p in paid_in_month)

        lifetime_creator_share = sum(
            s.creator_share for s in self._store.list_earnings_snapshots(through=(year, month))
        )
        paid_through_end = sum(p.tokens_requested for p in self._store.list_paid_payouts(end))
        raw_liability = lifetime_creator_share - paid_through_end
        shortfall = 0
        if raw_liability < 0:
            shortfall = -raw_liability
            log_event(
                logger,
                "platform.liability_negative",
                severity="WARNING",
                period=period,
                lifetime_creator_share=lifetime_creator_share,
                paid_through_period_end=paid_through_end,
                shortfall_tokens=shortfall,
            )
        liability = max(0, raw_liability)

        snapshot = PlatformFinanceMonthly(
            year=year,
            month=month,
            gmv_tokens=gmv,
            gmv_fiat=float(fiat.to_fiat(gmv)),
            total_creator_share=creator_total,
            total_platform_share=platform_total,
            fees_by_source=fees,
            refunds_tokens=refunds,
            net_revenue_tokens=platform_total,
            tokens_sold=tokens_sold,
            tokens_sold_fiat=float(fiat.to_fiat(tokens_sold)),
            total_payout_tokens=payout_tokens,
            total_payout_fiat=float(fiat.to_fiat(payout_tokens)),
            total_payout_count=len(paid_in_month),
            outstanding_creator_liability_tokens=liability,
            outstanding_creator_liability_fiat=float(fiat.to_fiat(liability)),
            liability_shortfall_tokens=shortfall,
            active_creators=len(creators),
            transaction_count=tx_count,
            unclassified_count=unclassified,
            reporting_currency=fiat.reporting_currency,
            split_table_version=splits.version,
            generated_at=self._clock(),
        )

        if existing is not None and existing.content_hash == snapshot.content_hash:
            log_event(logger, "platform.snapshot_unchanged", period=period)
            return existing

        self._store.put_platform_snapshot(snapshot)
        log_event(
            logger,
            "platform.snapshot_written",
            period=period,
            gmv_tokens=gmv,
            total_platform_share=platform_total,
            outstanding_creator_liability_tokens=liability,
            active_creators=len(creators),
            forced=bool(force),
        )
        return snapshot
