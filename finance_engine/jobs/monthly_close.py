from __future__ import annotations

"""
Monthly close: the scheduler-facing sequence for one period.

1. creator earnings batch (bounded concurrency, tallied)
2. platform rollup, forced, only after the batch has finished
3. split + refund anomaly detection for the period

Scheduling concerns (which month, when, retries) live here and in the scripts,
never in the aggregators.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from finance_engine.aggregation.models import BatchResult, PlatformFinanceMonthly, RunStatus
from finance_engine.common.logging import log_event
from finance_engine.common.periods import period_key, previous_month, validate_period
from finance_engine.service import FinanceEngine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MonthlyCloseReport:
    period: str
    batch: BatchResult
    platform: Optional[PlatformFinanceMonthly]
    anomalies: int

    @property
    def complete(self) -> bool:
        return self.batch.status == RunStatus.COMPLETED and self.platform is not None


def run_monthly_close(
    engine: FinanceEngine,
    *,
    year: Optional[int] = None,
    month: Optional[int] = None,
    force: bool = True,
    cancel_event: Optional[threading.Event] = None,
    triggered_by: str = "scheduler",
) -> MonthlyCloseReport:
    if year is None and month is None:
        year, month = previous_month(engine.now())
    validate_period(year, month)
    period = period_key(year, month)

    log_event(logger, "monthly_close.started", period=period, triggered_by=triggered_by)
    batch = engine.run_earnings_batch(
        year, month, force=force, cancel_event=cancel_event, triggered_by=triggered_by
    )
    if batch.status == RunStatus.CANCELLED:
        log_event(logger, "monthly_close.cancelled", severity="WARNING", period=period, skipped=batch.skipped)
        return MonthlyCloseReport(period=period, batch=batch, platform=None, anomalies=0)

    # Partial batches still roll up: failed users are visible in the run record and
    # a later forced rerun of the close replaces the figure.
    platform = engine.aggregate_platform_month(year, month, force=True)
    anomalies = engine.detect_anomalies(year=year, month=month, triggered_by=triggered_by)

    report = MonthlyCloseReport(period=period, batch=batch, platform=platform, anomalies=len(anomalies))
    log_event(
        logger,
        "monthly_close.completed",
        severity="INFO" if report.complete else "WARNING",
        period=period,
        batch_status=batch.status.value,
        processed=batch.processed,
        failed=batch.failed,
        anomalies=len(anomalies),
    )
    return report
