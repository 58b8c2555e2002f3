from __future__ import annotations

"""
Batch driver for monthly creator aggregation.

Concurrency model:
- one task per user on a bounded ThreadPoolExecutor; per-user runs share nothing
  but the (thread-safe) store
- tallies are only touched on the coordinating thread (as_completed loop)
- cancellation is checked when a task starts, i.e. between users; a user already
  being aggregated always finishes
- StoreUnavailableError is fatal: remaining users are skipped, the run is recorded
  as aborted and the error propagates to the scheduler
"""

import contextvars
import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, Optional

from finance_engine.common.errors import StoreUnavailableError
from finance_engine.common.logging import bind_correlation_id, log_event
from finance_engine.common.periods import month_period_utc, period_key, utc_now
from finance_engine.common.shutdown import SHUTDOWN_EVENT
from finance_engine.persistence.interfaces import FinanceStore

from .earnings import MonthlyEarningsAggregator
from .models import AggregationRun, BatchResult, RunKind, RunStatus

logger = logging.getLogger(__name__)

_PROCESSED = "processed"
_SKIPPED = "skipped"


def new_run_id(kind: RunKind, period: Optional[str]) -> str:
    return f"{kind.value}__{period or 'all'}__{uuid.uuid4().hex[:12]}"


def resolve_active_users(store: FinanceStore, year: int, month: int) -> list[str]:
    """Distinct users with at least one transaction in the month."""
    start, end = month_period_utc(year=year, month=month)
    return sorted({tx.user_id for tx in store.iter_transactions(start, end)})


def _dedupe(user_ids: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for u in user_ids:
        uid = str(u or "").strip()
        if uid and uid not in seen:
            seen.add(uid)
            out.append(uid)
    return out


def record_run_safely(store: FinanceStore, run: AggregationRun) -> None:
    """
    Audit trail writes must not mask the run's own outcome.
    """
    try:
        store.record_run(run)
    except Exception:
        logger.exception("batch.record_run_failed run_id=%s status=%s", run.run_id, run.status.value)


def run_earnings_batch(
    store: FinanceStore,
    year: int,
    month: int,
    *,
    aggregator: Optional[MonthlyEarningsAggregator] = None,
    user_ids: Optional[Iterable[str]] = None,
    force: bool = True,
    max_workers: Optional[int] = None,
    cancel_event: Optional[threading.Event] = None,
    triggered_by: str = "manual",
    clock: Optional[Callable] = None,
) -> BatchResult:
    month_period_utc(year=year, month=month)
    period = period_key(year, month)
    clock = clock or utc_now
    agg = aggregator or MonthlyEarningsAggregator(store, clock=clock)
    settings = agg.settings
    workers = int(max_workers or settings.max_workers)
    cancel = cancel_event or SHUTDOWN_EVENT
    abort = threading.Event()

    run_id = new_run_id(RunKind.CREATOR_EARNINGS, period)
    started_at = clock()

    with bind_correlation_id(correlation_id=run_id):
        log_event(logger, "batch.started", run_id=run_id, period=period, force=bool(force), max_workers=workers)

        try:
            users = _dedupe(user_ids) if user_ids is not None else resolve_active_users(store, year, month)
        except StoreUnavailableError as e:
            log_event(logger, "batch.aborted", severity="ERROR", run_id=run_id, period=period, error=str(e))
            record_run_safely(
                store,
                AggregationRun(
                    run_id=run_id,
                    kind=RunKind.CREATOR_EARNINGS,
                    period=period,
                    status=RunStatus.ABORTED,
                    processed=0,
                    failed=0,
                    skipped=0,
                    started_at=started_at,
                    finished_at=clock(),
                    forced=bool(force),
                    triggered_by=triggered_by,
                    error=str(e),
                ),
            )
            raise

        def _one(uid: str) -> str:
            if cancel.is_set() or abort.is_set():
                return _SKIPPED
            try:
                agg.aggregate(uid, year, month, force=force)
            except StoreUnavailableError:
                # Stop queued users before the coordinator sees the failure.
                abort.set()
                raise
            return _PROCESSED

        processed = 0
        skipped = 0
        failures: dict[str, str] = {}
        failed = 0
        fatal: Optional[StoreUnavailableError] = None

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="earnings") as ex:
            futures = {ex.submit(contextvars.copy_context().run, _one, uid): uid for uid in users}
            for fut in as_completed(futures):
                uid = futures[fut]
                try:
                    outcome = fut.result()
                except StoreUnavailableError as e:
                    failed += 1
                    if fatal is None:
                        fatal = e
                    log_event(logger, "batch.store_unavailable", severity="ERROR", run_id=run_id, user_id=uid, error=str(e))
                    continue
                except Exception as e:
                    failed += 1
                    if len(failures) < settings.max_recorded_failures:
                        failures[uid] = f"{type(e).__name__}: {e}"
                    log_event(
                        logger,
                        "batch.user_failed",
                        severity="ERROR",
                        exc_info=True,
                        run_id=run_id,
                        user_id=uid,
                        period=period,
                        error=str(e),
                    )
                    continue
                if outcome == _SKIPPED:
                    skipped += 1
                else:
                    processed += 1

        if fatal is not None:
            status = RunStatus.ABORTED
        elif skipped:
            status = RunStatus.CANCELLED
        elif failed:
            status = RunStatus.PARTIAL
        else:
            status = RunStatus.COMPLETED

        record_run_safely(
            store,
            AggregationRun(
                run_id=run_id,
                kind=RunKind.CREATOR_EARNINGS,
                period=period,
                status=status,
                processed=processed,
                failed=failed,
                skipped=skipped,
                started_at=started_at,
                finished_at=clock(),
                forced=bool(force),
                triggered_by=triggered_by,
                failures=failures,
                error=str(fatal) if fatal is not None else None,
            ),
        )
        log_event(
            logger,
            "batch.completed",
            severity="INFO" if status == RunStatus.COMPLETED else "WARNING",
            run_id=run_id,
            period=period,
            status=status.value,
            processed=processed,
            failed=failed,
            skipped=skipped,
            users=len(users),
        )
        if fatal is not None:
            raise fatal

        return BatchResult(
            run_id=run_id,
            period=period,
            status=status,
            processed=processed,
            failed=failed,
            skipped=skipped,
            failures=failures,
        )
