#!/usr/bin/env python3

from __future__ import annotations

import argparse
import logging
from typing import Optional

from finance_engine.common.config import load_settings
from finance_engine.common.errors import StoreUnavailableError
from finance_engine.common.logging import init_structured_logging
from finance_engine.common.periods import parse_period_key, period_key, previous_month
from finance_engine.common.shutdown import install_signal_handlers_once
from finance_engine.jobs.monthly_close import run_monthly_close
from finance_engine.service import FinanceEngine

logger = logging.getLogger(__name__)


def _parse_yyyy_mm(value: str) -> tuple[int, int]:
    try:
        return parse_period_key(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError("Expected YYYY-MM (e.g. 2025-12)") from e


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Monthly close: creator earnings batch -> platform rollup -> anomaly detection."
    )
    parser.add_argument(
        "--month",
        default=None,
        type=_parse_yyyy_mm,
        help="Month to close, format YYYY-MM (default: previous UTC month)",
    )
    parser.add_argument("--config", default=None, help="Path to engine YAML config.")
    parser.add_argument("--project-id", default=None, help="Firebase project id (default: from env/ADC).")
    parser.add_argument("--no-force", action="store_true", help="Keep existing creator snapshots.")
    parser.add_argument("--write", action="store_true", help="Run the close. Default is dry-run (plan only).")
    args = parser.parse_args(argv)

    init_structured_logging(service="finance-monthly-close")
    install_signal_handlers_once()

    year, month = args.month or previous_month()
    settings = load_settings(args.config)
    engine = FinanceEngine.from_firestore(project_id=args.project_id, settings=settings)

    if not args.write:
        from finance_engine.aggregation.batch import resolve_active_users

        users = resolve_active_users(engine.store, year, month)
        print(f"period={period_key(year, month)} active_users={len(users)} split_table={settings.splits.version}")
        print("Dry-run: nothing written. Re-run with --write to close the month.")
        return 0

    try:
        report = run_monthly_close(
            engine, year=year, month=month, force=not args.no_force, triggered_by="cli"
        )
    except StoreUnavailableError:
        logger.exception("monthly_close.store_unavailable")
        return 3

    print(
        f"period={report.period} batch={report.batch.status.value} processed={report.batch.processed} "
        f"failed={report.batch.failed} skipped={report.batch.skipped} anomalies={report.anomalies}"
    )
    if report.platform is not None:
        print(
            f"gmv_tokens={report.platform.gmv_tokens} platform_share={report.platform.total_platform_share} "
            f"liability_tokens={report.platform.outstanding_creator_liability_tokens}"
        )
    return 0 if report.complete else 1


if __name__ == "__main__":
    raise SystemExit(main())
