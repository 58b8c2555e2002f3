#!/usr/bin/env python3

from __future__ import annotations

import argparse
from typing import Optional

from finance_engine.common.config import load_settings
from finance_engine.common.errors import WalletNotFoundError
from finance_engine.common.logging import init_structured_logging
from finance_engine.common.periods import parse_period_key
from finance_engine.service import FinanceEngine


def _parse_yyyy_mm(value: str) -> tuple[int, int]:
    try:
        return parse_period_key(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError("Expected YYYY-MM (e.g. 2025-12)") from e


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run balance/split/refund consistency checks. Findings are stored for review, never fixed."
    )
    parser.add_argument("--uid", default=None, help="Optional user id scope.")
    parser.add_argument("--month", default=None, type=_parse_yyyy_mm, help="Optional month, format YYYY-MM.")
    parser.add_argument("--config", default=None, help="Path to engine YAML config.")
    parser.add_argument("--project-id", default=None, help="Firebase project id (default: from env/ADC).")
    parser.add_argument("--write", action="store_true", help="Store anomalies. Default is dry-run.")
    args = parser.parse_args(argv)

    init_structured_logging(service="finance-anomaly-detector")
    year, month = args.month if args.month else (None, None)
    engine = FinanceEngine.from_firestore(project_id=args.project_id, settings=load_settings(args.config))

    try:
        anomalies = engine.detect_anomalies(
            user_id=args.uid, year=year, month=month, persist=bool(args.write), triggered_by="cli"
        )
    except WalletNotFoundError as e:
        print(f"ERROR: {e}")
        return 2

    for a in anomalies:
        print(f"[{a.severity.value}] {a.type.value} user={a.user_id} period={a.period} id={a.id}: {a.details}")
    print(f"Found {len(anomalies)} anomalies.")
    if not args.write:
        print("Dry-run: nothing written. Re-run with --write to store findings.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
